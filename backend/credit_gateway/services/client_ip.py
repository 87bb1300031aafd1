"""客户端 IP 解析服务

请求可能经过若干层代理，每一层都可能改写或伪造 X-Forwarded-For 等头部。
只有当直接对端（peer）属于受信任的代理，或者已确认运行在受信任的托管平台上时，
才读取转发头部；否则直接使用对端地址。
"""

import ipaddress
import logging
import os
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

from starlette.requests import Request

from credit_gateway.core.config import PLATFORM_MARKERS, Settings

logger = logging.getLogger(__name__)

# 无法确定客户端地址时的哨兵值，下游将其视为独立的桶
UNKNOWN_IP = "unknown"

# 转发头部，按优先级排列
FORWARDED_FOR_HEADER = "x-forwarded-for"
REAL_IP_HEADER = "x-real-ip"
CDN_CLIENT_IP_HEADER = "cf-connecting-ip"


@dataclass(frozen=True)
class ParsedIp:
    """解析后的 IP 地址"""
    version: int    # 4 或 6
    packed: bytes   # 4 字节或 16 字节

    @property
    def bit_length(self) -> int:
        return len(self.packed) * 8


@dataclass(frozen=True)
class TrustedCidr:
    """受信任的代理网段"""
    base: ParsedIp
    prefix: int

    def contains(self, ip: ParsedIp) -> bool:
        return ip_matches_cidr(ip, self.base, self.prefix)


def strip_ipv6_zone(address: str) -> str:
    """去掉 IPv6 字面量的 %zone 后缀，例如 fe80::1%eth0 -> fe80::1"""
    if ":" in address and "%" in address:
        return address.split("%", 1)[0]
    return address


def parse_ipv4(value: str) -> Optional[bytes]:
    """解析点分十进制 IPv4，失败返回 None"""
    try:
        return ipaddress.IPv4Address(value).packed
    except ValueError:
        return None


def parse_ipv6(value: str) -> Optional[bytes]:
    """解析 IPv6（完整形式、:: 压缩形式、::ffff:a.b.c.d 内嵌 IPv4 形式），失败返回 None"""
    try:
        return ipaddress.IPv6Address(value).packed
    except ValueError:
        return None


def parse_ip(value: Optional[str]) -> Optional[ParsedIp]:
    """解析 IPv4 或 IPv6 地址，非法输入返回 None 而不是抛异常"""
    if not value:
        return None
    candidate = strip_ipv6_zone(value.strip())

    packed = parse_ipv4(candidate)
    if packed is not None:
        return ParsedIp(version=4, packed=packed)

    packed = parse_ipv6(candidate)
    if packed is not None:
        return ParsedIp(version=6, packed=packed)

    return None


def format_ip(ip: ParsedIp) -> str:
    """将解析结果格式化为规范字符串"""
    return str(ipaddress.ip_address(ip.packed))


def ip_matches_cidr(ip: ParsedIp, base: ParsedIp, prefix: int) -> bool:
    """
    比较两个同版本地址的前 prefix 位

    不同版本永远不匹配；prefix 为 0 匹配一切；prefix 等于地址位数时要求完全相等。
    """
    if ip.version != base.version:
        return False
    if prefix < 0 or prefix > ip.bit_length:
        return False

    full_bytes, remaining_bits = divmod(prefix, 8)
    if ip.packed[:full_bytes] != base.packed[:full_bytes]:
        return False
    if remaining_bits == 0:
        return True

    mask = (0xFF << (8 - remaining_bits)) & 0xFF
    return (ip.packed[full_bytes] & mask) == (base.packed[full_bytes] & mask)


def parse_cidr(entry: str) -> Optional[TrustedCidr]:
    """解析 "ip" 或 "ip/prefix"；单个 IP 视为全位数前缀"""
    entry = entry.strip()
    if not entry:
        return None

    address, _, prefix_text = entry.partition("/")
    base = parse_ip(address)
    if base is None:
        return None

    if not prefix_text:
        return TrustedCidr(base=base, prefix=base.bit_length)
    if not prefix_text.isdigit():
        return None

    prefix = int(prefix_text)
    if prefix > base.bit_length:
        return None
    return TrustedCidr(base=base, prefix=prefix)


def platform_marker_present(platform: str, environ: Mapping[str, str]) -> bool:
    """检查环境变量是否证明代码确实运行在指定平台上"""
    marker = PLATFORM_MARKERS.get(platform.lower())
    if marker is None:
        return False
    name, expected = marker
    value = environ.get(name)
    if expected is None:
        return bool(value)
    return value == expected


@dataclass(frozen=True)
class TrustPolicy:
    """代理信任策略，启动时构建一次"""
    trusted_cidrs: Tuple[TrustedCidr, ...] = field(default_factory=tuple)
    platform: Optional[str] = None
    platform_verified: bool = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "TrustPolicy":
        environ = os.environ if environ is None else environ

        cidrs = []
        for entry in settings.trusted_proxy_entries:
            cidr = parse_cidr(entry)
            if cidr is None:
                logger.warning(f"Ignoring unparseable trusted proxy entry: {entry!r}")
                continue
            cidrs.append(cidr)

        platform = settings.trust_proxy_platform
        verified = bool(platform) and platform_marker_present(platform, environ)

        return cls(
            trusted_cidrs=tuple(cidrs),
            platform=platform,
            platform_verified=verified,
        )

    def trusts(self, peer: Optional[str]) -> bool:
        """对端是否可信（可以读取其转发头部）"""
        if self.platform_verified:
            return True
        if not peer or not self.trusted_cidrs:
            return False

        parsed = parse_ip(peer)
        if parsed is None:
            return False
        return any(cidr.contains(parsed) for cidr in self.trusted_cidrs)


def _first_valid(values: list[str]) -> Optional[str]:
    for value in values:
        parsed = parse_ip(value)
        if parsed is not None:
            return format_ip(parsed)
    return None


def resolve_client_ip_from(
    headers: Mapping[str, str],
    peer: Optional[str],
    policy: TrustPolicy,
) -> str:
    """
    根据头部、对端地址和信任策略确定客户端 IP

    Args:
        headers: 请求头（键为小写，或大小写不敏感的映射）
        peer: 传输层对端地址，运行时不提供时为 None
        policy: 信任策略

    Returns:
        规范化的 IP 字符串，无法确定时返回 UNKNOWN_IP
    """
    if not policy.trusts(peer):
        # 不信任时只用对端地址，绝不读取转发头部
        resolved = _first_valid([peer] if peer else [])
        if resolved is None:
            logger.warning("Client IP unresolved: no valid peer address")
            return UNKNOWN_IP
        return resolved

    forwarded = headers.get(FORWARDED_FOR_HEADER)
    if forwarded:
        resolved = _first_valid(forwarded.split(","))
        if resolved:
            return resolved

    for header in (REAL_IP_HEADER, CDN_CLIENT_IP_HEADER):
        value = headers.get(header)
        if value:
            resolved = _first_valid([value])
            if resolved:
                return resolved

    logger.warning("Client IP unresolved: trusted peer sent no valid forwarding header")
    return UNKNOWN_IP


def resolve_client_ip(request: Request, policy: TrustPolicy) -> str:
    """从 Starlette 请求中解析客户端 IP"""
    peer = request.client.host if request.client else None
    return resolve_client_ip_from(request.headers, peer, policy)
