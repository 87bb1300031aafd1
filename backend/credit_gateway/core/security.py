"""安全基础模块 - 会话等级、密钥选择、IP 哈希、常量时间比较"""

import hashlib
import hmac
from enum import Enum
from typing import Optional

from credit_gateway.core.config import Settings

MIN_SECRET_LENGTH = 32


class Tier(str, Enum):
    """会话等级"""
    PAID = "paid"      # 所有匿名会话
    ADMIN = "admin"    # 管理员登录后的会话，绕过每日额度上限


def resolve_ip_hash_secret(
    ip_hash_secret: Optional[str],
    session_secret: Optional[str],
) -> str:
    """
    选择用于 IP 哈希的密钥

    优先级：
      1. 专用 IP 哈希密钥（IP_HASH_SECRET）
      2. 会话签名密钥（SESSION_SECRET）

    两个密钥分开配置时，其中一个泄露不会让所有会话的 IP 哈希立即可被反查。

    Raises:
        ValueError: 两个密钥都未配置
    """
    if ip_hash_secret:
        return ip_hash_secret
    if session_secret:
        return session_secret
    raise ValueError("Neither IP_HASH_SECRET nor SESSION_SECRET is configured")


def ip_hash_secret_from_settings(settings: Settings) -> str:
    return resolve_ip_hash_secret(settings.ip_hash_secret, settings.session_secret)


def hash_ip(ip: str, secret: str) -> str:
    """
    对 IP 做带密钥的哈希（HMAC-SHA256）

    "unknown" 同样被哈希，作为一个独立的桶参与限流。

    Returns:
        64 位十六进制字符串
    """
    return hmac.new(secret.encode("utf-8"), ip.encode("utf-8"), hashlib.sha256).hexdigest()


def constant_time_equals(a: Optional[str], b: Optional[str]) -> bool:
    """
    常量时间比较两个字符串

    任一为空即失败；长度不同在逐字节比较之前直接失败。
    """
    if not a or not b:
        return False
    if len(a) != len(b):
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def hmac_digest(secret: str, value: str) -> bytes:
    """HMAC-SHA256 摘要（用于管理员口令比较）"""
    return hmac.new(secret.encode("utf-8"), value.encode("utf-8"), hashlib.sha256).digest()
