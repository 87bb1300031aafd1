"""启动时的安全配置校验

在应用启动早期调用，配置错误时立即失败。构建阶段（build_phase）跳过全部校验。
"""

import logging
import os
from typing import Mapping, Optional

from credit_gateway.core.config import Settings
from credit_gateway.core.errors import ConfigurationError
from credit_gateway.core.security import MIN_SECRET_LENGTH
from credit_gateway.services.client_ip import parse_cidr, platform_marker_present

logger = logging.getLogger(__name__)

# 前缀位数不超过该值的受信任网段视为危险（包括 0.0.0.0/0、::/0 与 x/7）
DANGEROUS_PREFIX_MAX = 7


def _check_secret(name: str, value: Optional[str]) -> None:
    if not value:
        raise ConfigurationError(
            f"{name} environment variable is required. "
            "Generate one with: openssl rand -base64 32"
        )
    if len(value) < MIN_SECRET_LENGTH:
        raise ConfigurationError(
            f"{name} must be at least {MIN_SECRET_LENGTH} characters (got {len(value)}). "
            "Generate a secure secret with: openssl rand -base64 32"
        )


def validate_session_secret(settings: Settings) -> None:
    """SESSION_SECRET 必须存在且至少 32 个字符"""
    if settings.build_phase:
        return
    _check_secret("SESSION_SECRET", settings.session_secret)


def validate_ip_hash_secret(settings: Settings) -> None:
    """
    IP_HASH_SECRET 校验

    已配置时必须至少 32 个字符；未配置时生产环境报错，开发环境警告并回退到 SESSION_SECRET。
    """
    if settings.build_phase:
        return
    if settings.ip_hash_secret:
        _check_secret("IP_HASH_SECRET", settings.ip_hash_secret)
        return
    if settings.is_production:
        _check_secret("IP_HASH_SECRET", settings.ip_hash_secret)
    logger.warning("IP_HASH_SECRET is not set; IP hashes fall back to SESSION_SECRET")


def validate_admin_secret(settings: Settings) -> None:
    """配置了 ADMIN_PASSWORD 时，ADMIN_PASSWORD_SECRET 必须存在且至少 32 个字符"""
    if settings.build_phase or not settings.admin_password:
        return
    _check_secret("ADMIN_PASSWORD_SECRET", settings.admin_password_secret)


def validate_proxy_config(
    settings: Settings,
    environ: Optional[Mapping[str, str]] = None,
) -> None:
    """
    代理信任配置校验

    过宽的受信任网段会让任何来源都能伪造 X-Forwarded-For：
    生产环境直接失败，开发环境仅警告。
    """
    if settings.build_phase:
        return
    environ = os.environ if environ is None else environ

    entries = settings.trusted_proxy_entries
    platform = settings.trust_proxy_platform

    for entry in entries:
        cidr = parse_cidr(entry)
        if cidr is None:
            logger.warning(f"TRUSTED_PROXY_IPS entry {entry!r} is not a valid IP or CIDR and is ignored")
            continue
        if cidr.prefix <= DANGEROUS_PREFIX_MAX:
            message = (
                f"CRITICAL SECURITY MISCONFIGURATION: TRUSTED_PROXY_IPS contains {entry!r}, "
                "which trusts forwarding headers from almost any address"
            )
            if settings.is_production:
                raise ConfigurationError(message)
            logger.warning(message)

    if platform and not platform_marker_present(platform, environ):
        logger.warning(
            f"TRUST_PROXY_PLATFORM={platform} is set but the {platform} environment "
            "marker is not detected; forwarding headers will not be trusted"
        )

    if not entries and not platform and settings.is_production:
        logger.info("No proxy trust configured; client IPs are taken from the peer address")


def validate_security_env(settings: Settings) -> None:
    """校验所有安全相关配置，应用启动时调用"""
    validate_session_secret(settings)
    validate_ip_hash_secret(settings)
    validate_admin_secret(settings)
    validate_proxy_config(settings)
