"""CSRF 防护（双重提交 Cookie）与来源校验

无服务端状态：令牌写入页面脚本可读的 Cookie，客户端在每次修改类请求中通过请求头回传。
"""

import secrets
from typing import Iterable, Mapping, Optional

from credit_gateway.core.config import Settings
from credit_gateway.core.security import constant_time_equals

CSRF_TOKEN_BYTES = 32


def generate_csrf_token() -> str:
    """生成 64 位十六进制令牌"""
    return secrets.token_hex(CSRF_TOKEN_BYTES)


def validate_csrf_token(header_token: Optional[str], cookie_token: Optional[str]) -> bool:
    """
    校验 CSRF 令牌

    两边都必须存在；长度不同直接失败；最后做常量时间比较。
    """
    return constant_time_equals(header_token, cookie_token)


def validate_csrf_request(
    headers: Mapping[str, str],
    cookie_token: Optional[str],
    header_name: str,
) -> bool:
    return validate_csrf_token(headers.get(header_name), cookie_token)


def csrf_cookie_options(settings: Settings) -> dict:
    """CSRF Cookie 参数（脚本可读，同站严格，约 1 小时）"""
    return {
        "key": settings.csrf_cookie_name,
        "httponly": False,
        "secure": settings.is_production,
        "samesite": "strict",
        "path": "/",
        "max_age": settings.csrf_cookie_max_age,
    }


def validate_origin(origin: Optional[str], allowed_origins: Iterable[str]) -> bool:
    """没有 Origin 头视为同源请求；否则必须在允许列表中"""
    if not origin:
        return True
    return origin in set(allowed_origins)
