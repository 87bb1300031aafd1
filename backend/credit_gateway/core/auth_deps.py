"""会话身份依赖函数

请求流程：解析客户端 IP → 计算 IP 哈希 → 用会话 Cookie 中的令牌与 IP 哈希比对 → 加载会话。
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from credit_gateway.core.config import get_settings
from credit_gateway.core.database import get_db
from credit_gateway.core.errors import RejectionReason
from credit_gateway.core.responses import rejection_exception
from credit_gateway.core.security import hash_ip, ip_hash_secret_from_settings
from credit_gateway.models.session import AnonymousSession
from credit_gateway.services.client_ip import TrustPolicy, resolve_client_ip
from credit_gateway.services.session_identity import (
    SessionIdentityManager,
    SessionValidation,
    get_active_session,
    session_cookie_options,
)

settings = get_settings()


@dataclass
class SessionContext:
    """当前请求的会话上下文"""
    validation: SessionValidation
    session: Optional[AnonymousSession]
    ip_hash: str

    @property
    def sid(self) -> Optional[str]:
        return self.session.id if self.session else None


@lru_cache
def get_identity_manager() -> SessionIdentityManager:
    """会话令牌管理器（进程内单例）"""
    return SessionIdentityManager(settings.session_secret, settings.session_token_ttl_days)


def get_trust_policy(request: Request) -> TrustPolicy:
    """启动时构建的代理信任策略"""
    policy = getattr(request.app.state, "trust_policy", None)
    if policy is None:
        policy = TrustPolicy.from_settings(settings)
        request.app.state.trust_policy = policy
    return policy


async def get_client_ip(
    request: Request,
    policy: TrustPolicy = Depends(get_trust_policy),
) -> str:
    return resolve_client_ip(request, policy)


async def get_ip_hash(client_ip: str = Depends(get_client_ip)) -> str:
    """当前客户端 IP 的带密钥哈希（"unknown" 同样被哈希）"""
    return hash_ip(client_ip, ip_hash_secret_from_settings(settings))


async def get_session_validation(
    request: Request,
    ip_hash: str = Depends(get_ip_hash),
    manager: SessionIdentityManager = Depends(get_identity_manager),
) -> SessionValidation:
    """校验会话令牌与当前 IP 哈希（不查数据库）"""
    token = request.cookies.get(settings.session_cookie_name)
    return manager.validate_against_request(token, ip_hash)


async def get_session_context(
    response: Response,
    validation: SessionValidation = Depends(get_session_validation),
    ip_hash: str = Depends(get_ip_hash),
    db: AsyncSession = Depends(get_db),
    manager: SessionIdentityManager = Depends(get_identity_manager),
) -> SessionContext:
    """
    获取当前会话（可选，无有效会话时 session 为 None）

    旧版令牌在本次响应中换发为绑定 IP 的新令牌。
    """
    if not validation.valid or not validation.sid:
        return SessionContext(validation=validation, session=None, ip_hash=ip_hash)

    session = await get_active_session(db, validation.sid)
    if session is None:
        return SessionContext(validation=validation, session=None, ip_hash=ip_hash)

    if validation.needs_refresh:
        response.set_cookie(value=manager.issue(session.id, ip_hash), **session_cookie_options(settings))

    return SessionContext(validation=validation, session=session, ip_hash=ip_hash)


async def require_session(
    context: SessionContext = Depends(get_session_context),
) -> SessionContext:
    """获取当前会话（必须存在）"""
    if context.session is None:
        raise rejection_exception(RejectionReason.SESSION_INVALID, "Session required")
    return context
