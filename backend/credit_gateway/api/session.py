"""匿名会话 API"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from credit_gateway.core.auth_deps import (
    SessionContext,
    get_identity_manager,
    get_session_context,
)
from credit_gateway.core.config import get_settings
from credit_gateway.core.database import get_db, start_of_utc_day, utc_now
from credit_gateway.middleware.endpoint_limit import rate_limit
from credit_gateway.models.session import AnonymousSession
from credit_gateway.services.csrf import csrf_cookie_options, generate_csrf_token
from credit_gateway.services.session_identity import (
    SessionIdentityManager,
    create_session,
    session_cookie_options,
    touch_session,
)

logger = logging.getLogger(__name__)
settings = get_settings()

router = APIRouter(prefix="/api", tags=["session"])


class SessionInfo(BaseModel):
    sid: Optional[str] = None
    tier: Optional[str] = None
    credits: int = 0
    dailySpendUsd: float = 0.0
    dailySpendLimitUsd: Optional[float] = None


def _session_info(session: AnonymousSession) -> SessionInfo:
    # 跨过 UTC 零点后展示为当日 0 消费，实际清零发生在下一次扣费时
    daily_spend = session.daily_spend_usd
    if session.daily_reset_at < start_of_utc_day(utc_now()):
        daily_spend = 0.0
    return SessionInfo(
        sid=session.id,
        tier=session.tier,
        credits=session.credit_balance,
        dailySpendUsd=daily_spend,
        dailySpendLimitUsd=session.daily_spend_limit_usd,
    )


@router.get("/session", response_model=SessionInfo)
async def get_session(
    context: SessionContext = Depends(get_session_context),
    db: AsyncSession = Depends(get_db),
):
    """获取当前会话"""
    if context.session is None:
        return SessionInfo()

    await touch_session(db, context.session.id, context.ip_hash, settings.session_ttl_days)
    return _session_info(context.session)


@router.post("/session", response_model=SessionInfo, dependencies=[Depends(rate_limit("session"))])
async def start_session(
    response: Response,
    context: SessionContext = Depends(get_session_context),
    db: AsyncSession = Depends(get_db),
    manager: SessionIdentityManager = Depends(get_identity_manager),
):
    """获取或创建匿名会话"""
    if context.session is not None:
        return _session_info(context.session)

    session = await create_session(db, context.ip_hash, settings)
    response.set_cookie(value=manager.issue(session.id, context.ip_hash), **session_cookie_options(settings))
    return _session_info(session)


@router.get("/csrf")
async def get_csrf_token(response: Response) -> dict:
    """签发 CSRF 令牌"""
    token = generate_csrf_token()
    response.set_cookie(value=token, **csrf_cookie_options(settings))
    return {"csrfToken": token}
