"""管理员登录 API

口令比较：双方先做 HMAC-SHA256 再常量时间比较；失败次数按 IP 哈希记录，超限后指数退避锁定。
"""

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from credit_gateway.core.auth_deps import SessionContext, require_session
from credit_gateway.core.config import get_settings
from credit_gateway.core.database import get_db
from credit_gateway.core.errors import RejectionReason
from credit_gateway.core.responses import rejection_exception
from credit_gateway.core.security import hmac_digest
from credit_gateway.middleware.endpoint_limit import rate_limit
from credit_gateway.services.login_lockout import (
    LockoutStatus,
    check_login_allowed,
    clear_login_attempts,
    record_failed_login,
)
from credit_gateway.services.session_identity import upgrade_to_admin

logger = logging.getLogger(__name__)
settings = get_settings()

router = APIRouter(prefix="/api", tags=["admin"])


class AdminLoginRequest(BaseModel):
    password: Optional[str] = None


def _locked_out(lockout: LockoutStatus) -> HTTPException:
    retry_after = lockout.retry_after()
    return rejection_exception(
        RejectionReason.LOCKED_OUT,
        f"Too many failed attempts. Try again in {retry_after} seconds.",
        retry_after=retry_after,
    )


def _invalid_credentials() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error": "invalid_credentials", "message": "Invalid password"},
    )


def password_matches(candidate: str, expected: str, secret: str) -> bool:
    """比较两边的 HMAC 摘要，长度固定，耗时与口令内容无关"""
    return hmac.compare_digest(hmac_digest(secret, candidate), hmac_digest(secret, expected))


@router.post("/admin-login", dependencies=[Depends(rate_limit("admin-login"))])
async def admin_login(
    request: AdminLoginRequest,
    context: SessionContext = Depends(require_session),
    db: AsyncSession = Depends(get_db),
) -> dict:
    """管理员登录，成功后当前会话升级为管理员等级"""
    lockout = await check_login_allowed(db, context.ip_hash)
    if not lockout.allowed:
        raise _locked_out(lockout)

    if not request.password:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "bad_request", "message": "Password is required"},
        )

    if not settings.admin_password or not settings.admin_password_secret:
        logger.error("Admin login attempted but ADMIN_PASSWORD or ADMIN_PASSWORD_SECRET is not configured")
        await record_failed_login(db, context.ip_hash)
        raise _invalid_credentials()

    if not password_matches(request.password, settings.admin_password, settings.admin_password_secret):
        lockout = await record_failed_login(db, context.ip_hash)
        logger.warning(f"Failed admin login from ip {context.ip_hash[:8]}")
        if not lockout.allowed:
            raise _locked_out(lockout)
        raise _invalid_credentials()

    await clear_login_attempts(db, context.ip_hash)
    await upgrade_to_admin(db, context.sid)
    logger.info(f"Session {context.sid[:8]} upgraded to admin")
    return {"success": True}
