"""API 端点限流依赖

限流标识由 IP 哈希与会话 ID 组成，计数保存在数据库中。

Example:
    @router.post("/session", dependencies=[Depends(rate_limit("session"))])
    async def create_session(...):
        ...
"""

import logging
from typing import Callable

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from credit_gateway.core.auth_deps import get_ip_hash, get_session_validation
from credit_gateway.core.database import get_db
from credit_gateway.core.errors import RejectionReason
from credit_gateway.core.responses import rejection_exception
from credit_gateway.services.rate_limiter import (
    RateLimitDecision,
    check_endpoint_rate_limit,
    make_rate_limit_identifier,
)
from credit_gateway.services.session_identity import SessionValidation

logger = logging.getLogger(__name__)


def rate_limit(endpoint: str) -> Callable:
    """
    端点限流依赖工厂

    Args:
        endpoint: RATE_LIMITS 中的端点名；未配置的端点不限流
    """
    async def checker(
        ip_hash: str = Depends(get_ip_hash),
        validation: SessionValidation = Depends(get_session_validation),
        db: AsyncSession = Depends(get_db),
    ) -> RateLimitDecision:
        identifier = make_rate_limit_identifier(ip_hash, validation.sid if validation.valid else None)
        decision = await check_endpoint_rate_limit(db, identifier, endpoint)
        if not decision.allowed:
            raise rejection_exception(
                RejectionReason.RATE_LIMITED,
                f"Too many requests. Please retry in {decision.retry_after} seconds.",
                retry_after=decision.retry_after,
            )
        return decision

    return checker
