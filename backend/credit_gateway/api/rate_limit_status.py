"""限流状态查询 API（不计数）"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from credit_gateway.core.auth_deps import get_ip_hash, get_session_validation
from credit_gateway.core.database import get_db
from credit_gateway.services.rate_limiter import (
    RateLimitStatus,
    get_rate_limit_status,
    make_rate_limit_identifier,
)
from credit_gateway.services.session_identity import SessionValidation

router = APIRouter(prefix="/api", tags=["rate-limit"])


@router.get("/rate-limit-status", response_model=RateLimitStatus)
async def rate_limit_status(
    endpoint: str = Query(..., min_length=1, max_length=64),
    ip_hash: str = Depends(get_ip_hash),
    validation: SessionValidation = Depends(get_session_validation),
    db: AsyncSession = Depends(get_db),
):
    """查询调用方在某端点的剩余次数与重置时间"""
    identifier = make_rate_limit_identifier(ip_hash, validation.sid if validation.valid else None)
    return await get_rate_limit_status(db, identifier, endpoint)
