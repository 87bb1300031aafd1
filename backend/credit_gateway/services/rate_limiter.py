"""固定窗口限流服务

计数保存在数据库中，多个工作进程共享。每次检查都是一条条件 UPDATE ... RETURNING，
不做先读后写，并发请求不会越过限额。
"""

import logging
import math
import re
import time
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from credit_gateway.core.config import RATE_LIMITS
from credit_gateway.core.errors import ConcurrentUpdateError, RejectionReason
from credit_gateway.models.rate_limit import RateLimitWindow

logger = logging.getLogger(__name__)

# 未配置的端点不计数
UNTRACKED_REMAINING = 999

# 超过该时长未更新的窗口由清理任务删除
STALE_WINDOW_MS = 60 * 60 * 1000

MAX_ATTEMPTS = 3

_IP_HASH_RE = re.compile(r"^[0-9a-f]{64}$")
NO_SESSION = "-"


class RateLimitDecision(BaseModel):
    """限流检查结果"""
    allowed: bool
    remaining: Optional[int] = None
    retry_after_ms: Optional[int] = None
    reason: Optional[RejectionReason] = None

    @property
    def retry_after(self) -> Optional[int]:
        """距离可重试的秒数（向上取整）"""
        if self.retry_after_ms is None:
            return None
        return max(1, math.ceil(self.retry_after_ms / 1000))


class RateLimitStatus(BaseModel):
    """不计数的限流状态"""
    endpoint: str
    remaining: int
    reset_at: int  # 毫秒时间戳
    tracked: bool = True


def now_ms() -> int:
    return int(time.time() * 1000)


def make_rate_limit_identifier(ip_hash: str, sid: Optional[str]) -> str:
    """
    组合限流标识：64 位十六进制 IP 哈希 + ":" + 会话 ID

    IP 哈希定长且只含十六进制字符，分隔符位置固定，组合键不会有歧义。
    同一 IP 换会话、同一会话换 IP 都绕不过限流。
    """
    if not _IP_HASH_RE.match(ip_hash):
        raise ValueError("ip_hash must be a 64-character lowercase hex digest")
    return f"{ip_hash}:{sid or NO_SESSION}"


async def check_rate_limit(
    db: AsyncSession,
    identifier: str,
    endpoint: str,
    limit: int,
    window_ms: int,
    now: Optional[int] = None,
) -> RateLimitDecision:
    """
    检查并计数

    窗口不存在或已过期（now - window_start >= window_ms）时开新窗口并放行；
    否则计数加一，未超过 limit 时放行，超过时返回 retry_after_ms = window_ms - (now - window_start)。
    """
    now = now_ms() if now is None else now
    expired_before = now - window_ms

    for _ in range(MAX_ATTEMPTS):
        # 1. 窗口内且未超限：计数加一
        result = await db.execute(
            update(RateLimitWindow)
            .where(
                RateLimitWindow.identifier == identifier,
                RateLimitWindow.endpoint == endpoint,
                RateLimitWindow.window_start > expired_before,
                RateLimitWindow.count < limit,
            )
            .values(count=RateLimitWindow.count + 1)
            .returning(RateLimitWindow.count)
        )
        count = result.scalar_one_or_none()
        if count is not None:
            await db.commit()
            return RateLimitDecision(allowed=True, remaining=limit - count)

        # 2. 窗口已过期：重置
        result = await db.execute(
            update(RateLimitWindow)
            .where(
                RateLimitWindow.identifier == identifier,
                RateLimitWindow.endpoint == endpoint,
                RateLimitWindow.window_start <= expired_before,
            )
            .values(count=1, window_start=now)
            .returning(RateLimitWindow.count)
        )
        if result.scalar_one_or_none() is not None:
            await db.commit()
            return RateLimitDecision(allowed=True, remaining=limit - 1)

        # 3. 行不存在则插入；存在说明已超限
        existing = await db.execute(
            select(RateLimitWindow.window_start).where(
                RateLimitWindow.identifier == identifier,
                RateLimitWindow.endpoint == endpoint,
            )
        )
        window_start = existing.scalar_one_or_none()
        if window_start is not None:
            await db.commit()
            retry_after_ms = window_ms - (now - window_start)
            if retry_after_ms <= 0:
                # 窗口恰好在两条语句之间过期，重新走一遍
                continue
            logger.info(f"Rate limited {identifier[:8]} on {endpoint}")
            return RateLimitDecision(
                allowed=False,
                remaining=0,
                retry_after_ms=retry_after_ms,
                reason=RejectionReason.RATE_LIMITED,
            )

        db.add(RateLimitWindow(
            identifier=identifier,
            endpoint=endpoint,
            count=1,
            window_start=now,
        ))
        try:
            await db.commit()
        except IntegrityError:
            # 并发请求先插入了同一行
            await db.rollback()
            continue
        return RateLimitDecision(allowed=True, remaining=limit - 1)

    raise ConcurrentUpdateError(f"Rate limit window for {endpoint} kept changing under contention")


async def check_endpoint_rate_limit(
    db: AsyncSession,
    identifier: str,
    endpoint: str,
    now: Optional[int] = None,
) -> RateLimitDecision:
    """按 RATE_LIMITS 配置检查；未配置的端点直接放行且不计数"""
    rule = RATE_LIMITS.get(endpoint)
    if rule is None:
        return RateLimitDecision(allowed=True)
    return await check_rate_limit(db, identifier, endpoint, rule.max_requests, rule.window_ms, now)


async def get_rate_limit_status(
    db: AsyncSession,
    identifier: str,
    endpoint: str,
    now: Optional[int] = None,
) -> RateLimitStatus:
    """查询剩余次数与窗口重置时间，不计数"""
    now = now_ms() if now is None else now
    rule = RATE_LIMITS.get(endpoint)
    if rule is None:
        return RateLimitStatus(endpoint=endpoint, remaining=UNTRACKED_REMAINING, reset_at=now, tracked=False)

    result = await db.execute(
        select(RateLimitWindow).where(
            RateLimitWindow.identifier == identifier,
            RateLimitWindow.endpoint == endpoint,
        )
    )
    window = result.scalar_one_or_none()
    if window is None or now - window.window_start >= rule.window_ms:
        return RateLimitStatus(endpoint=endpoint, remaining=rule.max_requests, reset_at=now + rule.window_ms)

    return RateLimitStatus(
        endpoint=endpoint,
        remaining=max(0, rule.max_requests - window.count),
        reset_at=window.window_start + rule.window_ms,
    )


async def sweep_stale_windows(db: AsyncSession, now: Optional[int] = None) -> int:
    """删除一小时未更新的窗口，返回删除行数"""
    now = now_ms() if now is None else now
    result = await db.execute(
        delete(RateLimitWindow).where(RateLimitWindow.window_start < now - STALE_WINDOW_MS)
    )
    await db.commit()
    return result.rowcount or 0
