"""管理员登录暴力破解防护

按 IP 哈希记录失败次数。15 分钟窗口内失败 5 次即锁定，
锁定时长随 lockout_count 指数增长（1h → 2h → 4h → 8h ...，上限 24h）。
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import delete, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from credit_gateway.core.database import utc_now
from credit_gateway.core.errors import RejectionReason
from credit_gateway.models.rate_limit import LoginAttempt

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 5
ATTEMPT_WINDOW = timedelta(minutes=15)
BASE_LOCKOUT = timedelta(hours=1)
MAX_LOCKOUT = timedelta(hours=24)
STALE_RECORD_AGE = timedelta(hours=24)


class LockoutStatus(BaseModel):
    """登录锁定状态"""
    allowed: bool
    locked_until: Optional[datetime] = None
    attempts_remaining: int = 0
    lockout_count: int = 0
    reason: Optional[RejectionReason] = None

    def retry_after(self, now: Optional[datetime] = None) -> Optional[int]:
        """距离解锁的秒数（向上取整）"""
        if self.locked_until is None:
            return None
        now = now or utc_now()
        return max(1, math.ceil((self.locked_until - now).total_seconds()))


def lockout_duration(lockout_count: int) -> timedelta:
    """第 n 次锁定的时长：BASE * 2^n，上限 24 小时"""
    # 2^5 已经超过上限，避免指数过大
    multiplier = 2 ** min(lockout_count, 5)
    return min(BASE_LOCKOUT * multiplier, MAX_LOCKOUT)


def _locked(locked_until: datetime, lockout_count: int) -> LockoutStatus:
    return LockoutStatus(
        allowed=False,
        locked_until=locked_until,
        attempts_remaining=0,
        lockout_count=lockout_count,
        reason=RejectionReason.LOCKED_OUT,
    )


async def _get_record(db: AsyncSession, ip_hash: str, for_update: bool = False) -> Optional[LoginAttempt]:
    stmt = select(LoginAttempt).where(LoginAttempt.ip_hash == ip_hash)
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def check_login_allowed(
    db: AsyncSession,
    ip_hash: str,
    now: Optional[datetime] = None,
) -> LockoutStatus:
    """检查该 IP 当前是否允许尝试登录"""
    now = now or utc_now()
    record = await _get_record(db, ip_hash)
    if record is None:
        return LockoutStatus(allowed=True, attempts_remaining=MAX_ATTEMPTS)

    if record.locked_until and record.locked_until > now:
        return _locked(record.locked_until, record.lockout_count)

    # 窗口外的旧记录视为清零（lockout_count 保留）
    if record.last_attempt < now - ATTEMPT_WINDOW:
        return LockoutStatus(
            allowed=True,
            attempts_remaining=MAX_ATTEMPTS,
            lockout_count=record.lockout_count,
        )

    if record.locked_until is None and record.attempt_count >= MAX_ATTEMPTS:
        # 计数已达上限但未写入 locked_until
        return _locked(record.last_attempt + lockout_duration(record.lockout_count), record.lockout_count)

    if record.locked_until is not None:
        # 锁定已过期，下一次失败会重新开始计数
        return LockoutStatus(
            allowed=True,
            attempts_remaining=MAX_ATTEMPTS,
            lockout_count=record.lockout_count,
        )

    return LockoutStatus(
        allowed=True,
        attempts_remaining=MAX_ATTEMPTS - record.attempt_count,
        lockout_count=record.lockout_count,
    )


async def record_failed_login(
    db: AsyncSession,
    ip_hash: str,
    now: Optional[datetime] = None,
) -> LockoutStatus:
    """
    记录一次失败登录

    窗口过期或上一次锁定已结束时计数从 1 重新开始；
    计数达到 MAX_ATTEMPTS 时锁定并增加 lockout_count。
    """
    now = now or utc_now()

    for _ in range(2):
        record = await _get_record(db, ip_hash, for_update=True)

        if record is None:
            db.add(LoginAttempt(
                ip_hash=ip_hash,
                attempt_count=1,
                last_attempt=now,
                lockout_count=0,
            ))
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                continue
            return LockoutStatus(allowed=True, attempts_remaining=MAX_ATTEMPTS - 1)

        lockout_expired = record.locked_until is not None and record.locked_until <= now
        if record.last_attempt < now - ATTEMPT_WINDOW or lockout_expired:
            record.attempt_count = 1
            record.last_attempt = now
            record.locked_until = None
            await db.commit()
            return LockoutStatus(
                allowed=True,
                attempts_remaining=MAX_ATTEMPTS - 1,
                lockout_count=record.lockout_count,
            )

        new_count = record.attempt_count + 1
        record.attempt_count = new_count
        record.last_attempt = now

        if new_count >= MAX_ATTEMPTS:
            locked_until = now + lockout_duration(record.lockout_count)
            record.locked_until = locked_until
            record.lockout_count += 1
            lockout_count = record.lockout_count
            await db.commit()
            logger.warning(
                f"Admin login locked for ip {ip_hash[:8]} until {locked_until.isoformat()} "
                f"(lockout #{lockout_count})"
            )
            return _locked(locked_until, lockout_count)

        lockout_count = record.lockout_count
        await db.commit()
        return LockoutStatus(
            allowed=True,
            attempts_remaining=MAX_ATTEMPTS - new_count,
            lockout_count=lockout_count,
        )

    # 两次都与并发插入冲突，按当前状态返回
    return await check_login_allowed(db, ip_hash, now)


async def clear_login_attempts(db: AsyncSession, ip_hash: str) -> None:
    """登录成功后清除失败记录"""
    await db.execute(delete(LoginAttempt).where(LoginAttempt.ip_hash == ip_hash))
    await db.commit()


async def sweep_stale_attempts(db: AsyncSession, now: Optional[datetime] = None) -> int:
    """删除 24 小时未活动且未处于锁定中的记录"""
    now = now or utc_now()
    result = await db.execute(
        delete(LoginAttempt).where(
            LoginAttempt.last_attempt < now - STALE_RECORD_AGE,
            or_(
                LoginAttempt.locked_until.is_(None),
                LoginAttempt.locked_until <= now,
            ),
        )
    )
    await db.commit()
    return result.rowcount or 0
