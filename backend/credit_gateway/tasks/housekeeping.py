"""定期清理任务

- 释放超时仍未结算的积分预留
- 删除一小时未更新的限流窗口
- 删除过期的登录失败记录
"""

import asyncio
import logging
from datetime import timedelta

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from credit_gateway.core.config import Settings
from credit_gateway.services.ledger import CreditLedger, credit_ledger
from credit_gateway.services.login_lockout import sweep_stale_attempts
from credit_gateway.services.rate_limiter import sweep_stale_windows

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL_SECONDS = 300


class HousekeepingReport(BaseModel):
    released_reservations: int = 0
    deleted_windows: int = 0
    deleted_login_attempts: int = 0


async def run_housekeeping(
    session_maker: async_sessionmaker[AsyncSession],
    settings: Settings,
    ledger: CreditLedger = credit_ledger,
) -> HousekeepingReport:
    """执行一轮清理"""
    report = HousekeepingReport()
    async with session_maker() as db:
        report.released_reservations = await ledger.release_stale_reservations(
            db, max_age=timedelta(seconds=settings.reservation_ttl_seconds)
        )
        report.deleted_windows = await sweep_stale_windows(db)
        report.deleted_login_attempts = await sweep_stale_attempts(db)

    if report.deleted_windows or report.deleted_login_attempts:
        logger.info(
            f"Housekeeping removed {report.deleted_windows} rate limit windows "
            f"and {report.deleted_login_attempts} login attempt records"
        )
    return report


async def cleanup_task(
    session_maker: async_sessionmaker[AsyncSession],
    settings: Settings,
    interval: float = CLEANUP_INTERVAL_SECONDS,
):
    """定期清理过期数据，单轮失败只记录日志"""
    while True:
        await asyncio.sleep(interval)
        try:
            await run_housekeeping(session_maker, settings)
        except Exception:
            logger.exception("Housekeeping run failed")
