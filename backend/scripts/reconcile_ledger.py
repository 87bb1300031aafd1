"""账本对账：逐个会话比较缓存余额与账本合计

用法：python scripts/reconcile_ledger.py
有不一致时以非零状态退出。
"""

import asyncio
import logging
import os
import sys

from sqlalchemy import select

# 将 backend/ 加入 sys.path 以便导入 credit_gateway
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from credit_gateway.core.database import async_session_maker, close_db
from credit_gateway.core.errors import LedgerInconsistencyError
from credit_gateway.models.session import AnonymousSession
from credit_gateway.services.ledger import credit_ledger

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def reconcile() -> int:
    """返回不一致的会话数量"""
    mismatches = 0
    async with async_session_maker() as db:
        result = await db.execute(select(AnonymousSession.id).order_by(AnonymousSession.created_at))
        sids = [row[0] for row in result.all()]
        logger.info(f"Reconciling {len(sids)} sessions")

        for sid in sids:
            try:
                await credit_ledger.verify_balance(db, sid)
            except LedgerInconsistencyError:
                # verify_balance 已记录详细日志
                mismatches += 1

    await close_db()
    return mismatches


def main():
    mismatches = asyncio.run(reconcile())
    if mismatches:
        logger.error(f"{mismatches} sessions have a balance that does not match the ledger")
        sys.exit(1)
    logger.info("All balances match the ledger")


if __name__ == "__main__":
    main()
