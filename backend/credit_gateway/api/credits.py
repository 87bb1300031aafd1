"""积分账本 API"""

from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from credit_gateway.core.auth_deps import SessionContext, require_session
from credit_gateway.core.database import get_db
from credit_gateway.services.ledger import LedgerEntryView, credit_ledger

router = APIRouter(prefix="/api/credits", tags=["credits"])


@router.get("/history", response_model=List[LedgerEntryView])
async def get_credit_history(
    limit: int = Query(50, ge=1, le=200),
    context: SessionContext = Depends(require_session),
    db: AsyncSession = Depends(get_db),
):
    """当前会话的账本记录，最新在前"""
    return await credit_ledger.get_history(db, context.sid, limit=limit)
