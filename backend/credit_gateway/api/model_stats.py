"""模型耗时统计 API（用于前端展示预计等待时间）"""

from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from credit_gateway.core.database import get_db
from credit_gateway.services.model_stats import ModelStatsView, get_model_stats, list_model_stats

router = APIRouter(prefix="/api/model-stats", tags=["model-stats"])


@router.get("", response_model=List[ModelStatsView])
async def list_stats(db: AsyncSession = Depends(get_db)):
    return await list_model_stats(db)


# 模型 ID 含有 "/"，如 google/gemini-2.5-flash-image
@router.get("/{model_id:path}", response_model=ModelStatsView)
async def get_stats(model_id: str, db: AsyncSession = Depends(get_db)):
    return await get_model_stats(db, model_id)
