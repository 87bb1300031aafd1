"""模型生成耗时统计（指数移动平均）"""

import logging
import math
from typing import List

from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from credit_gateway.core.database import utc_now
from credit_gateway.core.errors import ConcurrentUpdateError
from credit_gateway.models.model_stats import ModelStat

logger = logging.getLogger(__name__)

DEFAULT_AVG_MS = 12000.0  # 未见过的模型
EMA_ALPHA = 0.2           # 新样本权重


class ModelStatsView(BaseModel):
    model_id: str
    count: int
    avg_ms: float
    eta_seconds: int


def eta_seconds(avg_ms: float) -> int:
    """平均耗时换算为秒，四舍五入（.5 向上）"""
    return int(math.floor(avg_ms / 1000 + 0.5))


def ema(previous: float, sample: float, alpha: float = EMA_ALPHA) -> float:
    return previous * (1 - alpha) + sample * alpha


def _view(model_id: str, count: int, avg_ms: float) -> ModelStatsView:
    return ModelStatsView(
        model_id=model_id,
        count=count,
        avg_ms=avg_ms,
        eta_seconds=eta_seconds(avg_ms),
    )


async def get_model_stats(db: AsyncSession, model_id: str) -> ModelStatsView:
    """获取单个模型的统计，未见过的模型返回默认值而不是空"""
    result = await db.execute(select(ModelStat).where(ModelStat.model_id == model_id))
    stat = result.scalar_one_or_none()
    if stat is None:
        return _view(model_id, 0, DEFAULT_AVG_MS)
    return _view(stat.model_id, stat.count, stat.avg_ms)


async def list_model_stats(db: AsyncSession) -> List[ModelStatsView]:
    result = await db.execute(select(ModelStat).order_by(ModelStat.model_id))
    return [_view(s.model_id, s.count, s.avg_ms) for s in result.scalars().all()]


async def record_generation_duration(
    db: AsyncSession,
    model_id: str,
    duration_ms: float,
) -> ModelStatsView:
    """
    记录一次生成耗时并更新平均值

    avg' = avg * (1 - α) + sample * α，在一条 UPDATE 中完成；首个样本直接作为平均值。
    """
    if duration_ms < 0 or not math.isfinite(duration_ms):
        raise ValueError(f"duration_ms must be a non-negative number, got {duration_ms}")

    for _ in range(3):
        result = await db.execute(
            update(ModelStat)
            .where(ModelStat.model_id == model_id)
            .values(
                count=ModelStat.count + 1,
                avg_ms=ModelStat.avg_ms * (1 - EMA_ALPHA) + duration_ms * EMA_ALPHA,
                updated_at=utc_now(),
            )
            .returning(ModelStat.count, ModelStat.avg_ms)
        )
        row = result.one_or_none()
        if row is not None:
            await db.commit()
            return _view(model_id, row.count, row.avg_ms)

        db.add(ModelStat(model_id=model_id, count=1, avg_ms=float(duration_ms), updated_at=utc_now()))
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            continue
        return _view(model_id, 1, float(duration_ms))

    raise ConcurrentUpdateError(f"Could not record generation for model {model_id}")
