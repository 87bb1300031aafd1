"""生成请求计费流程

Estimated → Reserved → Settled（实际费用）| Released（失败或取消）

调用方先估算并预留，然后在 guard() 中执行生成：
    reservation = await billing.reserve(db, sid, estimate, endpoint="chat")
    if not reservation.success:
        return rejection_response(...)
    async with billing.guard(db, sid, reservation, estimate) as charge:
        ...
        await charge.settle(actual_usd=usage_cost)

guard 内抛出异常会释放预留；正常退出但没有显式结算时按预留金额结算。
任务被取消时预留留给过期清理任务释放。
"""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Union

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from credit_gateway.services.ledger import CreditLedger, ReservationResult, credit_ledger
from credit_gateway.services.model_stats import record_generation_duration
from credit_gateway.services.pricing import (
    DEFAULT_ESTIMATED_TOKENS,
    ChatPricing,
    ImagePricing,
    Number,
    credits_to_usd,
    estimate_credits,
    reconcile_actual,
)

logger = logging.getLogger(__name__)


class CostEstimate(BaseModel):
    """生成前的费用估算"""
    model_id: str
    credits: int
    cost_usd: float
    pricing: Union[ChatPricing, ImagePricing, None] = None


def estimate_chat_cost(
    model_id: str,
    pricing: Optional[ChatPricing],
    estimated_tokens: int = DEFAULT_ESTIMATED_TOKENS,
) -> Optional[CostEstimate]:
    """对话费用估算；价格缺失的模型返回 None（调用方应拒绝）"""
    credits = estimate_credits(pricing, estimated_tokens=estimated_tokens)
    if credits is None:
        return None
    return CostEstimate(model_id=model_id, credits=credits, cost_usd=credits_to_usd(credits), pricing=pricing)


def estimate_image_cost(
    model_id: str,
    pricing: Optional[ImagePricing],
    resolution: str = "1K",
) -> CostEstimate:
    """图片费用估算（保守系数 + 分辨率系数，无价格时使用默认积分）"""
    credits = estimate_credits(pricing or ImagePricing(), resolution=resolution, model_id=model_id)
    return CostEstimate(model_id=model_id, credits=credits, cost_usd=credits_to_usd(credits), pricing=pricing)


def new_generation_id() -> str:
    return uuid.uuid4().hex


class GenerationCharge:
    """guard() 中的一次生成，最多结算一次"""

    def __init__(
        self,
        billing: "BillingService",
        db: AsyncSession,
        sid: str,
        reservation: ReservationResult,
        estimate: CostEstimate,
    ):
        self._billing = billing
        self._db = db
        self.sid = sid
        self.reservation = reservation
        self.estimate = estimate
        self.result: Optional[ReservationResult] = None

    @property
    def settled(self) -> bool:
        return self.result is not None

    async def settle(
        self,
        actual_usd: Optional[Number] = None,
        prompt_tokens: Optional[int] = None,
        completion_tokens: Optional[int] = None,
        duration_ms: Optional[float] = None,
    ) -> ReservationResult:
        if self.result is None:
            self.result = await self._billing.settle(
                self._db,
                self.sid,
                self.reservation,
                self.estimate,
                actual_usd=actual_usd,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                duration_ms=duration_ms,
            )
        return self.result


class BillingService:
    """计费编排：预留、结算、释放"""

    def __init__(self, ledger: CreditLedger = credit_ledger):
        self.ledger = ledger

    async def reserve(
        self,
        db: AsyncSession,
        sid: str,
        estimate: CostEstimate,
        endpoint: str,
        generation_id: Optional[str] = None,
    ) -> ReservationResult:
        """检查每日上限与余额后预留积分"""
        return await self.ledger.reserve(
            db,
            sid,
            credits=estimate.credits,
            cost_usd=estimate.cost_usd,
            generation_id=generation_id or new_generation_id(),
            model_id=estimate.model_id,
            endpoint=endpoint,
        )

    async def settle(
        self,
        db: AsyncSession,
        sid: str,
        reservation: ReservationResult,
        estimate: CostEstimate,
        actual_usd: Optional[Number] = None,
        prompt_tokens: Optional[int] = None,
        completion_tokens: Optional[int] = None,
        duration_ms: Optional[float] = None,
    ) -> ReservationResult:
        """按实际用量结算，并记录模型耗时"""
        if duration_ms is not None:
            await record_generation_duration(db, estimate.model_id, duration_ms)

        if reservation.admin_bypass:
            return reservation

        actual = reconcile_actual(
            estimate.pricing,
            reserved_credits=reservation.reserved_credits or estimate.credits,
            actual_usd=actual_usd,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
        )
        if actual.used_actual:
            logger.info(
                f"Generation {reservation.generation_id}: estimated {estimate.credits}, actual {actual.credits} credits"
            )
        cost_usd = float(actual_usd) if actual.used_actual and actual_usd is not None else credits_to_usd(actual.credits)
        return await self.ledger.settle(
            db,
            sid,
            reservation.generation_id,
            actual_credits=actual.credits,
            cost_usd=cost_usd,
            model_id=estimate.model_id,
        )

    async def release(self, db: AsyncSession, sid: str, generation_id: str) -> ReservationResult:
        return await self.ledger.release(db, sid, generation_id)

    @asynccontextmanager
    async def guard(
        self,
        db: AsyncSession,
        sid: str,
        reservation: ReservationResult,
        estimate: CostEstimate,
    ) -> AsyncIterator[GenerationCharge]:
        """生成期间持有预留；异常时释放，未结算时按预留金额结算"""
        charge = GenerationCharge(self, db, sid, reservation, estimate)
        try:
            yield charge
        except Exception:
            if not charge.settled and not reservation.admin_bypass:
                await db.rollback()
                await self.release(db, sid, reservation.generation_id)
                logger.info(f"Generation {reservation.generation_id} failed; reservation released")
            raise
        if not charge.settled:
            await charge.settle()


# 全局计费实例
billing_service = BillingService()
