"""积分账本与每日消费上限

账本只追加：每次余额变化都先写入一条账本记录，会话上的 credit_balance 只是账本合计的缓存。
两者在同一事务中修改，会话行通过 version 列做比较并交换（CAS），并发冲突时重读重试。

生成请求的积分状态：
    Estimated → Reserved → Settled（按实际费用）| Released（失败或取消）
"""

import logging
import math
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, List, Optional, Sequence

from pydantic import BaseModel
from sqlalchemy import and_, exists, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from credit_gateway.core.database import start_of_utc_day, utc_now
from credit_gateway.core.errors import (
    ConcurrentUpdateError,
    LedgerInconsistencyError,
    RejectionReason,
    SessionNotFoundError,
)
from credit_gateway.core.security import Tier
from credit_gateway.models.ledger import AdminAuditLog, CreditLedgerEntry
from credit_gateway.models.session import AnonymousSession

logger = logging.getLogger(__name__)

MAX_CAS_ATTEMPTS = 5
USD_PRECISION = 6


class LedgerReason(str, Enum):
    PURCHASE = "purchase"
    RESERVATION = "reservation"
    GENERATION = "generation"
    REFUND = "refund"


class ReservationState(str, Enum):
    NONE = "none"
    RESERVED = "reserved"
    SETTLED = "settled"
    RELEASED = "released"


class LedgerEntryMeta(BaseModel):
    model_id: Optional[str] = None
    cost_usd: Optional[float] = None
    generation_id: Optional[str] = None
    invoice_id: Optional[str] = None


class SpendDecision(BaseModel):
    """每日消费上限检查结果"""
    allowed: bool
    daily_spend_usd: float
    daily_limit_usd: Optional[float] = None  # 管理员为 None（不受限）
    remaining_usd: Optional[float] = None
    admin_bypass: bool = False
    reason: Optional[RejectionReason] = None


class LedgerResult(BaseModel):
    """余额变更结果"""
    success: bool
    new_balance: int
    already_applied: bool = False
    required: Optional[int] = None
    reason: Optional[RejectionReason] = None


class ReservationResult(BaseModel):
    """预留 / 结算 / 释放结果"""
    success: bool
    generation_id: str
    state: ReservationState
    new_balance: int
    reserved_credits: int = 0
    charged_credits: int = 0
    already_applied: bool = False
    admin_bypass: bool = False
    spend: Optional[SpendDecision] = None
    reason: Optional[RejectionReason] = None


class LedgerEntryView(BaseModel):
    id: str
    delta: int
    reason: str
    model_id: Optional[str] = None
    cost_usd: Optional[float] = None
    generation_id: Optional[str] = None
    created_at: datetime


def round_usd(value: float) -> float:
    return round(value, USD_PRECISION)


def evaluate_spend(
    tier: str,
    daily_spend_usd: float,
    daily_limit_usd: float,
    daily_reset_at: datetime,
    cost_usd: float,
    now: datetime,
) -> tuple[SpendDecision, bool]:
    """
    每日上限检查（纯函数）

    daily_reset_at 早于今天 UTC 零点时当天消费视为 0。
    金额按 6 位小数比较，4.99 + 0.01 <= 5 成立。

    Returns:
        (决策, 是否需要重置当天消费)
    """
    if tier == Tier.ADMIN.value:
        return SpendDecision(allowed=True, daily_spend_usd=0.0, admin_bypass=True), False

    reset_needed = daily_reset_at < start_of_utc_day(now)
    current = 0.0 if reset_needed else (daily_spend_usd or 0.0)
    remaining = round_usd(max(0.0, daily_limit_usd - current))

    if round_usd(current + cost_usd) > round_usd(daily_limit_usd):
        return SpendDecision(
            allowed=False,
            daily_spend_usd=round_usd(current),
            daily_limit_usd=daily_limit_usd,
            remaining_usd=remaining,
            reason=RejectionReason.SPEND_CAP_EXCEEDED,
        ), reset_needed

    return SpendDecision(
        allowed=True,
        daily_spend_usd=round_usd(current + cost_usd),
        daily_limit_usd=daily_limit_usd,
        remaining_usd=round_usd(max(0.0, daily_limit_usd - current - cost_usd)),
    ), reset_needed


def reservation_state(reasons: Sequence[str]) -> ReservationState:
    """根据同一 generation_id 的账本原因推导预留状态"""
    if LedgerReason.GENERATION.value in reasons:
        return ReservationState.SETTLED
    if LedgerReason.REFUND.value in reasons:
        return ReservationState.RELEASED
    if LedgerReason.RESERVATION.value in reasons:
        return ReservationState.RESERVED
    return ReservationState.NONE


def _validate_credits(amount: int, name: str = "amount") -> None:
    if (
        isinstance(amount, bool)
        or not isinstance(amount, (int, float))
        or not math.isfinite(amount)
        or amount <= 0
        or int(amount) != amount
    ):
        raise ValueError(f"{name} must be a positive whole number of credits, received: {amount}")


class CreditLedger:
    """积分账本服务"""

    def __init__(self, now: Callable[[], datetime] = utc_now):
        self._now = now

    # ------------------------------------------------------------------
    # 内部工具
    # ------------------------------------------------------------------

    async def _load_session(self, db: AsyncSession, sid: str):
        result = await db.execute(
            select(
                AnonymousSession.id,
                AnonymousSession.credit_balance,
                AnonymousSession.tier,
                AnonymousSession.daily_spend_usd,
                AnonymousSession.daily_spend_limit_usd,
                AnonymousSession.daily_reset_at,
                AnonymousSession.version,
            ).where(AnonymousSession.id == sid)
        )
        row = result.one_or_none()
        if row is None:
            raise SessionNotFoundError(sid)
        return row

    async def _generation_entries(self, db: AsyncSession, sid: str, generation_id: str):
        result = await db.execute(
            select(CreditLedgerEntry.reason, CreditLedgerEntry.delta).where(
                CreditLedgerEntry.sid == sid,
                CreditLedgerEntry.generation_id == generation_id,
            )
        )
        return result.all()

    async def _compare_and_swap(
        self,
        db: AsyncSession,
        sid: str,
        version: int,
        values: dict,
        entries: List[CreditLedgerEntry],
    ) -> bool:
        """
        以 version 为条件更新会话并追加账本记录，二者同一事务提交

        Returns:
            False 表示会话已被并发修改（或账本唯一约束冲突），调用方应重读重试
        """
        result = await db.execute(
            update(AnonymousSession)
            .where(AnonymousSession.id == sid, AnonymousSession.version == version)
            .values(version=version + 1, **values)
        )
        if result.rowcount != 1:
            await db.rollback()
            return False

        db.add_all(entries)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            return False
        return True

    # ------------------------------------------------------------------
    # 余额变更
    # ------------------------------------------------------------------

    async def _invoice_applied(self, db: AsyncSession, sid: str, invoice_id: Optional[str]) -> bool:
        if not invoice_id:
            return False
        result = await db.execute(
            select(func.count()).select_from(CreditLedgerEntry).where(
                CreditLedgerEntry.sid == sid,
                CreditLedgerEntry.invoice_id == invoice_id,
            )
        )
        return result.scalar_one() > 0

    async def append_entry(
        self,
        db: AsyncSession,
        sid: str,
        delta: int,
        reason: LedgerReason,
        meta: Optional[LedgerEntryMeta] = None,
    ) -> LedgerResult:
        """
        追加一条账本记录并更新缓存余额

        扣减超过当前余额时拒绝（insufficient_credit），余额永远不为负。
        带 invoice_id 的记录每次重试前都重新检查，已入账时返回 already_applied。
        """
        if delta == 0:
            raise ValueError("Ledger entries must change the balance")
        meta = meta or LedgerEntryMeta()

        for _ in range(MAX_CAS_ATTEMPTS):
            session = await self._load_session(db, sid)
            if await self._invoice_applied(db, sid, meta.invoice_id):
                await db.rollback()
                return LedgerResult(success=True, new_balance=session.credit_balance, already_applied=True)

            new_balance = session.credit_balance + delta
            if new_balance < 0:
                await db.rollback()
                logger.info(f"Insufficient credit for {sid[:8]}: balance {session.credit_balance}, delta {delta}")
                return LedgerResult(
                    success=False,
                    new_balance=session.credit_balance,
                    required=-delta,
                    reason=RejectionReason.INSUFFICIENT_CREDIT,
                )

            entry = CreditLedgerEntry(
                sid=sid,
                delta=delta,
                reason=LedgerReason(reason).value,
                model_id=meta.model_id,
                cost_usd=meta.cost_usd,
                generation_id=meta.generation_id,
                invoice_id=meta.invoice_id,
                created_at=self._now(),
            )
            if await self._compare_and_swap(db, sid, session.version, {"credit_balance": new_balance}, [entry]):
                return LedgerResult(success=True, new_balance=new_balance)

        raise ConcurrentUpdateError(f"Could not append ledger entry for session {sid}")

    async def add_credits(
        self,
        db: AsyncSession,
        sid: str,
        amount: int,
        reason: LedgerReason = LedgerReason.PURCHASE,
        invoice_id: Optional[str] = None,
    ) -> LedgerResult:
        """充值；同一 invoice_id 只入账一次"""
        _validate_credits(amount)
        amount = int(amount)

        result = await self.append_entry(
            db, sid, amount, reason, LedgerEntryMeta(invoice_id=invoice_id)
        )
        if result.already_applied:
            logger.info(f"Invoice {invoice_id} already credited to {sid[:8]}")
            return result
        logger.info(f"Added {amount} credits to {sid[:8]} ({LedgerReason(reason).value})")
        return result

    # ------------------------------------------------------------------
    # 每日上限
    # ------------------------------------------------------------------

    async def check_and_reserve_spend(
        self,
        db: AsyncSession,
        sid: str,
        cost_usd: float,
        endpoint: Optional[str] = None,
        model_id: Optional[str] = None,
    ) -> SpendDecision:
        """
        检查每日消费上限，允许时把 cost_usd 计入当天消费

        管理员会话绕过上限，但每次绕过都写入审计日志，不计入 daily_spend_usd。
        """
        if cost_usd < 0 or not math.isfinite(cost_usd):
            raise ValueError(f"cost_usd must be a non-negative number, received: {cost_usd}")

        for _ in range(MAX_CAS_ATTEMPTS):
            now = self._now()
            session = await self._load_session(db, sid)
            decision, reset_needed = evaluate_spend(
                session.tier,
                session.daily_spend_usd,
                session.daily_spend_limit_usd,
                session.daily_reset_at,
                cost_usd,
                now,
            )

            if decision.admin_bypass:
                await db.rollback()
                await self.log_admin_usage(db, sid, endpoint or "unknown", model_id, None, cost_usd)
                return decision

            if not decision.allowed:
                await db.rollback()
                logger.info(f"Daily spend cap reached for {sid[:8]}: {decision.daily_spend_usd} + {cost_usd}")
                return decision

            values = {"daily_spend_usd": decision.daily_spend_usd}
            if reset_needed:
                values["daily_reset_at"] = start_of_utc_day(now)
            if await self._compare_and_swap(db, sid, session.version, values, []):
                return decision

        raise ConcurrentUpdateError(f"Could not update daily spend for session {sid}")

    async def log_admin_usage(
        self,
        db: AsyncSession,
        sid: str,
        endpoint: str,
        model_id: Optional[str],
        estimated_credits: Optional[int],
        estimated_usd: Optional[float],
    ) -> None:
        """记录一次管理员调用（不扣费）"""
        db.add(AdminAuditLog(
            sid=sid,
            endpoint=endpoint,
            model_id=model_id,
            estimated_credits=estimated_credits,
            estimated_usd=estimated_usd,
            created_at=self._now(),
        ))
        await db.commit()
        logger.info(f"Admin usage: {sid[:8]} {endpoint} {model_id} ~{estimated_credits} credits")

    # ------------------------------------------------------------------
    # 预留 / 结算 / 释放
    # ------------------------------------------------------------------

    async def reserve(
        self,
        db: AsyncSession,
        sid: str,
        credits: int,
        cost_usd: float,
        generation_id: str,
        model_id: Optional[str] = None,
        endpoint: str = "generate",
    ) -> ReservationResult:
        """
        生成前预留积分

        检查每日上限与余额，扣减余额并追加 reservation 记录；同一 generation_id 幂等。
        """
        _validate_credits(credits, "credits")
        credits = int(credits)

        for _ in range(MAX_CAS_ATTEMPTS):
            now = self._now()
            session = await self._load_session(db, sid)

            if session.tier == Tier.ADMIN.value:
                await db.rollback()
                await self.log_admin_usage(db, sid, endpoint, model_id, credits, cost_usd)
                return ReservationResult(
                    success=True,
                    generation_id=generation_id,
                    state=ReservationState.NONE,
                    new_balance=session.credit_balance,
                    admin_bypass=True,
                )

            entries = await self._generation_entries(db, sid, generation_id)
            state = reservation_state([e.reason for e in entries])
            if state != ReservationState.NONE:
                await db.rollback()
                reserved = sum(-e.delta for e in entries if e.reason == LedgerReason.RESERVATION.value)
                return ReservationResult(
                    success=state != ReservationState.RELEASED,
                    generation_id=generation_id,
                    state=state,
                    new_balance=session.credit_balance,
                    reserved_credits=reserved,
                    already_applied=True,
                )

            decision, reset_needed = evaluate_spend(
                session.tier,
                session.daily_spend_usd,
                session.daily_spend_limit_usd,
                session.daily_reset_at,
                cost_usd,
                now,
            )
            if not decision.allowed:
                await db.rollback()
                logger.info(f"Reservation rejected for {sid[:8]}: daily spend cap")
                return ReservationResult(
                    success=False,
                    generation_id=generation_id,
                    state=ReservationState.NONE,
                    new_balance=session.credit_balance,
                    spend=decision,
                    reason=RejectionReason.SPEND_CAP_EXCEEDED,
                )

            if session.credit_balance < credits:
                await db.rollback()
                logger.info(f"Reservation rejected for {sid[:8]}: {session.credit_balance} < {credits}")
                return ReservationResult(
                    success=False,
                    generation_id=generation_id,
                    state=ReservationState.NONE,
                    new_balance=session.credit_balance,
                    reserved_credits=credits,
                    spend=decision,
                    reason=RejectionReason.INSUFFICIENT_CREDIT,
                )

            new_balance = session.credit_balance - credits
            values = {
                "credit_balance": new_balance,
                "daily_spend_usd": decision.daily_spend_usd,
            }
            if reset_needed:
                values["daily_reset_at"] = start_of_utc_day(now)

            entry = CreditLedgerEntry(
                sid=sid,
                delta=-credits,
                reason=LedgerReason.RESERVATION.value,
                model_id=model_id,
                cost_usd=cost_usd,
                generation_id=generation_id,
                created_at=now,
            )
            if await self._compare_and_swap(db, sid, session.version, values, [entry]):
                return ReservationResult(
                    success=True,
                    generation_id=generation_id,
                    state=ReservationState.RESERVED,
                    new_balance=new_balance,
                    reserved_credits=credits,
                    spend=decision,
                )

        raise ConcurrentUpdateError(f"Could not reserve credits for session {sid}")

    async def settle(
        self,
        db: AsyncSession,
        sid: str,
        generation_id: str,
        actual_credits: int,
        cost_usd: Optional[float] = None,
        model_id: Optional[str] = None,
    ) -> ReservationResult:
        """
        按真实费用结算预留

        追加 refund（冲回预留）与 generation（真实扣费）两条记录。真实扣费超过可用余额时
        截断到可用余额，余额不会为负。已结算或已释放时不做任何事。
        """
        _validate_credits(actual_credits, "actual_credits")
        actual_credits = int(actual_credits)

        for _ in range(MAX_CAS_ATTEMPTS):
            session = await self._load_session(db, sid)
            entries = await self._generation_entries(db, sid, generation_id)
            state = reservation_state([e.reason for e in entries])
            reserved = sum(-e.delta for e in entries if e.reason == LedgerReason.RESERVATION.value)

            if state != ReservationState.RESERVED:
                await db.rollback()
                return ReservationResult(
                    success=state == ReservationState.SETTLED,
                    generation_id=generation_id,
                    state=state,
                    new_balance=session.credit_balance,
                    reserved_credits=reserved,
                    already_applied=state != ReservationState.NONE,
                )

            available = session.credit_balance + reserved
            charged = min(actual_credits, available)
            if charged < actual_credits:
                logger.warning(
                    f"Settlement for {sid[:8]}/{generation_id} capped at {charged} "
                    f"(actual {actual_credits}, available {available})"
                )
            new_balance = available - charged

            now = self._now()
            refund = CreditLedgerEntry(
                sid=sid,
                delta=reserved,
                reason=LedgerReason.REFUND.value,
                generation_id=generation_id,
                created_at=now,
            )
            generation = CreditLedgerEntry(
                sid=sid,
                delta=-charged,
                reason=LedgerReason.GENERATION.value,
                model_id=model_id,
                cost_usd=cost_usd,
                generation_id=generation_id,
                created_at=now,
            )
            if await self._compare_and_swap(db, sid, session.version, {"credit_balance": new_balance}, [refund, generation]):
                return ReservationResult(
                    success=True,
                    generation_id=generation_id,
                    state=ReservationState.SETTLED,
                    new_balance=new_balance,
                    reserved_credits=reserved,
                    charged_credits=charged,
                )

        raise ConcurrentUpdateError(f"Could not settle reservation {generation_id} for session {sid}")

    async def release(self, db: AsyncSession, sid: str, generation_id: str) -> ReservationResult:
        """生成失败或取消时释放预留；未预留、已结算或已释放时不做任何事"""
        for _ in range(MAX_CAS_ATTEMPTS):
            session = await self._load_session(db, sid)
            entries = await self._generation_entries(db, sid, generation_id)
            state = reservation_state([e.reason for e in entries])
            reserved = sum(-e.delta for e in entries if e.reason == LedgerReason.RESERVATION.value)

            if state != ReservationState.RESERVED:
                await db.rollback()
                return ReservationResult(
                    success=True,
                    generation_id=generation_id,
                    state=state,
                    new_balance=session.credit_balance,
                    reserved_credits=reserved,
                    already_applied=state != ReservationState.NONE,
                )

            new_balance = session.credit_balance + reserved
            refund = CreditLedgerEntry(
                sid=sid,
                delta=reserved,
                reason=LedgerReason.REFUND.value,
                generation_id=generation_id,
                created_at=self._now(),
            )
            if await self._compare_and_swap(db, sid, session.version, {"credit_balance": new_balance}, [refund]):
                logger.info(f"Released {reserved} credits for {sid[:8]}/{generation_id}")
                return ReservationResult(
                    success=True,
                    generation_id=generation_id,
                    state=ReservationState.RELEASED,
                    new_balance=new_balance,
                    reserved_credits=reserved,
                )

        raise ConcurrentUpdateError(f"Could not release reservation {generation_id} for session {sid}")

    async def get_reservation_state(self, db: AsyncSession, sid: str, generation_id: str) -> ReservationState:
        entries = await self._generation_entries(db, sid, generation_id)
        return reservation_state([e.reason for e in entries])

    async def release_stale_reservations(
        self,
        db: AsyncSession,
        max_age: timedelta,
        limit: int = 100,
    ) -> int:
        """释放超过 max_age 仍未结算或释放的预留，返回释放数量"""
        cutoff = self._now() - max_age
        closing = aliased(CreditLedgerEntry)
        result = await db.execute(
            select(CreditLedgerEntry.sid, CreditLedgerEntry.generation_id)
            .where(
                CreditLedgerEntry.reason == LedgerReason.RESERVATION.value,
                CreditLedgerEntry.created_at < cutoff,
                ~exists().where(
                    and_(
                        closing.sid == CreditLedgerEntry.sid,
                        closing.generation_id == CreditLedgerEntry.generation_id,
                        closing.reason.in_([LedgerReason.REFUND.value, LedgerReason.GENERATION.value]),
                    )
                ),
            )
            .limit(limit)
        )
        stale = result.all()
        await db.rollback()

        released = 0
        for sid, generation_id in stale:
            try:
                outcome = await self.release(db, sid, generation_id)
            except SessionNotFoundError:
                logger.warning(f"Stale reservation {generation_id} references missing session {sid[:8]}")
                continue
            if outcome.state == ReservationState.RELEASED and not outcome.already_applied:
                released += 1
        if released:
            logger.info(f"Released {released} stale reservations")
        return released

    # ------------------------------------------------------------------
    # 查询与对账
    # ------------------------------------------------------------------

    async def get_history(self, db: AsyncSession, sid: str, limit: int = 50) -> List[LedgerEntryView]:
        """账本记录，最新在前"""
        result = await db.execute(
            select(CreditLedgerEntry)
            .where(CreditLedgerEntry.sid == sid)
            .order_by(CreditLedgerEntry.created_at.desc(), CreditLedgerEntry.id.desc())
            .limit(limit)
        )
        return [
            LedgerEntryView(
                id=e.id,
                delta=e.delta,
                reason=e.reason,
                model_id=e.model_id,
                cost_usd=e.cost_usd,
                generation_id=e.generation_id,
                created_at=e.created_at,
            )
            for e in result.scalars().all()
        ]

    async def ledger_sum(self, db: AsyncSession, sid: str) -> int:
        result = await db.execute(
            select(func.coalesce(func.sum(CreditLedgerEntry.delta), 0)).where(CreditLedgerEntry.sid == sid)
        )
        return int(result.scalar_one())

    async def verify_balance(self, db: AsyncSession, sid: str) -> int:
        """
        校验缓存余额等于账本合计

        Raises:
            LedgerInconsistencyError: 二者不一致（完整性违规）
        """
        session = await self._load_session(db, sid)
        total = await self.ledger_sum(db, sid)
        if total != session.credit_balance:
            logger.critical(
                f"Ledger inconsistency for {sid[:8]}: cached {session.credit_balance}, ledger {total}"
            )
            raise LedgerInconsistencyError(sid, session.credit_balance, total)
        return total


# 全局账本实例
credit_ledger = CreditLedger()
