"""积分账本、预留生命周期与每日上限测试"""

import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select, update

from credit_gateway.core.database import utc_now
from credit_gateway.core.errors import LedgerInconsistencyError, RejectionReason, SessionNotFoundError
from credit_gateway.core.security import Tier
from credit_gateway.models.ledger import AdminAuditLog, CreditLedgerEntry
from credit_gateway.models.session import AnonymousSession
from credit_gateway.services.ledger import (
    CreditLedger,
    LedgerReason,
    ReservationState,
    credit_ledger,
    evaluate_spend,
    reservation_state,
)
from credit_gateway.services.session_identity import upgrade_to_admin

NOW = datetime(2026, 3, 1, 12, 0, 0)
TODAY = datetime(2026, 3, 1)


async def balance_of(db, sid):
    db.expire_all()
    result = await db.execute(select(AnonymousSession.credit_balance).where(AnonymousSession.id == sid))
    return result.scalar_one()


async def reasons_for(db, sid, generation_id):
    result = await db.execute(
        select(CreditLedgerEntry.reason).where(
            CreditLedgerEntry.sid == sid,
            CreditLedgerEntry.generation_id == generation_id,
        )
    )
    return sorted(result.scalars().all())


# ----------------------------------------------------------------------
# 纯函数
# ----------------------------------------------------------------------

def test_spend_within_cap_at_boundary():
    decision, reset = evaluate_spend(Tier.PAID.value, 4.99, 5.0, TODAY, 0.01, NOW)
    assert decision.allowed
    assert decision.daily_spend_usd == 5.0
    assert not reset


def test_spend_over_cap_is_rejected():
    decision, _ = evaluate_spend(Tier.PAID.value, 5.0, 5.0, TODAY, 0.01, NOW)
    assert not decision.allowed
    assert decision.reason == RejectionReason.SPEND_CAP_EXCEEDED
    assert decision.remaining_usd == 0.0


def test_spend_rolls_over_at_utc_midnight():
    decision, reset = evaluate_spend(Tier.PAID.value, 5.0, 5.0, TODAY - timedelta(seconds=1), 1.0, NOW)
    assert reset
    assert decision.allowed
    assert decision.daily_spend_usd == 1.0


def test_admin_bypasses_cap():
    decision, _ = evaluate_spend(Tier.ADMIN.value, 100.0, 5.0, TODAY, 50.0, NOW)
    assert decision.allowed
    assert decision.admin_bypass


@pytest.mark.parametrize("reasons,state", [
    ([], ReservationState.NONE),
    (["reservation"], ReservationState.RESERVED),
    (["reservation", "refund"], ReservationState.RELEASED),
    (["reservation", "refund", "generation"], ReservationState.SETTLED),
])
def test_reservation_state_from_reasons(reasons, state):
    assert reservation_state(reasons) == state


# ----------------------------------------------------------------------
# 余额变更
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_add_credits_appends_entry(db, make_session):
    sid = await make_session()
    result = await credit_ledger.add_credits(db, sid, 100)
    assert result.success
    assert result.new_balance == 100
    assert await balance_of(db, sid) == 100
    assert await credit_ledger.ledger_sum(db, sid) == 100


@pytest.mark.asyncio
async def test_add_credits_is_idempotent_per_invoice(db, make_session):
    sid = await make_session()
    await credit_ledger.add_credits(db, sid, 50, invoice_id="inv-1")
    again = await credit_ledger.add_credits(db, sid, 50, invoice_id="inv-1")
    assert again.already_applied
    assert await balance_of(db, sid) == 50


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -5, 1.5, float("nan"), float("inf"), True])
async def test_add_credits_rejects_invalid_amounts(db, make_session, amount):
    sid = await make_session()
    with pytest.raises(ValueError):
        await credit_ledger.add_credits(db, sid, amount)


@pytest.mark.asyncio
async def test_unknown_session_raises(db):
    with pytest.raises(SessionNotFoundError):
        await credit_ledger.add_credits(db, "missing", 10)


@pytest.mark.asyncio
async def test_debit_beyond_balance_is_rejected(db, make_session):
    sid = await make_session(credits=10)
    result = await credit_ledger.append_entry(db, sid, -11, LedgerReason.GENERATION)
    assert not result.success
    assert result.reason == RejectionReason.INSUFFICIENT_CREDIT
    assert result.required == 11
    assert await balance_of(db, sid) == 10
    assert await credit_ledger.ledger_sum(db, sid) == 10


@pytest.mark.asyncio
async def test_verify_balance_detects_tampering(db, make_session):
    sid = await make_session(credits=40)
    assert await credit_ledger.verify_balance(db, sid) == 40

    await db.execute(update(AnonymousSession).where(AnonymousSession.id == sid).values(credit_balance=41))
    await db.commit()
    with pytest.raises(LedgerInconsistencyError):
        await credit_ledger.verify_balance(db, sid)


@pytest.mark.asyncio
async def test_history_is_newest_first(db, make_session):
    sid = await make_session(credits=100)
    await credit_ledger.reserve(db, sid, 10, 0.1, "gen-1")

    history = await credit_ledger.get_history(db, sid)
    assert [e.reason for e in history] == ["reservation", "purchase"]
    assert len(await credit_ledger.get_history(db, sid, limit=1)) == 1


# ----------------------------------------------------------------------
# 每日上限
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_spend_cap_accumulates(db, make_session):
    sid = await make_session()
    first = await credit_ledger.check_and_reserve_spend(db, sid, 4.99)
    assert first.allowed
    second = await credit_ledger.check_and_reserve_spend(db, sid, 0.01)
    assert second.allowed
    third = await credit_ledger.check_and_reserve_spend(db, sid, 0.01)
    assert not third.allowed
    assert third.reason == RejectionReason.SPEND_CAP_EXCEEDED


@pytest.mark.asyncio
async def test_spend_resets_on_new_day(db, make_session):
    sid = await make_session()
    await db.execute(
        update(AnonymousSession)
        .where(AnonymousSession.id == sid)
        .values(daily_spend_usd=5.0, daily_reset_at=utc_now() - timedelta(days=1))
    )
    await db.commit()

    decision = await credit_ledger.check_and_reserve_spend(db, sid, 1.0)
    assert decision.allowed
    db.expire_all()
    session = (await db.execute(select(AnonymousSession).where(AnonymousSession.id == sid))).scalar_one()
    assert session.daily_spend_usd == 1.0
    assert session.daily_reset_at >= utc_now().replace(hour=0, minute=0, second=0, microsecond=0)


@pytest.mark.asyncio
async def test_admin_spend_goes_to_audit_log(db, make_session):
    sid = await make_session()
    await upgrade_to_admin(db, sid)

    decision = await credit_ledger.check_and_reserve_spend(db, sid, 50.0, endpoint="chat", model_id="m")
    assert decision.allowed
    assert decision.admin_bypass
    count = (await db.execute(select(func.count()).select_from(AdminAuditLog))).scalar_one()
    assert count == 1


# ----------------------------------------------------------------------
# 预留 / 结算 / 释放
# ----------------------------------------------------------------------

@pytest.mark.asyncio
async def test_reserve_debits_and_is_idempotent(db, make_session):
    sid = await make_session(credits=100)
    reservation = await credit_ledger.reserve(db, sid, 30, 0.3, "gen-1", model_id="m")
    assert reservation.success
    assert reservation.state == ReservationState.RESERVED
    assert reservation.new_balance == 70

    again = await credit_ledger.reserve(db, sid, 30, 0.3, "gen-1", model_id="m")
    assert again.already_applied
    assert again.reserved_credits == 30
    assert await balance_of(db, sid) == 70


@pytest.mark.asyncio
async def test_reserve_rejects_insufficient_credit(db, make_session):
    sid = await make_session(credits=5)
    result = await credit_ledger.reserve(db, sid, 30, 0.3, "gen-1")
    assert not result.success
    assert result.reason == RejectionReason.INSUFFICIENT_CREDIT
    assert await balance_of(db, sid) == 5
    assert await reasons_for(db, sid, "gen-1") == []


@pytest.mark.asyncio
async def test_reserve_rejects_over_daily_cap(db, make_session):
    sid = await make_session(credits=10_000)
    result = await credit_ledger.reserve(db, sid, 600, 6.0, "gen-1")
    assert not result.success
    assert result.reason == RejectionReason.SPEND_CAP_EXCEEDED
    assert await balance_of(db, sid) == 10_000


@pytest.mark.asyncio
async def test_settle_charges_actual_amount(db, make_session):
    sid = await make_session(credits=100)
    await credit_ledger.reserve(db, sid, 30, 0.3, "gen-1")

    settled = await credit_ledger.settle(db, sid, "gen-1", actual_credits=12, cost_usd=0.12)
    assert settled.state == ReservationState.SETTLED
    assert settled.charged_credits == 12
    assert await balance_of(db, sid) == 88
    assert await reasons_for(db, sid, "gen-1") == ["generation", "refund", "reservation"]

    again = await credit_ledger.settle(db, sid, "gen-1", actual_credits=12)
    assert again.already_applied
    assert await balance_of(db, sid) == 88
    assert await credit_ledger.verify_balance(db, sid) == 88


@pytest.mark.asyncio
async def test_settle_caps_charge_at_available_balance(db, make_session):
    sid = await make_session(credits=40)
    await credit_ledger.reserve(db, sid, 30, 0.3, "gen-1")

    settled = await credit_ledger.settle(db, sid, "gen-1", actual_credits=55)
    assert settled.charged_credits == 40
    assert await balance_of(db, sid) == 0


@pytest.mark.asyncio
async def test_release_restores_balance_once(db, make_session):
    sid = await make_session(credits=100)
    await credit_ledger.reserve(db, sid, 30, 0.3, "gen-1")

    released = await credit_ledger.release(db, sid, "gen-1")
    assert released.state == ReservationState.RELEASED
    assert await balance_of(db, sid) == 100

    again = await credit_ledger.release(db, sid, "gen-1")
    assert again.already_applied
    assert await balance_of(db, sid) == 100

    late_settle = await credit_ledger.settle(db, sid, "gen-1", actual_credits=10)
    assert not late_settle.success
    assert late_settle.state == ReservationState.RELEASED
    assert await credit_ledger.get_reservation_state(db, sid, "gen-1") == ReservationState.RELEASED


@pytest.mark.asyncio
async def test_release_without_reservation_is_noop(db, make_session):
    sid = await make_session(credits=10)
    result = await credit_ledger.release(db, sid, "never-reserved")
    assert result.state == ReservationState.NONE
    assert not result.already_applied
    assert await balance_of(db, sid) == 10


@pytest.mark.asyncio
async def test_admin_reservation_is_not_debited(db, make_session):
    sid = await make_session(credits=10)
    await upgrade_to_admin(db, sid)

    result = await credit_ledger.reserve(db, sid, 500, 5.0, "gen-1", model_id="m", endpoint="generate-image")
    assert result.success
    assert result.admin_bypass
    assert await balance_of(db, sid) == 10
    assert await reasons_for(db, sid, "gen-1") == []

    audit = (await db.execute(select(AdminAuditLog))).scalar_one()
    assert audit.endpoint == "generate-image"
    assert audit.estimated_credits == 500


@pytest.mark.asyncio
async def test_stale_reservations_are_released(db, make_session):
    sid = await make_session(credits=100)
    past = CreditLedger(now=lambda: utc_now() - timedelta(hours=1))
    await past.reserve(db, sid, 30, 0.3, "old-gen")
    await credit_ledger.reserve(db, sid, 20, 0.2, "new-gen")

    released = await credit_ledger.release_stale_reservations(db, max_age=timedelta(minutes=15))
    assert released == 1
    assert await credit_ledger.get_reservation_state(db, sid, "old-gen") == ReservationState.RELEASED
    assert await credit_ledger.get_reservation_state(db, sid, "new-gen") == ReservationState.RESERVED
    assert await balance_of(db, sid) == 80


def test_spend_just_over_cap_is_rejected():
    decision, _ = evaluate_spend(Tier.PAID.value, 4.99, 5.0, TODAY, 0.02, NOW)
    assert not decision.allowed


@pytest.mark.asyncio
async def test_concurrent_purchases_with_one_invoice_credit_once(session_maker, make_session, db):
    sid = await make_session()

    async def purchase():
        async with session_maker() as session:
            return await credit_ledger.add_credits(session, sid, 100, invoice_id="inv-1")

    results = await asyncio.gather(*(purchase() for _ in range(4)))
    assert sum(1 for r in results if not r.already_applied) == 1
    assert all(r.success for r in results)

    rows = await db.execute(
        select(func.count()).select_from(CreditLedgerEntry).where(CreditLedgerEntry.invoice_id == "inv-1")
    )
    assert rows.scalar_one() == 1
    assert await balance_of(db, sid) == 100
    assert await credit_ledger.verify_balance(db, sid) == 100


@pytest.mark.asyncio
async def test_concurrent_reservations_never_overdraw(session_maker, make_session, db):
    sid = await make_session(credits=10)

    async def reserve(n):
        async with session_maker() as session:
            return await credit_ledger.reserve(session, sid, 4, 0.04, f"gen-{n}")

    results = await asyncio.gather(*(reserve(n) for n in range(4)))
    assert sum(1 for r in results if r.success) == 2
    assert all(r.reason == RejectionReason.INSUFFICIENT_CREDIT for r in results if not r.success)
    assert await balance_of(db, sid) == 2
    assert await credit_ledger.verify_balance(db, sid) == 2


@pytest.mark.asyncio
async def test_concurrent_reservations_respect_daily_cap(session_maker, make_session, db):
    sid = await make_session(credits=1000)
    await db.execute(
        update(AnonymousSession).where(AnonymousSession.id == sid).values(daily_spend_limit_usd=0.1)
    )
    await db.commit()

    async def reserve(n):
        async with session_maker() as session:
            return await credit_ledger.reserve(session, sid, 4, 0.04, f"gen-{n}")

    results = await asyncio.gather(*(reserve(n) for n in range(4)))
    assert sum(1 for r in results if r.success) == 2
    assert all(r.reason == RejectionReason.SPEND_CAP_EXCEEDED for r in results if not r.success)
    assert await balance_of(db, sid) == 992
    assert await credit_ledger.verify_balance(db, sid) == 992

    spent = await db.execute(select(AnonymousSession.daily_spend_usd).where(AnonymousSession.id == sid))
    assert spent.scalar_one() == pytest.approx(0.08)
