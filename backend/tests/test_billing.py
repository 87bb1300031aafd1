"""计费编排测试"""

import pytest
from sqlalchemy import select

from credit_gateway.core.errors import RejectionReason
from credit_gateway.models.ledger import CreditLedgerEntry
from credit_gateway.services.billing import (
    billing_service,
    estimate_chat_cost,
    estimate_image_cost,
)
from credit_gateway.services.ledger import ReservationState, credit_ledger
from credit_gateway.services.model_stats import get_model_stats
from credit_gateway.services.pricing import ChatPricing, ImagePricing
from credit_gateway.services.session_identity import upgrade_to_admin

CHAT_MODEL = "anthropic/claude-3-haiku"
IMAGE_MODEL = "google/gemini-2.5-flash-image"


class GenerationFailed(Exception):
    pass


def chat_estimate():
    return estimate_chat_cost(CHAT_MODEL, ChatPricing(prompt="10", completion="30"))


def test_estimates():
    estimate = chat_estimate()
    assert estimate.credits == 5
    assert estimate.cost_usd == 0.05
    assert estimate_chat_cost(CHAT_MODEL, None) is None

    image = estimate_image_cost(IMAGE_MODEL, None, resolution="4K")
    assert image.credits == 20
    assert estimate_image_cost(IMAGE_MODEL, ImagePricing(image_output="0.04")).credits == 175


@pytest.mark.asyncio
async def test_guard_settles_actual_cost(db, make_session):
    sid = await make_session(credits=100)
    estimate = chat_estimate()
    reservation = await billing_service.reserve(db, sid, estimate, endpoint="chat")
    assert reservation.success

    async with billing_service.guard(db, sid, reservation, estimate) as charge:
        result = await charge.settle(actual_usd=0.016, duration_ms=4000)

    assert result.state == ReservationState.SETTLED
    assert result.charged_credits == 2
    assert await credit_ledger.verify_balance(db, sid) == 98
    assert (await get_model_stats(db, CHAT_MODEL)).count == 1


@pytest.mark.asyncio
async def test_guard_releases_on_failure(db, make_session):
    sid = await make_session(credits=100)
    estimate = chat_estimate()
    reservation = await billing_service.reserve(db, sid, estimate, endpoint="chat")

    with pytest.raises(GenerationFailed):
        async with billing_service.guard(db, sid, reservation, estimate):
            raise GenerationFailed()

    state = await credit_ledger.get_reservation_state(db, sid, reservation.generation_id)
    assert state == ReservationState.RELEASED
    assert await credit_ledger.verify_balance(db, sid) == 100


@pytest.mark.asyncio
async def test_guard_settles_reserved_amount_when_not_settled(db, make_session):
    sid = await make_session(credits=100)
    estimate = chat_estimate()
    reservation = await billing_service.reserve(db, sid, estimate, endpoint="chat")

    async with billing_service.guard(db, sid, reservation, estimate) as charge:
        pass

    assert charge.settled
    assert charge.result.charged_credits == estimate.credits
    assert await credit_ledger.verify_balance(db, sid) == 95


@pytest.mark.asyncio
async def test_settle_is_applied_once(db, make_session):
    sid = await make_session(credits=100)
    estimate = chat_estimate()
    reservation = await billing_service.reserve(db, sid, estimate, endpoint="chat")

    async with billing_service.guard(db, sid, reservation, estimate) as charge:
        await charge.settle(actual_usd=0.04)
        await charge.settle(actual_usd=0.5)

    assert await credit_ledger.verify_balance(db, sid) == 95


@pytest.mark.asyncio
async def test_reserve_rejection_is_a_result(db, make_session):
    sid = await make_session(credits=1)
    reservation = await billing_service.reserve(db, sid, chat_estimate(), endpoint="chat")
    assert not reservation.success
    assert reservation.reason == RejectionReason.INSUFFICIENT_CREDIT


@pytest.mark.asyncio
async def test_admin_generation_writes_no_ledger_entries(db, make_session):
    sid = await make_session(credits=10)
    await upgrade_to_admin(db, sid)
    estimate = estimate_image_cost(IMAGE_MODEL, ImagePricing(image_output="0.04"))
    reservation = await billing_service.reserve(db, sid, estimate, endpoint="generate-image")
    assert reservation.admin_bypass

    async with billing_service.guard(db, sid, reservation, estimate) as charge:
        await charge.settle(actual_usd=0.04, duration_ms=9000)

    entries = (await db.execute(
        select(CreditLedgerEntry).where(CreditLedgerEntry.generation_id == reservation.generation_id)
    )).scalars().all()
    assert entries == []
    assert await credit_ledger.verify_balance(db, sid) == 10
    assert (await get_model_stats(db, IMAGE_MODEL)).count == 1
