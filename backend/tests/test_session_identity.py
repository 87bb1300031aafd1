"""会话令牌与会话记录测试"""

from datetime import timedelta

import jwt
import pytest

from credit_gateway.core.database import utc_now
from credit_gateway.core.security import Tier
from credit_gateway.services.session_identity import (
    JWT_ALGORITHM,
    SessionIdentityManager,
    get_active_session,
    touch_session,
    upgrade_to_admin,
)

SECRET = "unit-test-session-secret-0123456789"
IP_HASH = "a" * 64
OTHER_IP_HASH = "b" * 64


@pytest.fixture
def manager():
    return SessionIdentityManager(SECRET)


def test_issue_and_verify(manager):
    claims = manager.verify(manager.issue("sid-1", IP_HASH))
    assert claims.sid == "sid-1"
    assert claims.ip_hash == IP_HASH
    assert not claims.is_legacy


def test_wrong_secret_is_rejected(manager):
    token = SessionIdentityManager("x" * 40).issue("sid-1", IP_HASH)
    assert manager.verify(token) is None


def test_expired_token_is_rejected():
    expired = SessionIdentityManager(SECRET, token_ttl_days=-1)
    assert expired.verify(expired.issue("sid-1", IP_HASH)) is None


def test_token_without_sid_is_rejected(manager):
    token = jwt.encode({"foo": "bar"}, SECRET, algorithm=JWT_ALGORITHM)
    assert manager.verify(token) is None


def test_no_token_is_invalid(manager):
    result = manager.validate_against_request(None, IP_HASH)
    assert not result.valid
    assert result.sid is None


def test_legacy_token_is_valid_but_needs_refresh(manager):
    result = manager.validate_against_request(manager.issue("sid-1"), IP_HASH)
    assert result.valid
    assert result.sid == "sid-1"
    assert result.needs_refresh


def test_matching_ip_hash_is_valid(manager):
    result = manager.validate_against_request(manager.issue("sid-1", IP_HASH), IP_HASH)
    assert result.valid
    assert not result.needs_refresh


def test_ip_hash_mismatch_is_invalid(manager):
    result = manager.validate_against_request(manager.issue("sid-1", IP_HASH), OTHER_IP_HASH)
    assert not result.valid
    assert result.sid is None
    assert result.current_ip_hash == OTHER_IP_HASH


@pytest.mark.asyncio
async def test_new_session_defaults(db, make_session, settings):
    sid = await make_session()
    session = await get_active_session(db, sid)
    assert session.tier == Tier.PAID.value
    assert session.credit_balance == 0
    assert session.daily_spend_limit_usd == settings.default_daily_spend_limit_usd


@pytest.mark.asyncio
async def test_expired_session_is_not_active(db, make_session):
    sid = await make_session()
    session = await get_active_session(db, sid)
    session.expires_at = utc_now() - timedelta(seconds=1)
    await db.commit()
    assert await get_active_session(db, sid) is None


@pytest.mark.asyncio
async def test_touch_slides_expiry(db, make_session, settings):
    sid = await make_session()
    session = await get_active_session(db, sid)
    session.expires_at = utc_now() + timedelta(days=1)
    await db.commit()

    await touch_session(db, sid, OTHER_IP_HASH, settings.session_ttl_days)
    db.expire_all()
    session = await get_active_session(db, sid)
    assert session.expires_at > utc_now() + timedelta(days=settings.session_ttl_days - 1)
    assert session.last_ip_hash == OTHER_IP_HASH


@pytest.mark.asyncio
async def test_upgrade_to_admin(db, make_session):
    sid = await make_session()
    assert await upgrade_to_admin(db, sid)
    db.expire_all()
    session = await get_active_session(db, sid)
    assert session.tier == Tier.ADMIN.value
    assert not await upgrade_to_admin(db, "missing")
