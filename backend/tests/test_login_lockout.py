"""管理员登录锁定测试"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from credit_gateway.core.errors import RejectionReason
from credit_gateway.models.rate_limit import LoginAttempt
from credit_gateway.services.login_lockout import (
    MAX_ATTEMPTS,
    check_login_allowed,
    clear_login_attempts,
    lockout_duration,
    record_failed_login,
    sweep_stale_attempts,
)

IP = "d" * 64
T0 = datetime(2026, 3, 1, 12, 0, 0)


@pytest.mark.parametrize("count,hours", [(0, 1), (1, 2), (2, 4), (3, 8), (4, 16), (5, 24), (12, 24)])
def test_lockout_duration_doubles_up_to_cap(count, hours):
    assert lockout_duration(count) == timedelta(hours=hours)


@pytest.mark.asyncio
async def test_fresh_ip_is_allowed(db):
    status = await check_login_allowed(db, IP, now=T0)
    assert status.allowed
    assert status.attempts_remaining == MAX_ATTEMPTS


@pytest.mark.asyncio
async def test_locks_after_max_failures(db):
    for i in range(MAX_ATTEMPTS - 1):
        status = await record_failed_login(db, IP, now=T0)
        assert status.allowed
        assert status.attempts_remaining == MAX_ATTEMPTS - 1 - i

    status = await record_failed_login(db, IP, now=T0)
    assert not status.allowed
    assert status.reason == RejectionReason.LOCKED_OUT
    assert status.locked_until == T0 + timedelta(hours=1)
    assert status.lockout_count == 1

    check = await check_login_allowed(db, IP, now=T0 + timedelta(minutes=30))
    assert not check.allowed
    assert check.retry_after(now=T0 + timedelta(minutes=30)) == 30 * 60


@pytest.mark.asyncio
async def test_second_lockout_is_longer(db):
    for _ in range(MAX_ATTEMPTS):
        await record_failed_login(db, IP, now=T0)

    after_lock = T0 + timedelta(hours=1, seconds=1)
    assert (await check_login_allowed(db, IP, now=after_lock)).allowed

    status = await record_failed_login(db, IP, now=after_lock)
    assert status.allowed
    assert status.attempts_remaining == MAX_ATTEMPTS - 1

    for _ in range(MAX_ATTEMPTS - 1):
        status = await record_failed_login(db, IP, now=after_lock)
    assert not status.allowed
    assert status.lockout_count == 2
    assert status.locked_until == after_lock + timedelta(hours=2)


@pytest.mark.asyncio
async def test_failures_outside_window_restart_count(db):
    for _ in range(MAX_ATTEMPTS - 1):
        await record_failed_login(db, IP, now=T0)

    later = T0 + timedelta(minutes=16)
    assert (await check_login_allowed(db, IP, now=later)).attempts_remaining == MAX_ATTEMPTS
    status = await record_failed_login(db, IP, now=later)
    assert status.allowed
    assert status.attempts_remaining == MAX_ATTEMPTS - 1


@pytest.mark.asyncio
async def test_clear_resets_record(db):
    for _ in range(3):
        await record_failed_login(db, IP, now=T0)
    await clear_login_attempts(db, IP)
    assert (await check_login_allowed(db, IP, now=T0)).attempts_remaining == MAX_ATTEMPTS


@pytest.mark.asyncio
async def test_sweep_keeps_active_lockouts(db):
    stale_ip = "e" * 64
    await record_failed_login(db, stale_ip, now=T0 - timedelta(hours=25))
    for _ in range(MAX_ATTEMPTS):
        await record_failed_login(db, IP, now=T0 - timedelta(hours=25))
    # 锁定仍在进行中的记录不删除
    record = (await db.execute(select(LoginAttempt).where(LoginAttempt.ip_hash == IP))).scalar_one()
    record.locked_until = T0 + timedelta(hours=1)
    await db.commit()

    deleted = await sweep_stale_attempts(db, now=T0)
    assert deleted == 1
    remaining = (await db.execute(select(LoginAttempt.ip_hash))).scalars().all()
    assert remaining == [IP]
