"""模型耗时统计测试"""

import math

import pytest

from credit_gateway.services.model_stats import (
    DEFAULT_AVG_MS,
    eta_seconds,
    get_model_stats,
    list_model_stats,
    record_generation_duration,
)

MODEL = "google/gemini-2.5-flash-image"


@pytest.mark.parametrize("avg_ms,expected", [(12000, 12), (2500, 3), (2499, 2), (0, 0)])
def test_eta_rounds_to_seconds(avg_ms, expected):
    assert eta_seconds(avg_ms) == expected


@pytest.mark.asyncio
async def test_unseen_model_returns_default(db):
    stats = await get_model_stats(db, MODEL)
    assert stats.count == 0
    assert stats.avg_ms == DEFAULT_AVG_MS
    assert stats.eta_seconds == 12


@pytest.mark.asyncio
async def test_moving_average(db):
    first = await record_generation_duration(db, MODEL, 5000)
    assert first.count == 1
    assert first.avg_ms == 5000

    second = await record_generation_duration(db, MODEL, 10000)
    assert second.count == 2
    assert second.avg_ms == pytest.approx(6000)
    assert second.eta_seconds == 6

    stored = await get_model_stats(db, MODEL)
    assert stored.avg_ms == pytest.approx(6000)


@pytest.mark.asyncio
@pytest.mark.parametrize("duration", [-1, math.nan, math.inf])
async def test_invalid_duration_rejected(db, duration):
    with pytest.raises(ValueError):
        await record_generation_duration(db, MODEL, duration)


@pytest.mark.asyncio
async def test_list_is_ordered_by_model(db):
    await record_generation_duration(db, "openai/gpt-oss-120b", 3000)
    await record_generation_duration(db, MODEL, 9000)
    stats = await list_model_stats(db)
    assert [s.model_id for s in stats] == [MODEL, "openai/gpt-oss-120b"]
