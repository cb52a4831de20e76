"""Tests for wait-time prediction."""

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock
from uuid import UUID

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.redis_client import CacheManager
from app.services.wait_time_service import (
    DurationStats,
    WaitTimePredictor,
    average_duration,
    confidence_label,
    day_of_week_factor,
    estimate_wait,
    time_of_day_factor,
)

# Monday 10:00 at the clinic
FIXED_NOW = datetime(2025, 3, 3, 4, 30, tzinfo=UTC)
HISTORY = DurationStats(average_minutes=10.0, sample_size=25, from_history=True)


def test_time_of_day_factor():
    """Late morning is faster, mid-afternoon slower."""
    assert time_of_day_factor(9) == 1.0
    assert time_of_day_factor(11) == 0.95
    assert time_of_day_factor(12) == 0.95
    assert time_of_day_factor(13) == 1.0
    assert time_of_day_factor(15) == 1.1
    assert time_of_day_factor(16) == 1.0


def test_day_of_week_factor():
    """Monday is the busiest day."""
    assert day_of_week_factor(0) == 1.15
    assert day_of_week_factor(4) == 1.1
    assert day_of_week_factor(6) == 0.9


def test_confidence_label():
    """Confidence follows the sample size."""
    assert confidence_label(0) == "low"
    assert confidence_label(7) == "medium"
    assert confidence_label(20) == "high"


def test_average_duration_filters_implausible_samples():
    """Durations outside 5-60 minutes are ignored."""
    stats = average_duration([2, 10, 12, 14, 90, 8, 16], default_minutes=15, min_samples=5)

    assert stats.from_history is True
    assert stats.sample_size == 5
    assert stats.average_minutes == 12


def test_average_duration_falls_back_to_default():
    """Too little history uses the doctor's configured duration."""
    stats = average_duration([10, 12], default_minutes=20, min_samples=5)

    assert stats.from_history is False
    assert stats.average_minutes == 20
    assert stats.sample_size == 2


def test_estimate_wait_first_in_line_is_zero():
    """Nobody ahead and nobody with the doctor means no wait."""
    estimate = estimate_wait(HISTORY, position=1, now=FIXED_NOW)

    assert estimate.minutes == 0
    assert estimate.patients_ahead == 0


def test_estimate_wait_applies_factors_and_buffer():
    """Monday 10:00 scales the average by 1.15 and adds the handoff buffer."""
    estimate = estimate_wait(HISTORY, position=3, now=FIXED_NOW)

    # 2 * 11.5 + 2 * 1.5
    assert estimate.minutes == 26
    assert estimate.adjusted_average_minutes == 11.5
    assert estimate.time_of_day_factor == 1.0
    assert estimate.day_of_week_factor == 1.15
    assert estimate.confidence == "high"


def test_estimate_wait_counts_running_consultation():
    """The remainder of the consultation in progress is added."""
    started = FIXED_NOW - timedelta(minutes=4)
    estimate = estimate_wait(HISTORY, position=1, now=FIXED_NOW, in_progress_started_at=started)

    # 11.5 - 4 remaining
    assert estimate.minutes == 8


def test_estimate_wait_overrunning_consultation_adds_nothing():
    """A consultation past its average contributes zero, never a negative."""
    started = FIXED_NOW - timedelta(minutes=40)
    estimate = estimate_wait(HISTORY, position=2, now=FIXED_NOW, in_progress_started_at=started)

    assert estimate.minutes == 13


def test_estimate_wait_is_monotonic_in_position():
    """A later position never waits less."""
    waits = [estimate_wait(HISTORY, position=p, now=FIXED_NOW).minutes for p in range(1, 12)]

    assert waits == sorted(waits)
    assert len(set(waits)) == len(waits)


def test_estimate_wait_is_deterministic():
    """Same inputs, same estimate."""
    first = estimate_wait(HISTORY, position=4, now=FIXED_NOW)
    second = estimate_wait(HISTORY, position=4, now=FIXED_NOW)

    assert first == second


def test_confidence_follows_sample_size_even_on_fallback():
    """A short history still counts towards confidence; no history is low."""
    few = average_duration([10, 12, 14], default_minutes=15, min_samples=5)
    none = average_duration([], default_minutes=15, min_samples=5)

    assert few.from_history is False
    assert few.average_minutes == 15.0
    assert estimate_wait(few, position=2, now=FIXED_NOW).confidence == "medium"
    assert estimate_wait(none, position=2, now=FIXED_NOW).confidence == "low"


@pytest.mark.asyncio
async def test_predictor_uses_history(db_session: AsyncSession, doctor: UUID, make_appointment):
    """Completed consultations in the last 30 days feed the average."""
    for day in range(1, 6):
        starts_at = FIXED_NOW - timedelta(days=day)
        await make_appointment(
            starts_at,
            status="completed",
            queue_status="completed",
            consultation_start_at=starts_at,
            consultation_end_at=starts_at + timedelta(minutes=10 + day),
        )

    predictor = WaitTimePredictor(db_session)
    stats = await predictor.get_duration_stats(doctor, now=FIXED_NOW)

    assert stats.from_history is True
    assert stats.sample_size == 5
    assert stats.average_minutes == pytest.approx(13.0)


@pytest.mark.asyncio
async def test_predictor_defaults_without_history(db_session: AsyncSession, doctor: UUID):
    """A new doctor uses the configured consultation length."""
    predictor = WaitTimePredictor(db_session)
    stats = await predictor.get_duration_stats(doctor, now=FIXED_NOW)

    assert stats.from_history is False
    assert stats.average_minutes == 15


@pytest.mark.asyncio
async def test_predictor_reads_cache(db_session: AsyncSession, doctor: UUID):
    """Cached statistics skip the history query."""
    mock_redis = MagicMock()
    mock_redis.get.return_value = (
        '{"average_minutes": 9.0, "sample_size": 30, "from_history": true}'
    )
    predictor = WaitTimePredictor(db_session, cache=CacheManager(redis_client=mock_redis))

    stats = await predictor.get_duration_stats(doctor, now=datetime(2025, 3, 3, tzinfo=UTC))

    assert stats == DurationStats(average_minutes=9.0, sample_size=30, from_history=True)
    mock_redis.setex.assert_not_called()


@pytest.mark.asyncio
async def test_predictor_populates_cache(db_session: AsyncSession, doctor: UUID):
    """A miss stores the statistics with the configured TTL."""
    mock_redis = MagicMock()
    mock_redis.get.return_value = None
    predictor = WaitTimePredictor(db_session, cache=CacheManager(redis_client=mock_redis))

    await predictor.get_duration_stats(doctor, now=FIXED_NOW)

    mock_redis.setex.assert_called_once()
    key, ttl, _ = mock_redis.setex.call_args.args
    assert key == f"wait:avg_duration:{doctor}"
    assert ttl == 3600
