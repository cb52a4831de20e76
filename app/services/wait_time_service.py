"""Wait-time prediction from historical consultation durations."""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import UUID

import structlog
from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.redis_client import CacheManager
from app.core.timeutils import as_utc, to_clinic_local, utcnow
from app.models.appointments import appointments
from app.models.doctors import doctors
from app.schemas.appointments import AppointmentStatus

logger = structlog.get_logger(__name__)

MIN_PLAUSIBLE_MINUTES = 5
MAX_PLAUSIBLE_MINUTES = 60
HIGH_CONFIDENCE_SAMPLES = 20

# Python weekday(): Monday is 0
DAY_OF_WEEK_FACTORS = {
    0: 1.15,
    1: 1.05,
    2: 1.0,
    3: 1.0,
    4: 1.1,
    5: 0.95,
    6: 0.9,
}


@dataclass(frozen=True)
class DurationStats:
    """A doctor's average consultation length and how it was derived."""

    average_minutes: float
    sample_size: int
    from_history: bool


@dataclass(frozen=True)
class WaitEstimate:
    """Result of a wait-time estimate."""

    minutes: int
    confidence: str
    adjusted_average_minutes: float
    time_of_day_factor: float
    day_of_week_factor: float
    patients_ahead: int


def time_of_day_factor(hour: int) -> float:
    """Pace multiplier for the clinic-local hour."""
    if 11 <= hour < 13:
        return 0.95
    if 14 <= hour < 16:
        return 1.1
    return 1.0


def day_of_week_factor(weekday: int) -> float:
    """Load multiplier for the clinic-local weekday."""
    return DAY_OF_WEEK_FACTORS.get(weekday, 1.0)


def confidence_label(sample_size: int, high_threshold: int = HIGH_CONFIDENCE_SAMPLES) -> str:
    """Qualitative confidence for a history of ``sample_size`` consultations."""
    if sample_size >= high_threshold:
        return "high"
    if sample_size > 0:
        return "medium"
    return "low"


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for positives."""
    return math.floor(value + 0.5)


def average_duration(
    durations: list[float],
    default_minutes: float,
    min_samples: int,
) -> DurationStats:
    """
    Average the plausible durations, or fall back to the configured default.

    Args:
        durations: Consultation lengths in minutes
        default_minutes: Doctor's configured duration
        min_samples: Fewest plausible samples required to trust history

    Returns:
        Duration statistics
    """
    valid = [d for d in durations if MIN_PLAUSIBLE_MINUTES <= d <= MAX_PLAUSIBLE_MINUTES]
    if len(valid) < min_samples:
        return DurationStats(
            average_minutes=float(default_minutes),
            sample_size=len(valid),
            from_history=False,
        )
    return DurationStats(
        average_minutes=sum(valid) / len(valid),
        sample_size=len(valid),
        from_history=True,
    )


def estimate_wait(
    stats: DurationStats,
    position: int,
    now: datetime,
    in_progress_started_at: datetime | None = None,
    transition_buffer_minutes: float = 1.5,
) -> WaitEstimate:
    """
    Estimate minutes until the patient at ``position`` is called.

    Pure: the result depends only on the arguments.

    Args:
        stats: Doctor's duration statistics
        position: 1-based live position in the queue
        now: Evaluation time (aware)
        in_progress_started_at: Start of the consultation currently running, if any
        transition_buffer_minutes: Handoff time added per patient ahead

    Returns:
        Wait estimate
    """
    local_now = to_clinic_local(now)
    tod = time_of_day_factor(local_now.hour)
    dow = day_of_week_factor(local_now.weekday())
    adjusted = stats.average_minutes * tod * dow

    patients_ahead = max(0, position - 1)
    base_wait = patients_ahead * adjusted

    if in_progress_started_at is not None:
        elapsed = (now - in_progress_started_at).total_seconds() / 60
        base_wait += max(0.0, adjusted - elapsed)

    total = base_wait + patients_ahead * transition_buffer_minutes

    return WaitEstimate(
        minutes=max(0, round_half_up(total)),
        confidence=confidence_label(stats.sample_size),
        adjusted_average_minutes=round(adjusted, 2),
        time_of_day_factor=tod,
        day_of_week_factor=dow,
        patients_ahead=patients_ahead,
    )


class WaitTimePredictor:
    """Loads per-doctor duration history behind a TTL cache."""

    def __init__(self, db: AsyncSession, cache: CacheManager | None = None):
        """Initialize predictor with database session and optional cache."""
        self.db = db
        self.cache = cache

    @staticmethod
    def _cache_key(doctor_id: UUID) -> str:
        return f"wait:avg_duration:{doctor_id}"

    async def _default_minutes(self, doctor_id: UUID) -> int:
        result = await self.db.execute(
            select(doctors.c.consultation_duration_minutes).where(doctors.c.id == doctor_id)
        )
        return result.scalar() or settings.default_consultation_minutes

    async def _history_durations(self, doctor_id: UUID, now: datetime) -> list[float]:
        window_start = now - timedelta(days=settings.duration_history_days)
        stmt = select(
            appointments.c.consultation_start_at,
            appointments.c.consultation_end_at,
        ).where(
            and_(
                appointments.c.doctor_id == doctor_id,
                appointments.c.status == AppointmentStatus.COMPLETED.value,
                appointments.c.starts_at >= window_start,
                appointments.c.consultation_start_at.is_not(None),
                appointments.c.consultation_end_at.is_not(None),
            )
        )
        result = await self.db.execute(stmt)

        durations = []
        for row in result.fetchall():
            started = as_utc(row.consultation_start_at)
            ended = as_utc(row.consultation_end_at)
            durations.append((ended - started).total_seconds() / 60)
        return durations

    async def get_duration_stats(
        self,
        doctor_id: UUID,
        now: datetime | None = None,
    ) -> DurationStats:
        """Get a doctor's duration statistics, cached for the configured TTL."""
        if self.cache:
            cached = self.cache.get_json(self._cache_key(doctor_id))
            if cached:
                return DurationStats(**cached)

        now = now or utcnow()
        durations = await self._history_durations(doctor_id, now)
        stats = average_duration(
            durations,
            default_minutes=await self._default_minutes(doctor_id),
            min_samples=settings.duration_min_samples,
        )

        logger.info(
            "doctor_duration_refreshed",
            doctor_id=str(doctor_id),
            average_minutes=round(stats.average_minutes, 2),
            sample_size=stats.sample_size,
            from_history=stats.from_history,
        )

        if self.cache:
            self.cache.set_json(
                self._cache_key(doctor_id),
                {
                    "average_minutes": stats.average_minutes,
                    "sample_size": stats.sample_size,
                    "from_history": stats.from_history,
                },
                ttl=settings.duration_cache_ttl_seconds,
            )

        return stats

    async def predict(
        self,
        doctor_id: UUID,
        position: int,
        now: datetime | None = None,
        in_progress_started_at: datetime | None = None,
    ) -> tuple[DurationStats, WaitEstimate]:
        """Estimate the wait for ``position`` in a doctor's queue."""
        now = now or utcnow()
        stats = await self.get_duration_stats(doctor_id, now)
        estimate = estimate_wait(
            stats,
            position,
            now,
            in_progress_started_at=in_progress_started_at,
            transition_buffer_minutes=settings.transition_buffer_minutes,
        )
        return stats, estimate
