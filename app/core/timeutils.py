"""Clock and clinic-timezone helpers."""

from datetime import UTC, date, datetime, time
from zoneinfo import ZoneInfo

from app.config import settings


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def clinic_tz() -> ZoneInfo:
    """Configured clinic timezone."""
    return ZoneInfo(settings.clinic_timezone)


def as_utc(value: datetime | None) -> datetime | None:
    """Normalize a stored timestamp to aware UTC.

    SQLite hands back naive values; they are always written as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def appointment_start(appointment_date: date, appointment_time: time) -> datetime:
    """UTC instant of a clinic-local date and time of day."""
    local = datetime.combine(appointment_date, appointment_time, tzinfo=clinic_tz())
    return local.astimezone(UTC)


def to_clinic_local(value: datetime) -> datetime:
    """Convert an aware instant to clinic-local time."""
    return value.astimezone(clinic_tz())


def clinic_today() -> date:
    """Current calendar date at the clinic."""
    return to_clinic_local(utcnow()).date()
