"""Token and live-queue schemas."""

from datetime import date, datetime, time
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from app.schemas.appointments import AppointmentStatus, ConsultationType, QueueStatus


class TokenIssueRequest(BaseModel):
    """Schema for issuing a check-in token."""

    doctor_code: str | None = Field(None, min_length=2, max_length=5)


class TokenIssueResponse(BaseModel):
    """Issued token and its expiry."""

    appointment_id: UUID
    token: str
    expires_at: datetime
    generated_at: datetime


class TokenVerifyRequest(BaseModel):
    """Schema for verifying a token at the clinic desk."""

    token: str = Field(..., min_length=4, max_length=32)

    @field_validator("token")
    @classmethod
    def normalize_token(cls, v: str) -> str:
        """Tokens are matched case-insensitively."""
        return v.strip().upper()


class VerifiedAppointmentSummary(BaseModel):
    """Appointment summary returned by token verification."""

    appointment_id: UUID
    token: str
    patient_id: UUID
    doctor_id: UUID
    clinic_id: UUID | None
    appointment_date: date
    appointment_time: time
    consultation_type: ConsultationType
    status: AppointmentStatus
    queue_status: QueueStatus
    verified_at: datetime | None
    queue_position: int | None = None
    already_verified: bool = False


class QueueEntry(BaseModel):
    """One row of a doctor's daily queue."""

    appointment_id: UUID
    patient_id: UUID
    token: str | None
    queue_status: QueueStatus
    status: AppointmentStatus
    queue_position: int | None
    estimated_wait_minutes: int | None
    verified_at: datetime | None
    consultation_start_at: datetime | None = None


class QueueListResponse(BaseModel):
    """A doctor's queue for one day."""

    doctor_id: UUID
    queue_date: date
    total: int
    items: list[QueueEntry]


class ExpireStaleResponse(BaseModel):
    """Result of the stale-token expiry batch."""

    expired_count: int
    checked_at: datetime


class QueueAlertResult(BaseModel):
    """One turn-approaching alert attempt."""

    appointment_id: UUID
    live_position: int
    estimated_wait_minutes: int
    delivered: bool


class QueueAlertResponse(BaseModel):
    doctor_id: UUID
    queue_date: date
    threshold: int
    alerts: list[QueueAlertResult]


class RecommendationAction(str, Enum):
    """What the patient should do next."""

    PROCEED_NOW = "proceed_now"
    BE_READY = "be_ready"
    LEAVE_NOW = "leave_now"
    PREPARE = "prepare"
    WAIT = "wait"


class Recommendation(BaseModel):
    """Patient-facing guidance derived from the wait estimate."""

    action: RecommendationAction
    urgency: str
    message: str


class WaitFactors(BaseModel):
    """Multipliers applied to the historical average."""

    time_of_day: float
    day_of_week: float


class LiveQueueStatus(BaseModel):
    """Live wait status of a queued patient."""

    appointment_id: UUID
    doctor_id: UUID
    queue_position: int
    live_position: int
    patients_ahead: int
    currently_serving: bool
    is_your_turn: bool
    consultation_in_progress: bool
    estimated_wait_minutes: int
    estimated_call_time: datetime
    confidence: str
    average_consultation_minutes: float
    sample_size: int
    factors: WaitFactors
    recommendation: Recommendation
