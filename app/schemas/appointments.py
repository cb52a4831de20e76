"""Appointment schemas for request/response validation."""

from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, field_serializer, field_validator

from app.core.timeutils import as_utc


class AppointmentStatus(str, Enum):
    """Primary (booking) status enumeration."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class QueueStatus(str, Enum):
    """Physical queue status enumeration."""

    WAITING = "waiting"
    VERIFIED = "verified"
    IN_QUEUE = "in_queue"
    COMPLETED = "completed"
    EXPIRED = "expired"
    NO_SHOW = "no_show"


class ConsultationType(str, Enum):
    """Consultation type enumeration."""

    IN_PERSON = "in_person"
    ONLINE = "online"


class PaymentStatus(str, Enum):
    """Payment status enumeration."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    REFUND_REQUESTED = "refund_requested"
    NOT_REQUIRED = "not_required"


class CancelledBy(str, Enum):
    """Who cancelled an appointment."""

    PATIENT = "patient"
    DOCTOR = "doctor"
    CLINIC = "clinic"
    SYSTEM = "system"


class AppointmentBase(BaseModel):
    """Base appointment schema with common fields."""

    doctor_id: UUID
    clinic_id: UUID | None = None
    appointment_date: date
    appointment_time: time
    consultation_type: ConsultationType = ConsultationType.IN_PERSON
    reason: str | None = Field(None, max_length=500)


class AppointmentCreate(AppointmentBase):
    """Schema for booking a new appointment."""

    patient_id: UUID
    doctor_code: str | None = Field(None, min_length=2, max_length=5)
    amount_paid: Decimal | None = Field(None, ge=0)
    payment_transaction_id: str | None = Field(None, max_length=100)

    @field_validator("appointment_time")
    @classmethod
    def validate_time(cls, v: time) -> time:
        """Drop seconds so slots compare on hour and minute."""
        return v.replace(second=0, microsecond=0)

    @field_validator("doctor_code")
    @classmethod
    def validate_doctor_code(cls, v: str | None) -> str | None:
        """Doctor codes are alphabetic."""
        if v is not None and not v.isalpha():
            raise ValueError("Doctor code must contain only letters")
        return v.upper() if v else v


class PaymentConfirmation(BaseModel):
    """Schema for recording a completed payment."""

    amount_paid: Decimal = Field(..., gt=0)
    payment_transaction_id: str | None = Field(None, max_length=100)


class AppointmentCancel(BaseModel):
    """Schema for cancelling an appointment."""

    cancelled_by: CancelledBy = CancelledBy.PATIENT
    reason: str | None = Field(None, max_length=1000)


class AppointmentRecord(AppointmentBase):
    """Full appointment row as read from the store."""

    id: UUID
    patient_id: UUID
    starts_at: datetime
    status: AppointmentStatus
    queue_status: QueueStatus

    token: str | None = None
    token_generated_at: datetime | None = None
    token_expires_at: datetime | None = None
    verified_at: datetime | None = None

    queue_position: int | None = None
    estimated_wait_minutes: int | None = None
    queue_alert_position: int | None = None

    meet_link: str | None = None
    meet_link_provider: str | None = None
    meet_link_generated: bool = False
    meet_link_generated_at: datetime | None = None
    meet_link_sent_to_patient: bool = False
    meet_link_sent_to_doctor: bool = False
    consultation_start_at: datetime | None = None
    consultation_end_at: datetime | None = None
    consultation_duration_seconds: int = 0

    amount_paid: Decimal = Decimal("0")
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_transaction_id: str | None = None

    refund_policy_applied: str | None = None
    refund_percentage: int | None = None
    refund_amount: Decimal | None = None
    refund_gateway_fee: Decimal | None = None
    refund_platform_retained: Decimal | None = None
    wallet_credit_amount: Decimal | None = None
    hours_before_appointment: Decimal | None = None
    refund_reason: str | None = None
    refund_calculated_at: datetime | None = None
    refund_status: str | None = None
    refund_id: str | None = None
    refund_error: str | None = None
    wallet_credit_processed: bool = False

    cancelled_by: CancelledBy | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None

    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}

    @field_validator(
        "starts_at",
        "token_generated_at",
        "token_expires_at",
        "verified_at",
        "meet_link_generated_at",
        "consultation_start_at",
        "consultation_end_at",
        "refund_calculated_at",
        "cancelled_at",
        "created_at",
        "updated_at",
    )
    @classmethod
    def normalize_timestamp(cls, v: datetime | None) -> datetime | None:
        """Store timestamps are UTC."""
        return as_utc(v)

    @classmethod
    def from_row(cls, row: Any) -> "AppointmentRecord":
        """Build a record from a result row."""
        return cls.model_validate(dict(row._mapping))


class AppointmentResponse(AppointmentRecord):
    """Schema for appointment response."""

    @classmethod
    def from_record(cls, record: AppointmentRecord) -> "AppointmentResponse":
        """Build a response from a stored record."""
        return cls.model_validate(record.model_dump())

    @field_serializer(
        "amount_paid",
        "refund_amount",
        "refund_gateway_fee",
        "refund_platform_retained",
        "wallet_credit_amount",
        "hours_before_appointment",
        when_used="json",
    )
    def serialize_decimal(self, value: Decimal | None) -> float | None:
        """Serialize Decimal to float for JSON."""
        return float(value) if value is not None else None


class AppointmentListResponse(BaseModel):
    """Schema for paginated appointment list response."""

    total: int
    page: int
    page_size: int
    items: list[AppointmentResponse]


class AppointmentFilters(BaseModel):
    """Schema for appointment filtering."""

    status: AppointmentStatus | None = None
    patient_id: UUID | None = None
    doctor_id: UUID | None = None
    clinic_id: UUID | None = None
    from_date: date | None = None
    to_date: date | None = None
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)
