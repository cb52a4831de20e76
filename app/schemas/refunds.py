"""Refund policy schemas."""

from decimal import Decimal
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, field_serializer

from app.schemas.appointments import AppointmentResponse, CancelledBy


class RefundPolicyApplied(str, Enum):
    """Decision-table branch that produced a refund outcome."""

    NO_PAYMENT = "no_payment"
    DOCTOR_CANCELLED = "doctor_cancelled"
    NO_SHOW = "no_show"
    FULL_REFUND = "full_refund"
    PARTIAL_REFUND = "partial_refund"


class RefundStatus(str, Enum):
    """Outcome of the payment-gateway refund call."""

    PROCESSED = "processed"
    PENDING = "pending"
    FAILED = "failed"
    SKIPPED = "skipped"


class RefundCalculation(BaseModel):
    """Result of applying the refund policy to a cancellation."""

    eligible: bool
    refund_amount: Decimal
    refund_percentage: int
    wallet_credit: Decimal
    policy_applied: RefundPolicyApplied
    reason: str
    hours_until_appointment: float | None = None
    gateway_fee_deducted: Decimal = Decimal("0")
    platform_retained: Decimal = Decimal("0")
    original_amount: Decimal = Decimal("0")

    model_config = {"frozen": True}

    @field_serializer(
        "refund_amount",
        "wallet_credit",
        "gateway_fee_deducted",
        "platform_retained",
        "original_amount",
        when_used="json",
    )
    def serialize_decimal(self, value: Decimal) -> float:
        """Serialize Decimal to float for JSON."""
        return float(value)


class RefundProcessRequest(BaseModel):
    """Schema for processing a refund on a cancelled appointment."""

    cancelled_by: CancelledBy = CancelledBy.PATIENT


class RefundPreview(BaseModel):
    """What a cancellation would refund right now."""

    appointment_id: UUID
    cancelled_by: CancelledBy
    calculation: RefundCalculation


class RefundResult(BaseModel):
    """Outcome of processing a refund."""

    appointment_id: UUID
    calculation: RefundCalculation
    refund_status: RefundStatus | None = None
    refund_id: str | None = None
    refund_error: str | None = None
    wallet_credit_processed: bool = False
    already_processed: bool = False


class RefundPolicyDetails(BaseModel):
    """Refund policy as shown to patients."""

    full_refund_window_hours: float
    gateway_fee_percentage: float
    partial_refund_percentage: int
    doctor_cancel_refund_percentage: int = 100
    doctor_cancel_compensation_credit: float
    minimum_refund_amount: float
    rules: list[str]


class CancellationResult(BaseModel):
    """Cancelled appointment together with its refund outcome."""

    appointment: AppointmentResponse
    refund: RefundResult
