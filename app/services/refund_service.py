"""Refund policy engine.

Patient cancellations are refunded in full (less the gateway fee) when made at
least ``refund_full_window_hours`` before the appointment, and partially
inside that window. Doctor, clinic and system cancellations are refunded in
full with a wallet credit as compensation. Nothing is refunded once the
appointment time has passed.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

import structlog
from sqlalchemy import and_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.exceptions import InvalidStateException, UpstreamFailureException
from app.core.payment_gateway import PaymentGateway, RazorpayGateway
from app.core.timeutils import utcnow
from app.models.appointments import appointments
from app.schemas.appointments import (
    AppointmentRecord,
    AppointmentStatus,
    CancelledBy,
    PaymentStatus,
)
from app.schemas.refunds import (
    RefundCalculation,
    RefundPolicyApplied,
    RefundPolicyDetails,
    RefundPreview,
    RefundResult,
    RefundStatus,
)
from app.services.records import fetch_appointment
from app.services.wallet_service import WalletService

logger = structlog.get_logger(__name__)

PROVIDER_SIDE = frozenset({CancelledBy.DOCTOR, CancelledBy.CLINIC, CancelledBy.SYSTEM})
ZERO = Decimal("0")


@dataclass(frozen=True)
class RefundPolicy:
    """Thresholds and amounts of the refund decision table."""

    full_refund_hours: Decimal = Decimal("6")
    gateway_fee_percentage: Decimal = Decimal("2.5")
    partial_refund_percentage: int = 50
    compensation_credit: Decimal = Decimal("50")
    minimum_refund_amount: Decimal = Decimal("1")

    @classmethod
    def from_settings(cls) -> "RefundPolicy":
        """Build the policy from application settings."""
        return cls(
            full_refund_hours=Decimal(str(settings.refund_full_window_hours)),
            gateway_fee_percentage=Decimal(str(settings.refund_gateway_fee_percentage)),
            partial_refund_percentage=settings.refund_partial_percentage,
            compensation_credit=Decimal(str(settings.refund_compensation_credit)),
            minimum_refund_amount=Decimal(str(settings.refund_minimum_amount)),
        )


def round_currency(value: Decimal) -> Decimal:
    """Round to whole currency units, halves up."""
    return value.quantize(Decimal("1"), rounding=ROUND_HALF_UP)


def hours_until(starts_at: datetime, now: datetime) -> float:
    """Hours from ``now`` until ``starts_at``; negative once it has passed."""
    return (starts_at - now).total_seconds() / 3600


def calculate_refund(
    appointment: AppointmentRecord,
    cancelled_by: CancelledBy,
    now: datetime,
    policy: RefundPolicy | None = None,
) -> RefundCalculation:
    """
    Apply the refund decision table.

    Pure: the result depends only on the arguments.

    Args:
        appointment: Appointment being cancelled
        cancelled_by: Who cancelled
        now: Evaluation time (aware)
        policy: Policy thresholds, defaulting to the configured ones

    Returns:
        Refund calculation
    """
    policy = policy or RefundPolicy()
    paid = Decimal(appointment.amount_paid or 0)

    if paid <= 0 or appointment.payment_status != PaymentStatus.COMPLETED:
        return RefundCalculation(
            eligible=False,
            refund_amount=ZERO,
            refund_percentage=0,
            wallet_credit=ZERO,
            policy_applied=RefundPolicyApplied.NO_PAYMENT,
            reason="No payment was made for this appointment",
        )

    hours = hours_until(appointment.starts_at, now)

    if cancelled_by in PROVIDER_SIDE:
        return RefundCalculation(
            eligible=True,
            refund_amount=paid,
            refund_percentage=100,
            wallet_credit=policy.compensation_credit,
            policy_applied=RefundPolicyApplied.DOCTOR_CANCELLED,
            reason="Doctor/clinic cancelled the appointment",
            hours_until_appointment=hours,
            original_amount=paid,
        )

    if hours < 0:
        return RefundCalculation(
            eligible=False,
            refund_amount=ZERO,
            refund_percentage=0,
            wallet_credit=ZERO,
            policy_applied=RefundPolicyApplied.NO_SHOW,
            reason="Appointment time has already passed",
            hours_until_appointment=hours,
            platform_retained=paid,
            original_amount=paid,
        )

    window = policy.full_refund_hours
    if Decimal(str(hours)) >= window:
        gateway_fee = round_currency(paid * policy.gateway_fee_percentage / 100)
        return RefundCalculation(
            eligible=True,
            refund_amount=max(ZERO, paid - gateway_fee),
            refund_percentage=100,
            wallet_credit=ZERO,
            policy_applied=RefundPolicyApplied.FULL_REFUND,
            reason=f"Cancelled more than {float(window):g} hours before appointment",
            hours_until_appointment=hours,
            gateway_fee_deducted=gateway_fee,
            original_amount=paid,
        )

    refund_amount = round_currency(paid * policy.partial_refund_percentage / 100)
    return RefundCalculation(
        eligible=True,
        refund_amount=refund_amount,
        refund_percentage=policy.partial_refund_percentage,
        wallet_credit=ZERO,
        policy_applied=RefundPolicyApplied.PARTIAL_REFUND,
        reason=f"Cancelled less than {float(window):g} hours before appointment - partial refund",
        hours_until_appointment=hours,
        platform_retained=paid - refund_amount,
        original_amount=paid,
    )


def calculation_from_snapshot(record: AppointmentRecord) -> RefundCalculation:
    """Rebuild a calculation from the snapshot stored on the appointment."""
    policy_applied = RefundPolicyApplied(record.refund_policy_applied)
    return RefundCalculation(
        eligible=policy_applied
        not in (RefundPolicyApplied.NO_PAYMENT, RefundPolicyApplied.NO_SHOW),
        refund_amount=record.refund_amount or ZERO,
        refund_percentage=record.refund_percentage or 0,
        wallet_credit=record.wallet_credit_amount or ZERO,
        policy_applied=policy_applied,
        reason=record.refund_reason or "",
        hours_until_appointment=(
            float(record.hours_before_appointment)
            if record.hours_before_appointment is not None
            else None
        ),
        gateway_fee_deducted=record.refund_gateway_fee or ZERO,
        platform_retained=record.refund_platform_retained or ZERO,
        original_amount=record.amount_paid or ZERO,
    )


class RefundService:
    """Service for previewing and processing cancellation refunds."""

    def __init__(
        self,
        db: AsyncSession,
        gateway: PaymentGateway | None = None,
        wallet: WalletService | None = None,
        policy: RefundPolicy | None = None,
    ):
        """Initialize service with database session and collaborators."""
        self.db = db
        self.gateway = gateway or RazorpayGateway()
        self.wallet = wallet or WalletService(db)
        self.policy = policy or RefundPolicy.from_settings()

    @staticmethod
    def get_policy_details() -> RefundPolicyDetails:
        """Describe the refund policy for display."""
        policy = RefundPolicy.from_settings()
        window = f"{float(policy.full_refund_hours):g}"
        return RefundPolicyDetails(
            full_refund_window_hours=float(policy.full_refund_hours),
            gateway_fee_percentage=float(policy.gateway_fee_percentage),
            partial_refund_percentage=policy.partial_refund_percentage,
            doctor_cancel_compensation_credit=float(policy.compensation_credit),
            minimum_refund_amount=float(policy.minimum_refund_amount),
            rules=[
                f"Cancel at least {window} hours before your appointment for a full refund "
                f"(less a {float(policy.gateway_fee_percentage):g}% payment gateway fee).",
                f"Cancel within {window} hours of your appointment for a "
                f"{policy.partial_refund_percentage}% refund.",
                "No refund once the appointment time has passed.",
                "If the doctor or clinic cancels, you receive a full refund plus a "
                f"{float(policy.compensation_credit):g} wallet credit.",
            ],
        )

    async def preview_refund(
        self,
        appointment_id: UUID,
        cancelled_by: CancelledBy = CancelledBy.PATIENT,
        now: datetime | None = None,
    ) -> RefundPreview:
        """Calculate what a cancellation would refund, without side effects."""
        record = await fetch_appointment(self.db, appointment_id)
        return RefundPreview(
            appointment_id=appointment_id,
            cancelled_by=cancelled_by,
            calculation=calculate_refund(record, cancelled_by, now or utcnow(), self.policy),
        )

    async def _write_snapshot(
        self,
        record: AppointmentRecord,
        calculation: RefundCalculation,
        now: datetime,
    ) -> bool:
        hours = calculation.hours_until_appointment
        stmt = (
            update(appointments)
            .where(
                and_(
                    appointments.c.id == record.id,
                    appointments.c.refund_policy_applied.is_(None),
                )
            )
            .values(
                refund_policy_applied=calculation.policy_applied.value,
                refund_percentage=calculation.refund_percentage,
                refund_amount=calculation.refund_amount,
                refund_gateway_fee=calculation.gateway_fee_deducted,
                refund_platform_retained=calculation.platform_retained,
                wallet_credit_amount=calculation.wallet_credit,
                hours_before_appointment=(
                    Decimal(str(round(hours, 2))) if hours is not None else None
                ),
                refund_reason=calculation.reason,
                refund_calculated_at=now,
                updated_at=now,
            )
        )
        result = await self.db.execute(stmt)
        await self.db.commit()
        return result.rowcount == 1

    async def _claim_refund(self, appointment_id: UUID, now: datetime) -> bool:
        """Mark the refund as in flight; only one caller may win."""
        result = await self.db.execute(
            update(appointments)
            .where(
                and_(
                    appointments.c.id == appointment_id,
                    appointments.c.refund_status.is_(None),
                )
            )
            .values(refund_status=RefundStatus.PENDING.value, updated_at=now)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def _record_refund_status(
        self,
        appointment_id: UUID,
        status: RefundStatus,
        now: datetime,
        refund_id: str | None = None,
        error: str | None = None,
        payment_status: PaymentStatus | None = None,
    ) -> None:
        values = {
            "refund_status": status.value,
            "refund_id": refund_id,
            "refund_error": error,
            "updated_at": now,
        }
        if payment_status is not None:
            values["payment_status"] = payment_status.value
        await self.db.execute(
            update(appointments).where(appointments.c.id == appointment_id).values(**values)
        )
        await self.db.commit()

    async def _refund_payment(
        self,
        record: AppointmentRecord,
        calculation: RefundCalculation,
        now: datetime,
    ) -> None:
        if not await self._claim_refund(record.id, now):
            return

        if not calculation.eligible or calculation.refund_amount < self.policy.minimum_refund_amount:
            await self._record_refund_status(record.id, RefundStatus.SKIPPED, now)
            return

        if not record.payment_transaction_id:
            logger.warning("refund_pending_manual", appointment_id=str(record.id))
            await self._record_refund_status(
                record.id,
                RefundStatus.PENDING,
                now,
                payment_status=PaymentStatus.REFUND_REQUESTED,
            )
            return

        try:
            gateway_refund = await self.gateway.refund(
                record.payment_transaction_id, calculation.refund_amount
            )
        except UpstreamFailureException as e:
            logger.error(
                "refund_gateway_failed",
                appointment_id=str(record.id),
                error=e.message,
            )
            await self._record_refund_status(record.id, RefundStatus.FAILED, now, error=e.message)
            return

        processed = gateway_refund.status == RefundStatus.PROCESSED.value
        await self._record_refund_status(
            record.id,
            RefundStatus.PROCESSED if processed else RefundStatus.PENDING,
            now,
            refund_id=gateway_refund.refund_id,
            payment_status=(
                PaymentStatus.REFUNDED if processed else PaymentStatus.REFUND_REQUESTED
            ),
        )
        logger.info(
            "refund_gateway_submitted",
            appointment_id=str(record.id),
            refund_id=gateway_refund.refund_id,
            status=gateway_refund.status,
        )

    async def _credit_wallet(
        self,
        record: AppointmentRecord,
        calculation: RefundCalculation,
        cancelled_by: CancelledBy,
        now: datetime,
    ) -> None:
        try:
            await self.wallet.credit(
                record.patient_id,
                calculation.wallet_credit,
                f"Compensation for appointment cancellation by {cancelled_by.value}",
                str(record.id),
            )
            await self.db.execute(
                update(appointments)
                .where(appointments.c.id == record.id)
                .values(wallet_credit_processed=True, updated_at=now)
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error("wallet_credit_failed", appointment_id=str(record.id), error=str(e))

    async def process_refund(
        self,
        appointment_id: UUID,
        cancelled_by: CancelledBy = CancelledBy.PATIENT,
        now: datetime | None = None,
    ) -> RefundResult:
        """
        Apply the refund policy to a cancelled appointment.

        The snapshot is written once. The gateway is called at most once, and
        the wallet credit is retried on later calls until it succeeds.

        Args:
            appointment_id: Cancelled appointment
            cancelled_by: Who cancelled, when not already recorded
            now: Evaluation time

        Returns:
            Refund result

        Raises:
            NotFoundException: If the appointment does not exist
            InvalidStateException: If the appointment is not cancelled
        """
        now = now or utcnow()
        record = await fetch_appointment(self.db, appointment_id)

        if record.status != AppointmentStatus.CANCELLED:
            raise InvalidStateException("Refunds apply only to cancelled appointments")

        actor = record.cancelled_by or cancelled_by
        already_processed = record.refund_policy_applied is not None

        if not already_processed:
            calculation = calculate_refund(record, actor, now, self.policy)
            if await self._write_snapshot(record, calculation, now):
                logger.info(
                    "refund_calculated",
                    appointment_id=str(appointment_id),
                    policy=calculation.policy_applied.value,
                    refund_amount=str(calculation.refund_amount),
                    wallet_credit=str(calculation.wallet_credit),
                )
            else:
                already_processed = True
            record = await fetch_appointment(self.db, appointment_id)

        calculation = calculation_from_snapshot(record)

        if record.refund_status is None:
            await self._refund_payment(record, calculation, now)

        if calculation.wallet_credit > 0 and not record.wallet_credit_processed:
            await self._credit_wallet(record, calculation, actor, now)

        record = await fetch_appointment(self.db, appointment_id)
        return RefundResult(
            appointment_id=appointment_id,
            calculation=calculation,
            refund_status=RefundStatus(record.refund_status) if record.refund_status else None,
            refund_id=record.refund_id,
            refund_error=record.refund_error,
            wallet_credit_processed=record.wallet_credit_processed,
            already_processed=already_processed,
        )
