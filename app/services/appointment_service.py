"""Appointment service for business logic."""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

import structlog
from sqlalchemy import and_, case, func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    AppException,
    ConflictException,
    InvalidStateException,
    ValidationException,
)
from app.core.timeutils import appointment_start, utcnow
from app.models.appointments import appointments
from app.schemas.appointments import (
    AppointmentCancel,
    AppointmentCreate,
    AppointmentFilters,
    AppointmentListResponse,
    AppointmentResponse,
    AppointmentStatus,
    ConsultationType,
    PaymentConfirmation,
    PaymentStatus,
    QueueStatus,
)
from app.schemas.refunds import CancellationResult
from app.services.records import fetch_appointment
from app.services.refund_service import RefundService
from app.services.scheduler_service import MeetLinkScheduler
from app.services.state_machine import ensure_appointment_transition
from app.services.token_service import TokenService

logger = structlog.get_logger(__name__)

NON_TERMINAL_QUEUE_VALUES = (
    QueueStatus.WAITING.value,
    QueueStatus.VERIFIED.value,
    QueueStatus.IN_QUEUE.value,
)


class AppointmentService:
    """Service for managing appointments."""

    def __init__(
        self,
        db: AsyncSession,
        scheduler: MeetLinkScheduler | None = None,
        refunds: RefundService | None = None,
    ):
        """Initialize service with database session and collaborators."""
        self.db = db
        self.scheduler = scheduler
        self.refunds = refunds or RefundService(db)

    async def _response(self, appointment_id: UUID) -> AppointmentResponse:
        record = await fetch_appointment(self.db, appointment_id)
        return AppointmentResponse.from_record(record)

    async def book(
        self,
        data: AppointmentCreate,
        now: datetime | None = None,
    ) -> AppointmentResponse:
        """
        Book an appointment, stamp its check-in token and arm its meet link.

        Args:
            data: Appointment creation data
            now: Evaluation time

        Returns:
            Created appointment

        Raises:
            ValidationException: If the slot is in the past
            ConflictException: If the doctor's slot is already taken
        """
        now = now or utcnow()
        starts_at = appointment_start(data.appointment_date, data.appointment_time)
        if starts_at <= now:
            raise ValidationException("Appointment time must be in the future")

        paid = data.amount_paid or Decimal("0")
        is_paid = paid > 0

        values = {
            "patient_id": data.patient_id,
            "doctor_id": data.doctor_id,
            "clinic_id": data.clinic_id,
            "appointment_date": data.appointment_date,
            "appointment_time": data.appointment_time,
            "starts_at": starts_at,
            "consultation_type": data.consultation_type.value,
            "reason": data.reason,
            "status": (
                AppointmentStatus.CONFIRMED.value if is_paid else AppointmentStatus.PENDING.value
            ),
            "queue_status": QueueStatus.WAITING.value,
            "amount_paid": paid,
            "payment_status": (
                PaymentStatus.COMPLETED.value if is_paid else PaymentStatus.PENDING.value
            ),
            "payment_transaction_id": data.payment_transaction_id,
            "created_at": now,
            "updated_at": now,
        }

        try:
            result = await self.db.execute(
                insert(appointments).values(**values).returning(appointments.c.id)
            )
            appointment_id = result.scalar_one()
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.info(
                "appointment_slot_taken",
                doctor_id=str(data.doctor_id),
                appointment_date=data.appointment_date.isoformat(),
                appointment_time=data.appointment_time.isoformat(),
            )
            raise ConflictException("This time slot is already booked")

        logger.info(
            "appointment_booked",
            appointment_id=str(appointment_id),
            doctor_id=str(data.doctor_id),
            consultation_type=data.consultation_type.value,
            status=values["status"],
        )

        try:
            await TokenService(self.db).issue_token(appointment_id, data.doctor_code, now=now)
        except ConflictException as e:
            # The booking stands; the desk can issue the token later
            logger.warning(
                "appointment_token_deferred",
                appointment_id=str(appointment_id),
                error=e.message,
            )

        if data.consultation_type == ConsultationType.ONLINE and self.scheduler:
            try:
                await self.scheduler.schedule(appointment_id, now=now)
            except AppException as e:
                # The sweep picks it up later
                logger.warning(
                    "meet_link_schedule_failed",
                    appointment_id=str(appointment_id),
                    error=e.message,
                )

        return await self._response(appointment_id)

    async def get_appointment(self, appointment_id: UUID) -> AppointmentResponse:
        """
        Get appointment by ID.

        Raises:
            NotFoundException: If appointment not found
        """
        return await self._response(appointment_id)

    async def list_appointments(self, filters: AppointmentFilters) -> AppointmentListResponse:
        """
        List appointments with filtering and pagination.

        Args:
            filters: Filter and pagination parameters

        Returns:
            Paginated list of appointments
        """
        conditions = []

        if filters.status:
            conditions.append(appointments.c.status == filters.status.value)

        if filters.patient_id:
            conditions.append(appointments.c.patient_id == filters.patient_id)

        if filters.doctor_id:
            conditions.append(appointments.c.doctor_id == filters.doctor_id)

        if filters.clinic_id:
            conditions.append(appointments.c.clinic_id == filters.clinic_id)

        if filters.from_date:
            conditions.append(appointments.c.appointment_date >= filters.from_date)

        if filters.to_date:
            conditions.append(appointments.c.appointment_date <= filters.to_date)

        # Count total
        count_stmt = select(func.count()).select_from(appointments).where(*conditions)
        total_result = await self.db.execute(count_stmt)
        total = total_result.scalar() or 0

        # Get paginated results
        offset = (filters.page - 1) * filters.page_size

        stmt = (
            select(appointments)
            .where(*conditions)
            .order_by(appointments.c.starts_at.desc())
            .limit(filters.page_size)
            .offset(offset)
        )

        result = await self.db.execute(stmt)
        rows = result.fetchall()

        items = [AppointmentResponse.model_validate(dict(row._mapping)) for row in rows]

        return AppointmentListResponse(
            total=total,
            page=filters.page,
            page_size=filters.page_size,
            items=items,
        )

    async def confirm_payment(
        self,
        appointment_id: UUID,
        data: PaymentConfirmation,
        now: datetime | None = None,
    ) -> AppointmentResponse:
        """
        Record a completed payment and confirm the booking.

        Raises:
            NotFoundException: If appointment not found
            InvalidStateException: If the appointment is no longer pending
        """
        now = now or utcnow()
        record = await fetch_appointment(self.db, appointment_id)
        ensure_appointment_transition(record.status, AppointmentStatus.CONFIRMED)

        result = await self.db.execute(
            update(appointments)
            .where(
                and_(
                    appointments.c.id == appointment_id,
                    appointments.c.status == AppointmentStatus.PENDING.value,
                )
            )
            .values(
                status=AppointmentStatus.CONFIRMED.value,
                amount_paid=data.amount_paid,
                payment_status=PaymentStatus.COMPLETED.value,
                payment_transaction_id=data.payment_transaction_id,
                updated_at=now,
            )
        )
        await self.db.commit()

        if result.rowcount == 0:
            raise InvalidStateException("Appointment changed while confirming payment")

        logger.info(
            "appointment_payment_confirmed",
            appointment_id=str(appointment_id),
            amount=str(data.amount_paid),
        )
        return await self._response(appointment_id)

    async def cancel(
        self,
        appointment_id: UUID,
        data: AppointmentCancel,
        now: datetime | None = None,
    ) -> CancellationResult:
        """
        Cancel an appointment and settle its refund.

        Cancelling an already cancelled appointment only re-runs the refund,
        which retries any outstanding wallet credit.

        Raises:
            NotFoundException: If appointment not found
            InvalidStateException: If the appointment has started or completed
        """
        now = now or utcnow()
        record = await fetch_appointment(self.db, appointment_id)

        if record.status != AppointmentStatus.CANCELLED:
            ensure_appointment_transition(record.status, AppointmentStatus.CANCELLED)

            result = await self.db.execute(
                update(appointments)
                .where(
                    and_(
                        appointments.c.id == appointment_id,
                        appointments.c.status == record.status.value,
                    )
                )
                .values(
                    status=AppointmentStatus.CANCELLED.value,
                    queue_status=case(
                        (
                            appointments.c.queue_status.in_(NON_TERMINAL_QUEUE_VALUES),
                            QueueStatus.EXPIRED.value,
                        ),
                        else_=appointments.c.queue_status,
                    ),
                    cancelled_by=data.cancelled_by.value,
                    cancelled_at=now,
                    cancellation_reason=data.reason,
                    updated_at=now,
                )
            )
            await self.db.commit()

            if result.rowcount == 0:
                raise InvalidStateException("Appointment changed while cancelling")

            logger.info(
                "appointment_cancelled",
                appointment_id=str(appointment_id),
                cancelled_by=data.cancelled_by.value,
            )

        if self.scheduler:
            self.scheduler.cancel(appointment_id)

        refund = await self.refunds.process_refund(appointment_id, data.cancelled_by, now=now)

        return CancellationResult(
            appointment=await self._response(appointment_id),
            refund=refund,
        )
