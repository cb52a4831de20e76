"""Check-in token issuing and verification."""

import secrets
from datetime import date, datetime, timedelta
from uuid import UUID

import structlog
from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.exceptions import (
    AlreadyTerminalException,
    ConflictException,
    ExpiredException,
    InvalidStateException,
    NotFoundException,
)
from app.core.timeutils import utcnow
from app.models.appointments import appointments
from app.models.doctors import doctors
from app.schemas.appointments import AppointmentRecord, AppointmentStatus, QueueStatus
from app.schemas.queue import TokenIssueResponse, VerifiedAppointmentSummary
from app.services.records import fetch_appointment
from app.services.state_machine import ensure_queue_transition

logger = structlog.get_logger(__name__)

# No 0/O or 1/I
TOKEN_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
TOKEN_SUFFIX_LENGTH = 4
TOKEN_PREFIX = "HS"
DEFAULT_DOCTOR_CODE = "GEN"

SPECIALTY_CODES = {
    "cardio": "CAR",
    "derma": "DER",
    "pediatr": "PED",
    "paediatr": "PED",
    "ortho": "ORT",
    "gyn": "GYN",
    "neuro": "NEU",
    "ent": "ENT",
    "ophthal": "EYE",
    "psych": "PSY",
    "dent": "DEN",
    "general": "GEN",
}


def doctor_code_for_specialty(specialization: str | None) -> str:
    """Derive the three-letter token prefix from a doctor's specialty."""
    if not specialization:
        return DEFAULT_DOCTOR_CODE

    lowered = specialization.lower()
    for keyword, code in SPECIALTY_CODES.items():
        if lowered.startswith(keyword) or f" {keyword}" in lowered:
            return code

    letters = "".join(ch for ch in specialization if ch.isalpha())
    return letters[:3].upper() if len(letters) >= 3 else DEFAULT_DOCTOR_CODE


def generate_token(doctor_code: str, appointment_date: date) -> str:
    """Build a token such as ``HS-CAR-0503-K7QM``."""
    suffix = "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(TOKEN_SUFFIX_LENGTH))
    day_month = f"{appointment_date.day:02d}{appointment_date.month:02d}"
    return f"{TOKEN_PREFIX}-{doctor_code.upper()}-{day_month}-{suffix}"


class TokenService:
    """Service for issuing and verifying check-in tokens."""

    def __init__(self, db: AsyncSession):
        """Initialize service with database session."""
        self.db = db

    async def _doctor_code(self, doctor_id: UUID) -> str:
        result = await self.db.execute(
            select(doctors.c.specialization).where(doctors.c.id == doctor_id)
        )
        return doctor_code_for_specialty(result.scalar())

    async def issue_token(
        self,
        appointment_id: UUID,
        doctor_code: str | None = None,
        now: datetime | None = None,
    ) -> TokenIssueResponse:
        """
        Stamp a fresh check-in token on an appointment.

        Args:
            appointment_id: Appointment ID
            doctor_code: Optional prefix overriding the specialty-derived one
            now: Evaluation time (defaults to current UTC time)

        Returns:
            Issued token with its expiry

        Raises:
            NotFoundException: If appointment not found
            InvalidStateException: If the appointment is closed or already checked in
            ConflictException: If no unique token could be allocated
        """
        now = now or utcnow()
        record = await fetch_appointment(self.db, appointment_id)

        if record.status in (AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED):
            raise InvalidStateException(f"Cannot issue a token for a {record.status.value} appointment")
        if record.queue_status != QueueStatus.WAITING:
            raise InvalidStateException("Patient has already checked in with the current token")

        code = doctor_code or await self._doctor_code(record.doctor_id)
        expires_at = record.starts_at + timedelta(hours=settings.token_grace_hours)

        for attempt in range(1, settings.token_issue_attempts + 1):
            token = generate_token(code, record.appointment_date)
            stmt = (
                update(appointments)
                .where(
                    appointments.c.id == appointment_id,
                    appointments.c.queue_status == QueueStatus.WAITING.value,
                )
                .values(
                    token=token,
                    token_generated_at=now,
                    token_expires_at=expires_at,
                    updated_at=now,
                )
            )
            try:
                result = await self.db.execute(stmt)
                await self.db.commit()
            except IntegrityError:
                await self.db.rollback()
                logger.info("token_collision", appointment_id=str(appointment_id), attempt=attempt)
                continue

            if result.rowcount == 0:
                raise InvalidStateException("Patient checked in while the token was being issued")

            logger.info(
                "token_issued",
                appointment_id=str(appointment_id),
                token=token,
                expires_at=expires_at.isoformat(),
            )
            return TokenIssueResponse(
                appointment_id=appointment_id,
                token=token,
                expires_at=expires_at,
                generated_at=now,
            )

        raise ConflictException("Could not allocate a unique token, try again")

    async def _find_by_token(self, token: str) -> AppointmentRecord:
        # Expired holders of a reused code sort after the live one
        stmt = (
            select(appointments)
            .where(appointments.c.token == token)
            .order_by(
                case((appointments.c.queue_status == QueueStatus.EXPIRED.value, 1), else_=0),
                appointments.c.token_generated_at.desc(),
            )
            .limit(1)
        )
        result = await self.db.execute(stmt)
        row = result.fetchone()

        if not row:
            raise NotFoundException("No appointment found for this token")

        return AppointmentRecord.from_row(row)

    async def verify_token(
        self,
        token: str,
        now: datetime | None = None,
    ) -> VerifiedAppointmentSummary:
        """
        Verify a token presented at the clinic desk.

        A first verification moves the queue status from ``waiting`` to
        ``verified``. Later calls on a verified or queued appointment are
        read-only and keep the original verification time.

        Args:
            token: Token as presented (any case)
            now: Evaluation time (defaults to current UTC time)

        Returns:
            Appointment summary

        Raises:
            NotFoundException: If no appointment holds the token
            AlreadyTerminalException: If the visit is completed or marked no-show
            ExpiredException: If the token is past its expiry
        """
        now = now or utcnow()
        token = token.strip().upper()
        record = await self._find_by_token(token)

        if record.queue_status in (QueueStatus.COMPLETED, QueueStatus.NO_SHOW):
            raise AlreadyTerminalException(
                f"Token already used, visit is '{record.queue_status.value}'"
            )

        if record.queue_status == QueueStatus.EXPIRED:
            raise ExpiredException("Token has expired")

        if record.token_expires_at and now > record.token_expires_at:
            await self.db.execute(
                update(appointments)
                .where(
                    appointments.c.id == record.id,
                    appointments.c.queue_status == record.queue_status.value,
                )
                .values(queue_status=QueueStatus.EXPIRED.value, updated_at=now)
            )
            await self.db.commit()
            logger.info("token_expired_on_verify", appointment_id=str(record.id), token=token)
            raise ExpiredException("Token has expired")

        if record.queue_status in (QueueStatus.VERIFIED, QueueStatus.IN_QUEUE):
            return self._summary(record, already_verified=True)

        ensure_queue_transition(record.queue_status, QueueStatus.VERIFIED)

        stmt = (
            update(appointments)
            .where(
                appointments.c.id == record.id,
                appointments.c.queue_status == QueueStatus.WAITING.value,
            )
            .values(
                queue_status=QueueStatus.VERIFIED.value,
                verified_at=now,
                updated_at=now,
            )
            .returning(appointments)
        )
        result = await self.db.execute(stmt)
        row = result.fetchone()
        await self.db.commit()

        if not row:
            # Lost a race with another desk; report what won
            current = await fetch_appointment(self.db, record.id)
            if current.queue_status in (QueueStatus.VERIFIED, QueueStatus.IN_QUEUE):
                return self._summary(current, already_verified=True)
            raise InvalidStateException(
                f"Token cannot be verified, visit is '{current.queue_status.value}'"
            )

        verified = AppointmentRecord.from_row(row)
        logger.info("token_verified", appointment_id=str(verified.id), token=token)
        return self._summary(verified, already_verified=False)

    @staticmethod
    def _summary(record: AppointmentRecord, already_verified: bool) -> VerifiedAppointmentSummary:
        return VerifiedAppointmentSummary(
            appointment_id=record.id,
            token=record.token or "",
            patient_id=record.patient_id,
            doctor_id=record.doctor_id,
            clinic_id=record.clinic_id,
            appointment_date=record.appointment_date,
            appointment_time=record.appointment_time,
            consultation_type=record.consultation_type,
            status=record.status,
            queue_status=record.queue_status,
            verified_at=record.verified_at,
            queue_position=record.queue_position,
            already_verified=already_verified,
        )
