"""Live clinic queue: positions, terminal transitions and wait status."""

from datetime import date, datetime, timedelta
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.exceptions import InvalidStateException
from app.core.redis_client import CacheManager
from app.core.timeutils import as_utc, utcnow
from app.models.appointments import appointments
from app.models.queue_counters import queue_counters
from app.schemas.appointments import AppointmentRecord, AppointmentStatus, QueueStatus
from app.schemas.queue import (
    ExpireStaleResponse,
    LiveQueueStatus,
    QueueAlertResponse,
    QueueAlertResult,
    QueueEntry,
    QueueListResponse,
    Recommendation,
    RecommendationAction,
    WaitFactors,
)
from app.services.notification_service import Notifier, QueueAlert
from app.services.records import fetch_appointment
from app.services.state_machine import (
    QUEUE_ELIGIBLE_STATUSES,
    can_transition_appointment,
    ensure_appointment_transition,
    ensure_queue_transition,
)
from app.services.wait_time_service import WaitTimePredictor, estimate_wait

logger = structlog.get_logger(__name__)

NON_TERMINAL_QUEUE_VALUES = (
    QueueStatus.WAITING.value,
    QueueStatus.VERIFIED.value,
    QueueStatus.IN_QUEUE.value,
)
ELIGIBLE_QUEUE_VALUES = tuple(status.value for status in QUEUE_ELIGIBLE_STATUSES)


def recommend(wait_minutes: int, is_your_turn: bool) -> Recommendation:
    """Turn a wait estimate into patient guidance."""
    if is_your_turn:
        return Recommendation(
            action=RecommendationAction.PROCEED_NOW,
            urgency="immediate",
            message="It's your turn! Please proceed to the consultation room.",
        )
    if wait_minutes <= 5:
        return Recommendation(
            action=RecommendationAction.BE_READY,
            urgency="high",
            message="Almost your turn! Please be ready at the clinic.",
        )
    if wait_minutes <= 15:
        return Recommendation(
            action=RecommendationAction.LEAVE_NOW,
            urgency="medium",
            message="Time to head to the clinic if you're not there yet.",
        )
    if wait_minutes <= 30:
        return Recommendation(
            action=RecommendationAction.PREPARE,
            urgency="low",
            message="Start preparing to leave in the next 10-15 minutes.",
        )
    return Recommendation(
        action=RecommendationAction.WAIT,
        urgency="none",
        message="You have some time. We'll update you as your turn approaches.",
    )


class QueueService:
    """Service for the per-doctor daily queue."""

    def __init__(
        self,
        db: AsyncSession,
        cache: CacheManager | None = None,
        notifier: Notifier | None = None,
    ):
        """Initialize service with database session, duration cache and alert notifier."""
        self.db = db
        self.cache = cache
        self.notifier = notifier

    def _dialect_insert(self) -> Any:
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            return postgresql.insert
        if dialect == "sqlite":
            return sqlite.insert
        raise RuntimeError(f"Queue counters are not supported on '{dialect}'")

    async def _next_position(
        self,
        doctor_id: UUID,
        queue_date: date,
        candidate: int,
        now: datetime,
    ) -> int:
        """Atomically reserve a position no lower than ``candidate``.

        The counter row only ever increases, so concurrent callers for one
        doctor and day always receive distinct positions.
        """
        insert = self._dialect_insert()
        stmt = insert(queue_counters).values(
            doctor_id=doctor_id,
            queue_date=queue_date,
            last_position=candidate,
            updated_at=now,
        )
        next_position = queue_counters.c.last_position + 1
        stmt = stmt.on_conflict_do_update(
            index_elements=[queue_counters.c.doctor_id, queue_counters.c.queue_date],
            set_={
                "last_position": case(
                    (next_position > stmt.excluded.last_position, next_position),
                    else_=stmt.excluded.last_position,
                ),
                "updated_at": now,
            },
        ).returning(queue_counters.c.last_position)

        result = await self.db.execute(stmt)
        return result.scalar_one()

    async def enqueue(
        self,
        appointment_id: UUID,
        now: datetime | None = None,
    ) -> AppointmentRecord:
        """
        Place a verified patient into the doctor's queue.

        Args:
            appointment_id: Appointment ID
            now: Evaluation time (defaults to current UTC time)

        Returns:
            Updated appointment

        Raises:
            NotFoundException: If appointment not found
            InvalidStateException: If the patient has not been verified
        """
        now = now or utcnow()
        record = await fetch_appointment(self.db, appointment_id)

        if record.status in (AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED):
            raise InvalidStateException(f"Cannot queue a {record.status.value} appointment")
        ensure_queue_transition(record.queue_status, QueueStatus.IN_QUEUE)

        # Positions follow arrival in the queue, not verification order
        count_stmt = select(func.count()).select_from(appointments).where(
            and_(
                appointments.c.doctor_id == record.doctor_id,
                appointments.c.appointment_date == record.appointment_date,
                appointments.c.queue_status == QueueStatus.IN_QUEUE.value,
            )
        )
        ahead = (await self.db.execute(count_stmt)).scalar() or 0

        position = await self._next_position(
            record.doctor_id, record.appointment_date, ahead + 1, now
        )

        stmt = (
            update(appointments)
            .where(
                appointments.c.id == appointment_id,
                appointments.c.queue_status == QueueStatus.VERIFIED.value,
            )
            .values(
                queue_status=QueueStatus.IN_QUEUE.value,
                queue_position=position,
                estimated_wait_minutes=position * settings.minutes_per_patient,
                updated_at=now,
            )
            .returning(appointments)
        )
        result = await self.db.execute(stmt)
        row = result.fetchone()

        if not row:
            await self.db.rollback()
            raise InvalidStateException("Queue entry changed while being queued")

        await self.db.commit()

        logger.info(
            "queue_position_assigned",
            appointment_id=str(appointment_id),
            doctor_id=str(record.doctor_id),
            queue_date=record.appointment_date.isoformat(),
            position=position,
        )
        queued = AppointmentRecord.from_row(row)
        await self._alert_after_change(queued, now)
        return queued

    async def list_queue(self, doctor_id: UUID, queue_date: date) -> QueueListResponse:
        """List a doctor's queue-eligible appointments in position order."""
        stmt = (
            select(appointments)
            .where(
                and_(
                    appointments.c.doctor_id == doctor_id,
                    appointments.c.appointment_date == queue_date,
                    appointments.c.queue_status.in_(ELIGIBLE_QUEUE_VALUES),
                )
            )
            .order_by(
                case((appointments.c.queue_position.is_(None), 1), else_=0),
                appointments.c.queue_position,
                appointments.c.verified_at,
            )
        )
        result = await self.db.execute(stmt)
        records = [AppointmentRecord.from_row(row) for row in result.fetchall()]

        items = [
            QueueEntry(
                appointment_id=record.id,
                patient_id=record.patient_id,
                token=record.token,
                queue_status=record.queue_status,
                status=record.status,
                queue_position=record.queue_position,
                estimated_wait_minutes=record.estimated_wait_minutes,
                verified_at=record.verified_at,
                consultation_start_at=record.consultation_start_at,
            )
            for record in records
        ]
        return QueueListResponse(
            doctor_id=doctor_id,
            queue_date=queue_date,
            total=len(items),
            items=items,
        )

    async def start_consultation(
        self,
        appointment_id: UUID,
        now: datetime | None = None,
    ) -> AppointmentRecord:
        """
        Record that the doctor has started seeing a queued patient.

        Raises:
            NotFoundException: If appointment not found
            InvalidStateException: If the patient is not in the queue
        """
        now = now or utcnow()
        record = await fetch_appointment(self.db, appointment_id)

        if record.queue_status != QueueStatus.IN_QUEUE:
            raise InvalidStateException("Consultation can start only for a queued patient")
        ensure_appointment_transition(record.status, AppointmentStatus.IN_PROGRESS)

        stmt = (
            update(appointments)
            .where(
                appointments.c.id == appointment_id,
                appointments.c.status == record.status.value,
                appointments.c.queue_status == QueueStatus.IN_QUEUE.value,
            )
            .values(
                status=AppointmentStatus.IN_PROGRESS.value,
                consultation_start_at=now,
                updated_at=now,
            )
            .returning(appointments)
        )
        result = await self.db.execute(stmt)
        row = result.fetchone()

        if not row:
            await self.db.rollback()
            raise InvalidStateException("Appointment changed while starting the consultation")

        await self.db.commit()
        logger.info("consultation_started", appointment_id=str(appointment_id))
        started = AppointmentRecord.from_row(row)
        await self._alert_after_change(started, now)
        return started

    async def _finish(
        self,
        record: AppointmentRecord,
        values: dict[str, Any],
    ) -> AppointmentRecord:
        stmt = (
            update(appointments)
            .where(
                appointments.c.id == record.id,
                appointments.c.queue_status == record.queue_status.value,
            )
            .values(**values)
            .returning(appointments)
        )
        result = await self.db.execute(stmt)
        row = result.fetchone()

        if not row:
            await self.db.rollback()
            raise InvalidStateException("Queue entry changed concurrently, reload and retry")

        await self.db.commit()
        return AppointmentRecord.from_row(row)

    async def mark_completed(
        self,
        appointment_id: UUID,
        now: datetime | None = None,
    ) -> AppointmentRecord:
        """
        Close a visit: queue status ``completed`` and the consultation timings.

        Raises:
            NotFoundException: If appointment not found
            InvalidStateException: If the patient is not verified or queued
        """
        now = now or utcnow()
        record = await fetch_appointment(self.db, appointment_id)
        ensure_queue_transition(record.queue_status, QueueStatus.COMPLETED)

        values: dict[str, Any] = {
            "queue_status": QueueStatus.COMPLETED.value,
            "updated_at": now,
        }
        if can_transition_appointment(record.status, AppointmentStatus.COMPLETED):
            values["status"] = AppointmentStatus.COMPLETED.value
        if record.consultation_start_at is not None:
            elapsed = (now - record.consultation_start_at).total_seconds()
            values["consultation_end_at"] = now
            values["consultation_duration_seconds"] = record.consultation_duration_seconds + max(
                0, int(elapsed)
            )

        completed = await self._finish(record, values)
        logger.info(
            "queue_entry_completed",
            appointment_id=str(appointment_id),
            duration_seconds=completed.consultation_duration_seconds,
        )
        await self._alert_after_change(completed, now)
        return completed

    async def mark_no_show(
        self,
        appointment_id: UUID,
        now: datetime | None = None,
    ) -> AppointmentRecord:
        """
        Mark a verified or queued patient as not having shown up.

        Raises:
            NotFoundException: If appointment not found
            InvalidStateException: If the patient is not verified or queued
        """
        now = now or utcnow()
        record = await fetch_appointment(self.db, appointment_id)
        ensure_queue_transition(record.queue_status, QueueStatus.NO_SHOW)

        no_show = await self._finish(
            record,
            {"queue_status": QueueStatus.NO_SHOW.value, "updated_at": now},
        )
        logger.info("queue_entry_no_show", appointment_id=str(appointment_id))
        await self._alert_after_change(no_show, now)
        return no_show

    async def expire_stale(self, now: datetime | None = None) -> ExpireStaleResponse:
        """Expire every non-terminal queue entry whose token has lapsed."""
        now = now or utcnow()
        stmt = (
            update(appointments)
            .where(
                and_(
                    appointments.c.token_expires_at.is_not(None),
                    appointments.c.token_expires_at < now,
                    appointments.c.queue_status.in_(NON_TERMINAL_QUEUE_VALUES),
                )
            )
            .values(queue_status=QueueStatus.EXPIRED.value, updated_at=now)
        )
        result = await self.db.execute(stmt)
        await self.db.commit()

        expired = result.rowcount or 0
        if expired:
            logger.info("stale_tokens_expired", count=expired)
        return ExpireStaleResponse(expired_count=expired, checked_at=now)

    async def _alert_after_change(self, record: AppointmentRecord, now: datetime) -> None:
        """Re-check turn alerts once the queue has moved; failures are logged only."""
        if self.notifier is None:
            return
        try:
            await self.notify_approaching(record.doctor_id, record.appointment_date, now=now)
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "queue_alerts_failed",
                doctor_id=str(record.doctor_id),
                queue_date=record.appointment_date.isoformat(),
                error=str(e),
            )

    async def notify_approaching(
        self,
        doctor_id: UUID,
        queue_date: date,
        threshold: int | None = None,
        now: datetime | None = None,
    ) -> QueueAlertResponse:
        """
        Alert queued patients whose live position is within ``threshold``.

        A patient is alerted once per position, and only when the position
        is lower than the one last alerted. The position is claimed before
        sending and released again if delivery fails.

        Args:
            doctor_id: Doctor ID
            queue_date: Queue day
            threshold: Highest live position to alert (defaults to settings)
            now: Evaluation time (defaults to current UTC time)

        Returns:
            Alerts sent in this pass
        """
        if self.notifier is None:
            raise RuntimeError("Queue alerts need a notifier")

        now = now or utcnow()
        threshold = threshold or settings.queue_alert_position

        stmt = (
            select(appointments)
            .where(
                and_(
                    appointments.c.doctor_id == doctor_id,
                    appointments.c.appointment_date == queue_date,
                    appointments.c.queue_status == QueueStatus.IN_QUEUE.value,
                    appointments.c.status != AppointmentStatus.IN_PROGRESS.value,
                    appointments.c.queue_position.is_not(None),
                )
            )
            .order_by(appointments.c.queue_position)
            .limit(threshold)
        )
        result = await self.db.execute(stmt)
        upcoming = [AppointmentRecord.from_row(row) for row in result.fetchall()]

        alerts: list[QueueAlertResult] = []
        if not upcoming:
            return QueueAlertResponse(
                doctor_id=doctor_id, queue_date=queue_date, threshold=threshold, alerts=alerts
            )

        stats = await WaitTimePredictor(self.db, self.cache).get_duration_stats(doctor_id, now)
        running_start = await self._running_consultation_start(upcoming[0])

        for live_position, record in enumerate(upcoming, start=1):
            previous = record.queue_alert_position
            if previous is not None and previous <= live_position:
                continue

            claim = (
                update(appointments)
                .where(
                    appointments.c.id == record.id,
                    appointments.c.queue_status == QueueStatus.IN_QUEUE.value,
                    or_(
                        appointments.c.queue_alert_position.is_(None),
                        appointments.c.queue_alert_position > live_position,
                    ),
                )
                .values(queue_alert_position=live_position)
                .returning(appointments.c.id)
            )
            claimed = (await self.db.execute(claim)).fetchone()
            await self.db.commit()
            if not claimed:
                continue

            estimate = estimate_wait(
                stats,
                live_position,
                now,
                in_progress_started_at=running_start,
                transition_buffer_minutes=settings.transition_buffer_minutes,
            )
            alert = QueueAlert(
                appointment_id=record.id,
                live_position=live_position,
                estimated_wait_minutes=estimate.minutes,
                estimated_call_time=now + timedelta(minutes=estimate.minutes),
            )
            delivered = await self.notifier.alert_queue(record.patient_id, alert)

            if delivered:
                logger.info(
                    "queue_alert_sent",
                    appointment_id=str(record.id),
                    live_position=live_position,
                    wait_minutes=estimate.minutes,
                )
            else:
                await self.db.execute(
                    update(appointments)
                    .where(
                        appointments.c.id == record.id,
                        appointments.c.queue_alert_position == live_position,
                    )
                    .values(queue_alert_position=previous)
                )
                await self.db.commit()
                logger.warning(
                    "queue_alert_undelivered",
                    appointment_id=str(record.id),
                    live_position=live_position,
                )

            alerts.append(
                QueueAlertResult(
                    appointment_id=record.id,
                    live_position=live_position,
                    estimated_wait_minutes=estimate.minutes,
                    delivered=delivered,
                )
            )

        return QueueAlertResponse(
            doctor_id=doctor_id, queue_date=queue_date, threshold=threshold, alerts=alerts
        )

    async def _patients_ahead(self, record: AppointmentRecord) -> int:
        stmt = select(func.count()).select_from(appointments).where(
            and_(
                appointments.c.doctor_id == record.doctor_id,
                appointments.c.appointment_date == record.appointment_date,
                appointments.c.queue_status == QueueStatus.IN_QUEUE.value,
                appointments.c.status != AppointmentStatus.IN_PROGRESS.value,
                appointments.c.queue_position < record.queue_position,
            )
        )
        return (await self.db.execute(stmt)).scalar() or 0

    async def _running_consultation_start(self, record: AppointmentRecord) -> datetime | None:
        stmt = (
            select(appointments.c.consultation_start_at)
            .where(
                and_(
                    appointments.c.doctor_id == record.doctor_id,
                    appointments.c.appointment_date == record.appointment_date,
                    appointments.c.status == AppointmentStatus.IN_PROGRESS.value,
                    appointments.c.consultation_start_at.is_not(None),
                )
            )
            .order_by(appointments.c.consultation_start_at.desc())
            .limit(1)
        )
        return as_utc((await self.db.execute(stmt)).scalar())

    async def get_live_status(
        self,
        appointment_id: UUID,
        now: datetime | None = None,
    ) -> LiveQueueStatus:
        """
        Compute the live wait status of a queued patient.

        The refined estimate is written back to the appointment.

        Raises:
            NotFoundException: If appointment not found
            InvalidStateException: If the patient is not in the queue
        """
        now = now or utcnow()
        record = await fetch_appointment(self.db, appointment_id)

        if record.queue_status != QueueStatus.IN_QUEUE or record.queue_position is None:
            raise InvalidStateException("Wait status is available only for queued patients")

        predictor = WaitTimePredictor(self.db, self.cache)
        currently_serving = record.status == AppointmentStatus.IN_PROGRESS

        if currently_serving:
            stats = await predictor.get_duration_stats(record.doctor_id, now)
            live_position = 1
            patients_ahead = 0
            running_start = record.consultation_start_at
            wait_minutes = 0
            estimate = None
        else:
            patients_ahead = await self._patients_ahead(record)
            live_position = patients_ahead + 1
            running_start = await self._running_consultation_start(record)
            stats, estimate = await predictor.predict(
                record.doctor_id,
                live_position,
                now=now,
                in_progress_started_at=running_start,
            )
            wait_minutes = estimate.minutes

        await self.db.execute(
            update(appointments)
            .where(appointments.c.id == appointment_id)
            .values(estimated_wait_minutes=wait_minutes)
        )
        await self.db.commit()

        consultation_in_progress = running_start is not None
        is_your_turn = currently_serving or (live_position == 1 and not consultation_in_progress)

        if estimate is not None:
            factors = WaitFactors(
                time_of_day=estimate.time_of_day_factor,
                day_of_week=estimate.day_of_week_factor,
            )
            confidence = estimate.confidence
            average = estimate.adjusted_average_minutes
        else:
            factors = WaitFactors(time_of_day=1.0, day_of_week=1.0)
            confidence = "high"
            average = round(stats.average_minutes, 2)

        return LiveQueueStatus(
            appointment_id=record.id,
            doctor_id=record.doctor_id,
            queue_position=record.queue_position,
            live_position=live_position,
            patients_ahead=patients_ahead,
            currently_serving=currently_serving,
            is_your_turn=is_your_turn,
            consultation_in_progress=consultation_in_progress,
            estimated_wait_minutes=wait_minutes,
            estimated_call_time=now + timedelta(minutes=wait_minutes),
            confidence=confidence,
            average_consultation_minutes=average,
            sample_size=stats.sample_size,
            factors=factors,
            recommendation=recommend(wait_minutes, is_your_turn),
        )
