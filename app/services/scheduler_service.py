"""Deferred meet-link generation for online consultations.

Each online appointment gets its consultation link ``meet_link_lead_minutes``
before it starts. The ``meet_link_generated`` column is the record of what has
fired; the in-process timer table only tracks known-pending appointments and
is rebuilt from the database on startup and by the periodic sweep.
"""

import asyncio
from datetime import datetime, timedelta
from uuid import UUID

import structlog
from sqlalchemy import and_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.core.exceptions import AppException, InvalidStateException, UpstreamFailureException
from app.core.link_providers import LinkProvider, MeetingContext, MeetLink
from app.core.timeutils import as_utc, utcnow
from app.models.appointments import appointments
from app.schemas.appointments import AppointmentRecord, ConsultationType
from app.schemas.scheduler import MeetLinkState, MeetLinkStatus, SweepResponse
from app.services.notification_service import AppointmentNotice, Notifier
from app.services.records import fetch_appointment
from app.services.state_machine import ACTIVE_APPOINTMENT_STATUSES

logger = structlog.get_logger(__name__)

ACTIVE_STATUS_VALUES = tuple(status.value for status in ACTIVE_APPOINTMENT_STATUSES)


class MeetLinkScheduler:
    """Schedules and fires one-shot link generation per online appointment."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        primary: LinkProvider,
        notifier: Notifier,
        fallback: LinkProvider | None = None,
        lead_minutes: float | None = None,
    ):
        """Initialize scheduler with a session factory and collaborators."""
        self.session_factory = session_factory
        self.primary = primary
        self.fallback = fallback
        self.notifier = notifier
        self.lead = timedelta(
            minutes=lead_minutes if lead_minutes is not None else settings.meet_link_lead_minutes
        )
        self._timers: dict[UUID, asyncio.Task] = {}

    def trigger_time(self, starts_at: datetime) -> datetime:
        """Instant at which the link for an appointment starting at ``starts_at`` fires."""
        return starts_at - self.lead

    def is_registered(self, appointment_id: UUID) -> bool:
        """Check whether a pending timer exists for the appointment."""
        task = self._timers.get(appointment_id)
        return task is not None and not task.done()

    @property
    def pending_count(self) -> int:
        """Number of pending timers."""
        return sum(1 for task in self._timers.values() if not task.done())

    def _register(self, appointment_id: UUID, delay_seconds: float) -> None:
        self.cancel(appointment_id)
        task = asyncio.create_task(
            self._run_timer(appointment_id, delay_seconds),
            name=f"meet-link-{appointment_id}",
        )
        self._timers[appointment_id] = task

        def _forget(done: asyncio.Task) -> None:
            if self._timers.get(appointment_id) is done:
                del self._timers[appointment_id]

        task.add_done_callback(_forget)

    async def _run_timer(self, appointment_id: UUID, delay_seconds: float) -> None:
        await asyncio.sleep(delay_seconds)
        await self._fire_logged(appointment_id)

    async def _fire_logged(self, appointment_id: UUID) -> bool:
        try:
            return await self.fire(appointment_id)
        except AppException as e:
            logger.error(
                "meet_link_fire_failed",
                appointment_id=str(appointment_id),
                kind=e.kind,
                error=e.message,
            )
            return False
        except SQLAlchemyError as e:
            logger.error(
                "meet_link_fire_failed",
                appointment_id=str(appointment_id),
                kind="database_error",
                error=str(e),
            )
            return False

    async def schedule(self, appointment_id: UUID, now: datetime | None = None) -> MeetLinkStatus:
        """
        Arm link generation for an online appointment.

        A trigger time already in the past fires within this call.

        Raises:
            NotFoundException: If the appointment does not exist
            InvalidStateException: If the appointment is not an active online booking
        """
        now = now or utcnow()
        async with self.session_factory() as db:
            record = await fetch_appointment(db, appointment_id)

        if record.consultation_type != ConsultationType.ONLINE:
            raise InvalidStateException("Only online consultations get a meet link")
        if record.status not in ACTIVE_APPOINTMENT_STATUSES:
            raise InvalidStateException(
                f"Cannot schedule a meet link for a {record.status.value} appointment"
            )

        if record.meet_link_generated:
            return await self.status(appointment_id)

        trigger = self.trigger_time(record.starts_at)
        if trigger <= now:
            self.cancel(appointment_id)
            await self.fire(appointment_id, now=now)
            result = await self.status(appointment_id)
            return result.model_copy(update={"fired_immediately": True})

        delay = (trigger - now).total_seconds()
        self._register(appointment_id, delay)
        logger.info(
            "meet_link_scheduled",
            appointment_id=str(appointment_id),
            trigger_at=trigger.isoformat(),
            delay_seconds=round(delay),
        )
        return await self.status(appointment_id)

    def cancel(self, appointment_id: UUID) -> bool:
        """Drop a pending timer, if any."""
        task = self._timers.pop(appointment_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        logger.info("meet_link_timer_cancelled", appointment_id=str(appointment_id))
        return True

    async def _generate(self, context: MeetingContext) -> MeetLink:
        try:
            return await self.primary.generate_link(context)
        except UpstreamFailureException as e:
            if self.fallback is None:
                raise
            logger.warning(
                "meet_link_primary_failed",
                appointment_id=str(context.appointment_id),
                provider=self.primary.name,
                error=e.message,
            )
            return await self.fallback.generate_link(context)

    async def _deliver(
        self,
        db: AsyncSession,
        record: AppointmentRecord,
        link: MeetLink,
        now: datetime,
    ) -> None:
        notice = AppointmentNotice(
            appointment_id=record.id,
            starts_at=record.starts_at,
            meet_link=link.link,
        )
        sent: dict[str, bool] = {}
        recipients = (
            ("patient", record.patient_id, "meet_link_sent_to_patient"),
            ("doctor", record.doctor_id, "meet_link_sent_to_doctor"),
        )
        for role, recipient_id, column in recipients:
            try:
                delivered = await self.notifier.notify(recipient_id, notice, role)
            except Exception as e:
                logger.error(
                    "meet_link_notification_failed",
                    appointment_id=str(record.id),
                    role=role,
                    error=str(e),
                )
                delivered = False
            if delivered:
                sent[column] = True

        if sent:
            await db.execute(
                update(appointments)
                .where(appointments.c.id == record.id)
                .values(updated_at=now, **sent)
            )
            await db.commit()

    async def fire(self, appointment_id: UUID, now: datetime | None = None) -> bool:
        """
        Generate, persist and deliver the link unless it already exists.

        Returns:
            True if this call generated the link

        Raises:
            NotFoundException: If the appointment does not exist
            UpstreamFailureException: If both link providers fail
        """
        async with self.session_factory() as db:
            record = await fetch_appointment(db, appointment_id)

            if record.meet_link_generated:
                logger.info("meet_link_already_generated", appointment_id=str(appointment_id))
                return False
            if record.status not in ACTIVE_APPOINTMENT_STATUSES:
                logger.info(
                    "meet_link_skipped",
                    appointment_id=str(appointment_id),
                    status=record.status.value,
                )
                return False

            context = MeetingContext(
                appointment_id=record.id,
                patient_id=record.patient_id,
                doctor_id=record.doctor_id,
                starts_at=record.starts_at,
                duration_minutes=settings.default_consultation_minutes,
            )
            link = await self._generate(context)

            now = now or utcnow()
            result = await db.execute(
                update(appointments)
                .where(
                    and_(
                        appointments.c.id == appointment_id,
                        appointments.c.meet_link_generated.is_(False),
                    )
                )
                .values(
                    meet_link=link.link,
                    meet_link_provider=link.provider_id,
                    meet_link_generated=True,
                    meet_link_generated_at=now,
                    updated_at=now,
                )
            )
            await db.commit()

            if result.rowcount != 1:
                logger.info("meet_link_already_generated", appointment_id=str(appointment_id))
                return False

            logger.info(
                "meet_link_generated",
                appointment_id=str(appointment_id),
                provider=link.provider_id,
            )
            await self._deliver(db, record, link, now)

        return True

    async def status(self, appointment_id: UUID) -> MeetLinkStatus:
        """Report where an appointment is in the link lifecycle."""
        async with self.session_factory() as db:
            record = await fetch_appointment(db, appointment_id)

        if record.meet_link_generated:
            delivered = record.meet_link_sent_to_patient and record.meet_link_sent_to_doctor
            state = MeetLinkState.DELIVERED if delivered else MeetLinkState.FIRED
        elif self.is_registered(appointment_id):
            state = MeetLinkState.SCHEDULED
        else:
            state = MeetLinkState.NOT_SCHEDULED

        return MeetLinkStatus(
            appointment_id=appointment_id,
            state=state,
            trigger_at=self.trigger_time(record.starts_at),
            starts_at=record.starts_at,
            timer_registered=self.is_registered(appointment_id),
            meet_link=record.meet_link,
            meet_link_provider=record.meet_link_provider,
            meet_link_generated_at=record.meet_link_generated_at,
            sent_to_patient=record.meet_link_sent_to_patient,
            sent_to_doctor=record.meet_link_sent_to_doctor,
        )

    async def _pending_online(self, *conditions) -> list[tuple[UUID, datetime]]:
        stmt = select(appointments.c.id, appointments.c.starts_at).where(
            and_(
                appointments.c.consultation_type == ConsultationType.ONLINE.value,
                appointments.c.status.in_(ACTIVE_STATUS_VALUES),
                appointments.c.meet_link_generated.is_(False),
                *conditions,
            )
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            rows = result.fetchall()
        return [(row.id, as_utc(row.starts_at)) for row in rows]

    async def recover(self, now: datetime | None = None) -> int:
        """
        Re-arm timers for every future online appointment without a link.

        Returns:
            Number of appointments armed or fired
        """
        now = now or utcnow()
        pending = await self._pending_online(appointments.c.starts_at > now)

        for appointment_id, starts_at in pending:
            trigger = self.trigger_time(starts_at)
            if trigger <= now:
                await self._fire_logged(appointment_id)
            else:
                self._register(appointment_id, (trigger - now).total_seconds())

        logger.info("meet_link_timers_recovered", count=len(pending))
        return len(pending)

    async def sweep(self, now: datetime | None = None) -> SweepResponse:
        """
        Fire every unflagged online appointment starting within the lead window.

        Safe to repeat; a second run finds nothing once the links exist.
        """
        now = now or utcnow()
        due = await self._pending_online(
            appointments.c.starts_at >= now - self.lead,
            appointments.c.starts_at <= now + self.lead,
        )

        fired = 0
        failed = 0
        for appointment_id, _ in due:
            self.cancel(appointment_id)
            try:
                if await self.fire(appointment_id, now=now):
                    fired += 1
            except AppException as e:
                failed += 1
                logger.error(
                    "meet_link_sweep_failed",
                    appointment_id=str(appointment_id),
                    kind=e.kind,
                    error=e.message,
                )

        logger.info("meet_link_sweep_completed", checked=len(due), fired=fired, failed=failed)
        return SweepResponse(checked=len(due), fired=fired, failed=failed, swept_at=now)

    async def shutdown(self) -> None:
        """Cancel all pending timers."""
        tasks = list(self._timers.values())
        self._timers.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("meet_link_scheduler_stopped", cancelled=len(tasks))
