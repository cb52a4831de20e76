"""Tests for the live clinic queue."""

import asyncio
from datetime import UTC, datetime, timedelta
from uuid import UUID

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import AlreadyTerminalException, InvalidStateException
from app.schemas.appointments import AppointmentStatus, QueueStatus
from app.schemas.queue import RecommendationAction
from app.services.queue_service import QueueService, recommend
from app.services.records import fetch_appointment
from app.services.token_service import TokenService

# Monday 10:00 at the clinic
NOW = datetime(2025, 3, 3, 4, 30, tzinfo=UTC)


async def checked_in(db: AsyncSession, appointment_id: UUID) -> None:
    """Issue and verify a token for an appointment."""
    service = TokenService(db)
    issued = await service.issue_token(appointment_id, now=NOW)
    await service.verify_token(issued.token, now=NOW)


def test_recommend():
    """Guidance tightens as the wait shrinks."""
    assert recommend(0, is_your_turn=True).action == RecommendationAction.PROCEED_NOW
    assert recommend(4, is_your_turn=False).action == RecommendationAction.BE_READY
    assert recommend(12, is_your_turn=False).action == RecommendationAction.LEAVE_NOW
    assert recommend(25, is_your_turn=False).action == RecommendationAction.PREPARE
    assert recommend(45, is_your_turn=False).action == RecommendationAction.WAIT


@pytest.mark.asyncio
async def test_enqueue_assigns_sequential_positions(db_session: AsyncSession, make_appointment):
    """Patients joining one after another get 1, 2, 3."""
    service = QueueService(db_session)
    positions = []
    for slot in range(3):
        appointment_id = await make_appointment(NOW + timedelta(minutes=15 * slot))
        await checked_in(db_session, appointment_id)
        record = await service.enqueue(appointment_id, now=NOW)
        positions.append(record.queue_position)
        assert record.queue_status == QueueStatus.IN_QUEUE

    assert positions == [1, 2, 3]


@pytest.mark.asyncio
async def test_concurrent_enqueue_positions_are_unique(
    session_factory: async_sessionmaker[AsyncSession],
    db_session: AsyncSession,
    make_appointment,
):
    """Simultaneous joins never share a position."""
    ids = []
    for slot in range(4):
        appointment_id = await make_appointment(NOW + timedelta(minutes=15 * slot))
        await checked_in(db_session, appointment_id)
        ids.append(appointment_id)

    async def join(appointment_id: UUID) -> int:
        async with session_factory() as session:
            record = await QueueService(session).enqueue(appointment_id, now=NOW)
            return record.queue_position

    positions = await asyncio.gather(*(join(appointment_id) for appointment_id in ids))

    assert len(set(positions)) == len(ids)
    assert min(positions) >= 1


@pytest.mark.asyncio
async def test_position_is_not_reused_after_completion(db_session: AsyncSession, make_appointment):
    """A finished patient's position is never handed out again."""
    service = QueueService(db_session)
    first = await make_appointment(NOW)
    second = await make_appointment(NOW + timedelta(minutes=15))
    third = await make_appointment(NOW + timedelta(minutes=30))

    await checked_in(db_session, first)
    await checked_in(db_session, second)
    await service.enqueue(first, now=NOW)
    await service.enqueue(second, now=NOW)
    await service.mark_completed(first, now=NOW)

    await checked_in(db_session, third)
    record = await service.enqueue(third, now=NOW)

    assert record.queue_position == 3


@pytest.mark.asyncio
async def test_first_to_queue_takes_position_one(db_session: AsyncSession, make_appointment):
    """Verified patients still at the desk do not push the first arrival back."""
    service = QueueService(db_session)
    early = await make_appointment(NOW)
    late = await make_appointment(NOW + timedelta(minutes=15))
    await checked_in(db_session, early)
    await checked_in(db_session, late)

    first = await service.enqueue(late, now=NOW)
    second = await service.enqueue(early, now=NOW)

    assert first.queue_position == 1
    assert first.estimated_wait_minutes == 15
    assert second.queue_position == 2
    assert second.estimated_wait_minutes == 30


@pytest.mark.asyncio
async def test_enqueue_requires_verification(db_session: AsyncSession, make_appointment):
    """A patient who has not checked in cannot join the queue."""
    appointment_id = await make_appointment(NOW)

    with pytest.raises(InvalidStateException):
        await QueueService(db_session).enqueue(appointment_id, now=NOW)


@pytest.mark.asyncio
async def test_consultation_flow(db_session: AsyncSession, make_appointment):
    """Start then complete records the consultation length."""
    service = QueueService(db_session)
    appointment_id = await make_appointment(NOW)
    await checked_in(db_session, appointment_id)
    await service.enqueue(appointment_id, now=NOW)

    started = await service.start_consultation(appointment_id, now=NOW)
    assert started.status == AppointmentStatus.IN_PROGRESS
    assert started.consultation_start_at == NOW

    completed = await service.mark_completed(appointment_id, now=NOW + timedelta(minutes=12))
    assert completed.status == AppointmentStatus.COMPLETED
    assert completed.queue_status == QueueStatus.COMPLETED
    assert completed.consultation_duration_seconds == 720


@pytest.mark.asyncio
async def test_no_show(db_session: AsyncSession, make_appointment):
    """A queued patient can be marked absent, once."""
    service = QueueService(db_session)
    appointment_id = await make_appointment(NOW)
    await checked_in(db_session, appointment_id)
    await service.enqueue(appointment_id, now=NOW)

    record = await service.mark_no_show(appointment_id, now=NOW)
    assert record.queue_status == QueueStatus.NO_SHOW

    with pytest.raises(AlreadyTerminalException):
        await service.mark_completed(appointment_id, now=NOW)


@pytest.mark.asyncio
async def test_expire_stale_is_idempotent(db_session: AsyncSession, make_appointment):
    """Lapsed tokens expire once; a second run changes nothing."""
    service = QueueService(db_session)
    stale = await make_appointment(NOW - timedelta(hours=4))
    fresh = await make_appointment(NOW + timedelta(hours=1))
    await TokenService(db_session).issue_token(stale, now=NOW - timedelta(hours=5))
    await TokenService(db_session).issue_token(fresh, now=NOW)

    first = await service.expire_stale(now=NOW)
    second = await service.expire_stale(now=NOW)

    assert first.expired_count == 1
    assert second.expired_count == 0
    assert (await fetch_appointment(db_session, stale)).queue_status == QueueStatus.EXPIRED
    assert (await fetch_appointment(db_session, fresh)).queue_status == QueueStatus.WAITING


@pytest.mark.asyncio
async def test_list_queue_orders_by_position(
    db_session: AsyncSession,
    doctor: UUID,
    make_appointment,
):
    """The daily queue lists queued patients first, by position."""
    service = QueueService(db_session)
    first = await make_appointment(NOW)
    second = await make_appointment(NOW + timedelta(minutes=15))
    waiting = await make_appointment(NOW + timedelta(minutes=30))
    await checked_in(db_session, first)
    await checked_in(db_session, second)
    await service.enqueue(second, now=NOW)
    await service.enqueue(first, now=NOW)

    result = await service.list_queue(doctor, NOW.date())

    assert [item.appointment_id for item in result.items] == [second, first]
    assert waiting not in [item.appointment_id for item in result.items]


@pytest.mark.asyncio
async def test_live_status(db_session: AsyncSession, make_appointment):
    """Live status counts the patients still ahead and the running consultation."""
    service = QueueService(db_session)
    ids = [await make_appointment(NOW + timedelta(minutes=15 * slot)) for slot in range(3)]
    for appointment_id in ids:
        await checked_in(db_session, appointment_id)
        await service.enqueue(appointment_id, now=NOW)

    await service.start_consultation(ids[0], now=NOW)

    serving = await service.get_live_status(ids[0], now=NOW)
    assert serving.currently_serving is True
    assert serving.is_your_turn is True
    assert serving.estimated_wait_minutes == 0

    # Doctor default of 15 minutes, Monday 10:00 factor 1.15
    next_up = await service.get_live_status(ids[1], now=NOW + timedelta(minutes=5))
    assert next_up.live_position == 1
    assert next_up.patients_ahead == 0
    assert next_up.consultation_in_progress is True
    assert next_up.is_your_turn is False
    assert next_up.estimated_wait_minutes == 12
    assert next_up.confidence == "low"

    last = await service.get_live_status(ids[2], now=NOW + timedelta(minutes=5))
    assert last.live_position == 2
    assert last.estimated_wait_minutes > next_up.estimated_wait_minutes

    record = await fetch_appointment(db_session, ids[2])
    assert record.estimated_wait_minutes == last.estimated_wait_minutes


@pytest.mark.asyncio
async def test_live_status_requires_queue(db_session: AsyncSession, make_appointment):
    """Only queued patients have a live status."""
    appointment_id = await make_appointment(NOW)

    with pytest.raises(InvalidStateException):
        await QueueService(db_session).get_live_status(appointment_id, now=NOW)


@pytest.mark.asyncio
async def test_queue_endpoints(client: AsyncClient, make_appointment):
    """Join the queue over HTTP and read the live status."""
    appointment_id = await make_appointment(datetime.now(UTC) + timedelta(minutes=30))
    issued = await client.post(f"/api/v1/tokens/appointments/{appointment_id}", json={})
    await client.post("/api/v1/tokens/verify", json={"token": issued.json()["token"]})

    response = await client.post(f"/api/v1/queue/{appointment_id}/enqueue")
    assert response.status_code == 200
    assert response.json()["queue_position"] == 1

    status_response = await client.get(f"/api/v1/queue/{appointment_id}/status")
    assert status_response.status_code == 200
    data = status_response.json()
    assert data["live_position"] == 1
    assert data["is_your_turn"] is True
    assert data["recommendation"]["action"] == "proceed_now"

    again = await client.post(f"/api/v1/queue/{appointment_id}/enqueue")
    assert again.status_code == 409
    assert again.json()["kind"] == "invalid_state"


@pytest.mark.asyncio
async def test_expire_stale_endpoint(client: AsyncClient):
    """The expiry batch reports how many entries it closed."""
    response = await client.post("/api/v1/queue/expire-stale")

    assert response.status_code == 200
    assert response.json()["expired_count"] == 0


@pytest.mark.asyncio
async def test_turn_alerts_follow_the_queue(
    db_session: AsyncSession,
    doctor: UUID,
    notifier,
    make_appointment,
):
    """Each patient is alerted once per lower position as the queue moves."""
    service = QueueService(db_session, notifier=notifier)
    ids = [await make_appointment(NOW + timedelta(minutes=15 * slot)) for slot in range(3)]
    for appointment_id in ids:
        await checked_in(db_session, appointment_id)
        await service.enqueue(appointment_id, now=NOW)

    sent = [(alert.appointment_id, alert.live_position) for alert in notifier.alerts]
    assert sent == [(ids[0], 1), (ids[1], 2)]

    await service.start_consultation(ids[0], now=NOW)
    await service.mark_completed(ids[0], now=NOW + timedelta(minutes=12))

    sent = [(alert.appointment_id, alert.live_position) for alert in notifier.alerts]
    assert sent[2:] == [(ids[1], 1), (ids[2], 2)]
    assert (await fetch_appointment(db_session, ids[2])).queue_alert_position == 2

    again = await service.notify_approaching(doctor, NOW.date(), threshold=3, now=NOW)
    assert again.alerts == []
    assert len(notifier.alerts) == 4


@pytest.mark.asyncio
async def test_undelivered_turn_alert_is_retried(
    db_session: AsyncSession,
    doctor: UUID,
    notifier,
    make_appointment,
):
    """A failed push releases the position so the next pass sends it."""
    notifier.fail_roles = {"queue"}
    service = QueueService(db_session, notifier=notifier)
    appointment_id = await make_appointment(NOW)
    await checked_in(db_session, appointment_id)
    await service.enqueue(appointment_id, now=NOW)

    assert notifier.alerts == []
    assert (await fetch_appointment(db_session, appointment_id)).queue_alert_position is None

    notifier.fail_roles = set()
    result = await service.notify_approaching(doctor, NOW.date(), now=NOW)

    assert [alert.delivered for alert in result.alerts] == [True]
    assert result.alerts[0].estimated_wait_minutes == 0
    assert (await fetch_appointment(db_session, appointment_id)).queue_alert_position == 1


@pytest.mark.asyncio
async def test_turn_alert_endpoint(
    client: AsyncClient,
    db_session: AsyncSession,
    doctor: UUID,
    notifier,
    make_appointment,
):
    """The per-doctor pass alerts up to three queued patients."""
    service = QueueService(db_session)
    ids = [await make_appointment(NOW + timedelta(minutes=15 * slot)) for slot in range(4)]
    for appointment_id in ids:
        await checked_in(db_session, appointment_id)
        await service.enqueue(appointment_id, now=NOW)

    response = await client.post(
        f"/api/v1/queue/doctors/{doctor}/alerts",
        params={"queue_date": NOW.date().isoformat()},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["threshold"] == 3
    assert [alert["live_position"] for alert in data["alerts"]] == [1, 2, 3]
    assert {alert.appointment_id for alert in notifier.alerts} == set(ids[:3])
