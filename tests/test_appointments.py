"""Tests for appointment endpoints."""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from unittest.mock import patch
from uuid import UUID, uuid4

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import ConflictException, InvalidStateException
from app.schemas.appointments import AppointmentCancel, AppointmentStatus, CancelledBy
from app.services.appointment_service import AppointmentService
from app.services.scheduler_service import MeetLinkScheduler
from app.services.state_machine import can_transition_appointment


@pytest.fixture
def booking(doctor: UUID, future_slot: Callable[..., dict[str, str]]) -> dict:
    """Paid in-person booking two days ahead."""
    return {
        "patient_id": str(uuid4()),
        "doctor_id": str(doctor),
        **future_slot(2),
        "consultation_type": "in_person",
        "reason": "Follow-up",
        "amount_paid": 600,
        "payment_transaction_id": "pay_abc123",
    }


def test_appointment_transitions():
    """Finished and cancelled appointments cannot move again."""
    assert can_transition_appointment(AppointmentStatus.PENDING, AppointmentStatus.CONFIRMED)
    assert can_transition_appointment(AppointmentStatus.CONFIRMED, AppointmentStatus.CANCELLED)
    assert not can_transition_appointment(
        AppointmentStatus.IN_PROGRESS, AppointmentStatus.CANCELLED
    )
    assert not can_transition_appointment(AppointmentStatus.COMPLETED, AppointmentStatus.PENDING)
    assert not can_transition_appointment(
        AppointmentStatus.CANCELLED, AppointmentStatus.CONFIRMED
    )


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient) -> None:
    """Test health check endpoint."""
    response = await client.get("/api/v1/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert "version" in data


@pytest.mark.asyncio
async def test_detailed_health_degrades_without_redis(client: AsyncClient) -> None:
    """A Redis outage degrades the service without failing it."""
    with (
        patch("app.api.v1.endpoints.health.check_database_connection", return_value=True),
        patch("app.api.v1.endpoints.health.check_redis_connection", return_value=False),
    ):
        response = await client.get("/api/v1/health/detailed")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "degraded"
    assert data["redis"] == "unhealthy"
    assert data["pending_meet_links"] == 0


@pytest.mark.asyncio
async def test_book_appointment(client: AsyncClient, booking: dict) -> None:
    """A paid booking is confirmed and carries a check-in token."""
    response = await client.post("/api/v1/appointments/", json=booking)

    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "confirmed"
    assert data["payment_status"] == "completed"
    assert data["queue_status"] == "waiting"
    assert data["token"].startswith("HS-CAR-")
    assert data["amount_paid"] == 600.0


@pytest.mark.asyncio
async def test_book_unpaid_appointment_is_pending(client: AsyncClient, booking: dict) -> None:
    """Without payment the booking waits for confirmation."""
    booking.pop("amount_paid")
    booking.pop("payment_transaction_id")

    response = await client.post("/api/v1/appointments/", json=booking)
    assert response.status_code == 201
    appointment_id = response.json()["id"]
    assert response.json()["status"] == "pending"

    confirm = await client.post(
        f"/api/v1/appointments/{appointment_id}/confirm-payment",
        json={"amount_paid": 450, "payment_transaction_id": "pay_late"},
    )
    assert confirm.status_code == 200
    assert confirm.json()["status"] == "confirmed"

    again = await client.post(
        f"/api/v1/appointments/{appointment_id}/confirm-payment",
        json={"amount_paid": 450},
    )
    assert again.status_code == 409


@pytest.mark.asyncio
async def test_booking_survives_token_exhaustion(client: AsyncClient, booking: dict) -> None:
    """A token collision streak leaves the booking in place without a token."""
    with patch(
        "app.services.appointment_service.TokenService.issue_token",
        side_effect=ConflictException("Could not allocate a unique token, try again"),
    ):
        response = await client.post("/api/v1/appointments/", json=booking)

    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "confirmed"
    assert data["token"] is None

    issued = await client.post(f"/api/v1/tokens/appointments/{data['id']}", json={})
    assert issued.status_code == 201


@pytest.mark.asyncio
async def test_double_booking_conflict(client: AsyncClient, booking: dict) -> None:
    """A doctor's slot can be held by one active booking only."""
    first = await client.post("/api/v1/appointments/", json=booking)
    assert first.status_code == 201

    second = await client.post(
        "/api/v1/appointments/", json={**booking, "patient_id": str(uuid4())}
    )
    assert second.status_code == 409
    assert second.json()["kind"] == "conflict"

    await client.post(f"/api/v1/appointments/{first.json()['id']}/cancel", json={})

    rebooked = await client.post(
        "/api/v1/appointments/", json={**booking, "patient_id": str(uuid4())}
    )
    assert rebooked.status_code == 201


@pytest.mark.asyncio
async def test_book_in_the_past_is_rejected(client: AsyncClient, doctor: UUID) -> None:
    """Slots that have already started cannot be booked."""
    yesterday = (datetime.now(UTC) - timedelta(days=1)).date()
    response = await client.post(
        "/api/v1/appointments/",
        json={
            "patient_id": str(uuid4()),
            "doctor_id": str(doctor),
            "appointment_date": yesterday.isoformat(),
            "appointment_time": "10:00",
        },
    )

    assert response.status_code == 422
    assert response.json()["kind"] == "validation_error"


@pytest.mark.asyncio
async def test_list_and_get_appointments(client: AsyncClient, booking: dict, doctor: UUID) -> None:
    """Listing filters by doctor and fetching returns the booking."""
    created = await client.post("/api/v1/appointments/", json=booking)
    appointment_id = created.json()["id"]

    response = await client.get("/api/v1/appointments/", params={"doctor_id": str(doctor)})
    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 1
    assert data["items"][0]["id"] == appointment_id

    other = await client.get("/api/v1/appointments/", params={"doctor_id": str(uuid4())})
    assert other.json()["total"] == 0

    fetched = await client.get(f"/api/v1/appointments/{appointment_id}")
    assert fetched.status_code == 200
    assert fetched.json()["reason"] == "Follow-up"

    missing = await client.get(f"/api/v1/appointments/{uuid4()}")
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_cancel_appointment_refunds(client: AsyncClient, booking: dict, gateway) -> None:
    """Patient cancellation two days out refunds less the gateway fee."""
    created = await client.post("/api/v1/appointments/", json=booking)
    appointment_id = created.json()["id"]

    response = await client.post(
        f"/api/v1/appointments/{appointment_id}/cancel",
        json={"cancelled_by": "patient", "reason": "Travelling"},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["appointment"]["status"] == "cancelled"
    assert data["appointment"]["queue_status"] == "expired"
    assert data["appointment"]["cancellation_reason"] == "Travelling"
    assert data["refund"]["calculation"]["policy_applied"] == "full_refund"
    assert data["refund"]["calculation"]["refund_amount"] == 585.0
    assert data["refund"]["refund_status"] == "processed"
    assert len(gateway.calls) == 1

    repeat = await client.post(f"/api/v1/appointments/{appointment_id}/cancel", json={})
    assert repeat.status_code == 200
    assert repeat.json()["refund"]["already_processed"] is True
    assert len(gateway.calls) == 1


@pytest.mark.asyncio
async def test_book_online_arms_meet_link(
    client: AsyncClient,
    booking: dict,
    scheduler: MeetLinkScheduler,
) -> None:
    """Online bookings register a timer that cancellation removes."""
    created = await client.post(
        "/api/v1/appointments/", json={**booking, "consultation_type": "online"}
    )
    appointment_id = UUID(created.json()["id"])
    assert scheduler.is_registered(appointment_id)

    await client.post(
        f"/api/v1/appointments/{appointment_id}/cancel", json={"cancelled_by": "doctor"}
    )
    assert not scheduler.is_registered(appointment_id)


@pytest.mark.asyncio
async def test_cannot_cancel_in_progress(db_session: AsyncSession, make_appointment) -> None:
    """A consultation already under way cannot be cancelled."""
    appointment_id = await make_appointment(
        datetime.now(UTC) + timedelta(minutes=5), status="in_progress", queue_status="in_queue"
    )
    service = AppointmentService(db_session)

    with pytest.raises(InvalidStateException):
        await service.cancel(appointment_id, AppointmentCancel(cancelled_by=CancelledBy.PATIENT))


@pytest.mark.asyncio
async def test_error_responses_share_one_shape(client: AsyncClient) -> None:
    """Framework errors use the same body as domain errors."""
    invalid = await client.get("/api/v1/appointments/not-a-uuid")
    assert invalid.status_code == 422
    body = invalid.json()
    assert body["kind"] == "validation_error"
    assert body["details"][0]["loc"] == ["path", "appointment_id"]
    assert body["path"].endswith("/api/v1/appointments/not-a-uuid")

    wrong_method = await client.put("/api/v1/health")
    assert wrong_method.status_code == 405
    assert wrong_method.json()["kind"] == "method_not_allowed"
    assert set(wrong_method.json()) == {"error", "kind", "message", "path"}
