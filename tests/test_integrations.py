"""Tests for the payment gateway, link providers and push notifier."""

import json
from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import patch
from uuid import uuid4

import httpx
import pytest

from app.core.exceptions import UpstreamFailureException
from app.core.firebase import initialize_firebase, is_firebase_initialized
from app.core.link_providers import GoogleMeetLinkProvider, JitsiLinkProvider, MeetingContext
from app.core.payment_gateway import RazorpayGateway
from app.services.notification_service import AppointmentNotice, FirebaseNotifier, build_message

RealAsyncClient = httpx.AsyncClient


def mock_client(handler):
    """Patch httpx.AsyncClient so requests go to ``handler``."""
    transport = httpx.MockTransport(handler)
    return patch(
        "httpx.AsyncClient",
        side_effect=lambda **kwargs: RealAsyncClient(transport=transport, **kwargs),
    )


@pytest.fixture
def context() -> MeetingContext:
    return MeetingContext(
        appointment_id=uuid4(),
        patient_id=uuid4(),
        doctor_id=uuid4(),
        starts_at=datetime(2025, 3, 3, 4, 30, tzinfo=UTC),
        duration_minutes=15,
    )


@pytest.fixture
def notice() -> AppointmentNotice:
    return AppointmentNotice(
        appointment_id=uuid4(),
        starts_at=datetime(2025, 3, 3, 4, 30, tzinfo=UTC),
        meet_link="https://meet.google.com/abc-defg-hij",
    )


@pytest.mark.asyncio
async def test_razorpay_refund_processed():
    """Amounts are sent in paise with basic auth."""
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["body"] = json.loads(request.content)
        captured["auth"] = request.headers["Authorization"]
        return httpx.Response(200, json={"id": "rfnd_001", "status": "processed"})

    gateway = RazorpayGateway("key", "secret", "https://api.razorpay.test/v1")
    with mock_client(handler):
        result = await gateway.refund("pay_123", Decimal("585"))

    assert result.refund_id == "rfnd_001"
    assert result.status == "processed"
    assert captured["url"] == "https://api.razorpay.test/v1/payments/pay_123/refund"
    assert captured["body"] == {"amount": 58500}
    assert captured["auth"].startswith("Basic ")


@pytest.mark.asyncio
async def test_razorpay_refund_pending_status():
    """Anything but processed is reported as pending."""
    gateway = RazorpayGateway("key", "secret", "https://api.razorpay.test/v1")
    response = httpx.Response(200, json={"id": "rfnd_2", "status": "created"})
    with mock_client(lambda request: response):
        result = await gateway.refund("pay_123", Decimal("300"))

    assert result.status == "pending"


@pytest.mark.asyncio
async def test_razorpay_refund_error():
    """Gateway errors surface as upstream failures."""
    gateway = RazorpayGateway("key", "secret", "https://api.razorpay.test/v1")
    with mock_client(lambda request: httpx.Response(400, json={"error": "bad request"})):
        with pytest.raises(UpstreamFailureException):
            await gateway.refund("pay_123", Decimal("300"))


@pytest.mark.asyncio
async def test_razorpay_without_credentials_is_pending():
    """An unconfigured gateway leaves the refund for manual processing."""
    result = await RazorpayGateway("", "").refund("pay_123", Decimal("300"))

    assert result.refund_id is None
    assert result.status == "pending"


@pytest.mark.asyncio
async def test_google_meet_link(context: MeetingContext):
    """The Meet link comes from the created calendar event."""
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["params"] = dict(request.url.params)
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"hangoutLink": "https://meet.google.com/abc-defg-hij"})

    provider = GoogleMeetLinkProvider(access_token="token", calendar_id="primary")
    with mock_client(handler):
        link = await provider.generate_link(context)

    assert link.link == "https://meet.google.com/abc-defg-hij"
    assert link.provider_id == "google-meet"
    assert captured["params"] == {"conferenceDataVersion": "1"}
    request_id = captured["body"]["conferenceData"]["createRequest"]["requestId"]
    assert request_id == str(context.appointment_id)


@pytest.mark.asyncio
async def test_google_meet_failures(context: MeetingContext):
    """Missing token, HTTP errors and missing links are upstream failures."""
    with pytest.raises(UpstreamFailureException):
        await GoogleMeetLinkProvider(access_token="").generate_link(context)

    provider = GoogleMeetLinkProvider(access_token="token")
    with mock_client(lambda request: httpx.Response(503)):
        with pytest.raises(UpstreamFailureException):
            await provider.generate_link(context)

    with mock_client(lambda request: httpx.Response(200, json={"id": "evt"})):
        with pytest.raises(UpstreamFailureException):
            await provider.generate_link(context)


@pytest.mark.asyncio
async def test_jitsi_link(context: MeetingContext):
    """Jitsi rooms are derived from the appointment ID."""
    link = await JitsiLinkProvider("https://video.clinic.test/").generate_link(context)

    assert link.link == f"https://video.clinic.test/ClinicFlow-{context.appointment_id.hex[:16]}"
    assert link.provider_id == "jitsi"


def test_build_message(notice: AppointmentNotice):
    """Messages target the user's topic and carry the link."""
    recipient = uuid4()
    message = build_message(recipient, notice, "patient")

    assert message.topic == f"user-{recipient}"
    assert message.data["meet_link"] == notice.meet_link
    assert message.data["role"] == "patient"
    assert "Mar 03 at 10:00 AM" in message.notification.body


@pytest.mark.asyncio
async def test_firebase_notifier_skips_when_not_initialized(notice: AppointmentNotice):
    """Without Firebase nothing is sent."""
    with patch("app.services.notification_service.is_firebase_initialized", return_value=False):
        with patch("app.services.notification_service.messaging.send") as mock_send:
            assert await FirebaseNotifier().notify(uuid4(), notice, "patient") is False

    mock_send.assert_not_called()


@pytest.mark.asyncio
async def test_firebase_notifier_sends(notice: AppointmentNotice):
    """A successful send reports delivery."""
    with patch("app.services.notification_service.is_firebase_initialized", return_value=True):
        with patch(
            "app.services.notification_service.messaging.send",
            return_value="projects/clinicflow/messages/1",
        ) as mock_send:
            assert await FirebaseNotifier().notify(uuid4(), notice, "doctor") is True

    mock_send.assert_called_once()


@pytest.mark.asyncio
async def test_firebase_notifier_reports_failure(notice: AppointmentNotice):
    """Send errors are reported as undelivered rather than raised."""
    with patch("app.services.notification_service.is_firebase_initialized", return_value=True):
        with patch(
            "app.services.notification_service.messaging.send",
            side_effect=ValueError("invalid topic"),
        ):
            assert await FirebaseNotifier().notify(uuid4(), notice, "patient") is False


def test_firebase_not_configured_stays_disabled():
    """Without credentials push stays off and no app is created."""
    with patch("app.core.firebase.firebase_admin.initialize_app") as mock_init:
        assert initialize_firebase(None, None) is False

    mock_init.assert_not_called()
    assert is_firebase_initialized() is False
