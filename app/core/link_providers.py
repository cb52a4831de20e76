"""Video-consultation link providers."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol
from uuid import UUID

import httpx
from structlog import get_logger

from app.config import settings
from app.core.exceptions import UpstreamFailureException

logger = get_logger(__name__)

GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"


@dataclass(frozen=True)
class MeetingContext:
    """What a provider needs to know to open a meeting room."""

    appointment_id: UUID
    patient_id: UUID
    doctor_id: UUID
    starts_at: datetime
    duration_minutes: int = 30


@dataclass(frozen=True)
class MeetLink:
    """A generated meeting link."""

    link: str
    provider_id: str


class LinkProvider(Protocol):
    """Anything that can generate a meeting link."""

    name: str

    async def generate_link(self, context: MeetingContext) -> MeetLink:
        """Create a meeting link, raising UpstreamFailureException on failure."""
        ...


class GoogleMeetLinkProvider:
    """Creates a Calendar event with a Meet conference attached."""

    name = "google-meet"

    def __init__(
        self,
        access_token: str | None = None,
        calendar_id: str | None = None,
        timeout: float = 10.0,
    ):
        """Initialize provider with an OAuth access token."""
        self.access_token = access_token if access_token is not None else settings.google_meet_access_token
        self.calendar_id = calendar_id or settings.google_calendar_id
        self.timeout = timeout

    async def generate_link(self, context: MeetingContext) -> MeetLink:
        """
        Create a Google Calendar event with a Meet link.

        Args:
            context: Meeting context

        Returns:
            Meet link

        Raises:
            UpstreamFailureException: If the provider is not configured or the call fails
        """
        if not self.access_token:
            raise UpstreamFailureException("Google Meet provider is not configured")

        ends_at = context.starts_at + timedelta(minutes=context.duration_minutes)
        payload = {
            "summary": "Online consultation",
            "start": {"dateTime": context.starts_at.isoformat()},
            "end": {"dateTime": ends_at.isoformat()},
            "conferenceData": {
                "createRequest": {
                    "requestId": str(context.appointment_id),
                    "conferenceSolutionKey": {"type": "hangoutsMeet"},
                }
            },
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{GOOGLE_CALENDAR_API}/calendars/{self.calendar_id}/events",
                    params={"conferenceDataVersion": 1},
                    headers={"Authorization": f"Bearer {self.access_token}"},
                    json=payload,
                )
                response.raise_for_status()
                event = response.json()
        except httpx.HTTPError as e:
            logger.warning("google_meet_request_failed", error=str(e))
            raise UpstreamFailureException(f"Google Meet request failed: {e!s}")

        link = event.get("hangoutLink")
        if not link:
            raise UpstreamFailureException("Google Meet response did not include a link")

        return MeetLink(link=link, provider_id=self.name)


class JitsiLinkProvider:
    """Derives a Jitsi room URL; needs no remote call."""

    name = "jitsi"

    def __init__(self, base_url: str | None = None):
        """Initialize provider with the Jitsi server URL."""
        self.base_url = (base_url or settings.jitsi_base_url).rstrip("/")

    async def generate_link(self, context: MeetingContext) -> MeetLink:
        """Build a room URL unique to the appointment."""
        room = f"ClinicFlow-{context.appointment_id.hex[:16]}"
        return MeetLink(link=f"{self.base_url}/{room}", provider_id=self.name)
