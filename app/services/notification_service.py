"""Notification service for sending push notifications via FCM."""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol
from uuid import UUID

import structlog
from firebase_admin import messaging

from app.core.firebase import is_firebase_initialized
from app.core.timeutils import to_clinic_local

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AppointmentNotice:
    """Appointment details carried in a consultation-link notification."""

    appointment_id: UUID
    starts_at: datetime
    meet_link: str


@dataclass(frozen=True)
class QueueAlert:
    """A queued patient's turn is close."""

    appointment_id: UUID
    live_position: int
    estimated_wait_minutes: int
    estimated_call_time: datetime


class Notifier(Protocol):
    """Delivers consultation links and queue alerts to one recipient."""

    async def notify(self, recipient_id: UUID, notice: AppointmentNotice, role: str) -> bool:
        """Deliver the notice; return False on failure instead of raising."""
        ...

    async def alert_queue(self, recipient_id: UUID, alert: QueueAlert) -> bool:
        """Tell a patient their turn is approaching; False on failure."""
        ...


def _push_options() -> dict:
    return {
        "apns": messaging.APNSConfig(
            payload=messaging.APNSPayload(
                aps=messaging.Aps(sound="default", badge=1),
            ),
        ),
        "android": messaging.AndroidConfig(
            priority="high",
            notification=messaging.AndroidNotification(sound="default", priority="high"),
        ),
    }


def build_message(recipient_id: UUID, notice: AppointmentNotice, role: str) -> messaging.Message:
    """Build the FCM message for a patient or doctor."""
    start = to_clinic_local(notice.starts_at).strftime("%b %d at %I:%M %p")

    if role == "doctor":
        title = "Consultation Starting Soon"
        body = f"Your online consultation on {start} is ready to join"
    else:
        title = "Your Consultation Link Is Ready"
        body = f"Join your online consultation on {start}"

    return messaging.Message(
        notification=messaging.Notification(title=title, body=body),
        data={
            "type": "meet_link_ready",
            "appointment_id": str(notice.appointment_id),
            "meet_link": notice.meet_link,
            "role": role,
            "screen": f"/appointments/{notice.appointment_id}",
        },
        topic=f"user-{recipient_id}",
        **_push_options(),
    )


def build_queue_alert(recipient_id: UUID, alert: QueueAlert) -> messaging.Message:
    """Build the turn-approaching message; wording tightens as the position drops."""
    call_time = to_clinic_local(alert.estimated_call_time).strftime("%I:%M %p")

    if alert.live_position == 1:
        title = "You Are Next!"
        body = "Please be ready, the doctor will call you shortly"
    else:
        ahead = alert.live_position - 1
        title = "Your Turn Is Approaching"
        noun = "patient" if ahead == 1 else "patients"
        body = f"{ahead} {noun} before you, expected around {call_time}"

    return messaging.Message(
        notification=messaging.Notification(title=title, body=body),
        data={
            "type": "queue_turn_approaching",
            "appointment_id": str(alert.appointment_id),
            "live_position": str(alert.live_position),
            "estimated_wait_minutes": str(alert.estimated_wait_minutes),
            "screen": f"/appointments/{alert.appointment_id}/queue",
        },
        topic=f"user-{recipient_id}",
        **_push_options(),
    )


class FirebaseNotifier:
    """Sends consultation links and queue alerts through Firebase Cloud Messaging."""

    async def _send(self, message: messaging.Message, **context: str) -> bool:
        if not is_firebase_initialized():
            logger.warning(
                "push_notification_skipped",
                reason="firebase_not_initialized",
                **context,
            )
            return False

        try:
            message_id = await asyncio.to_thread(messaging.send, message)
        except Exception as e:
            logger.error("push_notification_failed", error=str(e), **context)
            return False

        logger.info("push_notification_sent", message_id=message_id, **context)
        return True

    async def notify(self, recipient_id: UUID, notice: AppointmentNotice, role: str) -> bool:
        """
        Push a consultation link to a user's devices.

        Args:
            recipient_id: Patient or doctor ID
            notice: Appointment details
            role: "patient" or "doctor"

        Returns:
            True if FCM accepted the message
        """
        return await self._send(
            build_message(recipient_id, notice, role),
            appointment_id=str(notice.appointment_id),
            role=role,
        )

    async def alert_queue(self, recipient_id: UUID, alert: QueueAlert) -> bool:
        """Push a turn-approaching alert to a queued patient."""
        return await self._send(
            build_queue_alert(recipient_id, alert),
            appointment_id=str(alert.appointment_id),
            role="patient",
        )
