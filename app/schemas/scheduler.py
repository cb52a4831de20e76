"""Meet-link scheduler schemas."""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel


class MeetLinkState(str, Enum):
    """Lifecycle of an appointment's consultation link."""

    NOT_SCHEDULED = "not_scheduled"
    SCHEDULED = "scheduled"
    FIRED = "fired"
    DELIVERED = "delivered"


class MeetLinkStatus(BaseModel):
    """Scheduler view of one appointment."""

    appointment_id: UUID
    state: MeetLinkState
    trigger_at: datetime
    starts_at: datetime
    timer_registered: bool
    fired_immediately: bool = False
    meet_link: str | None = None
    meet_link_provider: str | None = None
    meet_link_generated_at: datetime | None = None
    sent_to_patient: bool = False
    sent_to_doctor: bool = False


class MeetLinkCancelResponse(BaseModel):
    """Result of dropping a pending timer."""

    appointment_id: UUID
    timer_cancelled: bool


class SweepResponse(BaseModel):
    """Result of a crash-recovery sweep."""

    checked: int
    fired: int
    failed: int
    swept_at: datetime
