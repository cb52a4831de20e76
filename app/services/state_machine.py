"""Transition tables for the appointment and queue state machines."""

from app.core.exceptions import AlreadyTerminalException, InvalidStateException
from app.schemas.appointments import AppointmentStatus, QueueStatus

APPOINTMENT_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    AppointmentStatus.PENDING: frozenset(
        {
            AppointmentStatus.CONFIRMED,
            AppointmentStatus.IN_PROGRESS,
            AppointmentStatus.COMPLETED,
            AppointmentStatus.CANCELLED,
        }
    ),
    AppointmentStatus.CONFIRMED: frozenset(
        {
            AppointmentStatus.IN_PROGRESS,
            AppointmentStatus.COMPLETED,
            AppointmentStatus.CANCELLED,
        }
    ),
    AppointmentStatus.IN_PROGRESS: frozenset({AppointmentStatus.COMPLETED}),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.CANCELLED: frozenset(),
}

QUEUE_TRANSITIONS: dict[QueueStatus, frozenset[QueueStatus]] = {
    QueueStatus.WAITING: frozenset({QueueStatus.VERIFIED, QueueStatus.EXPIRED}),
    QueueStatus.VERIFIED: frozenset(
        {
            QueueStatus.IN_QUEUE,
            QueueStatus.COMPLETED,
            QueueStatus.NO_SHOW,
            QueueStatus.EXPIRED,
        }
    ),
    QueueStatus.IN_QUEUE: frozenset(
        {QueueStatus.COMPLETED, QueueStatus.NO_SHOW, QueueStatus.EXPIRED}
    ),
    QueueStatus.COMPLETED: frozenset(),
    QueueStatus.EXPIRED: frozenset(),
    QueueStatus.NO_SHOW: frozenset(),
}

# Statuses that hold a doctor slot
ACTIVE_APPOINTMENT_STATUSES = frozenset(
    {
        AppointmentStatus.PENDING,
        AppointmentStatus.CONFIRMED,
        AppointmentStatus.IN_PROGRESS,
    }
)

TERMINAL_QUEUE_STATUSES = frozenset(
    {QueueStatus.COMPLETED, QueueStatus.EXPIRED, QueueStatus.NO_SHOW}
)

# Statuses that take part in the physical queue
QUEUE_ELIGIBLE_STATUSES = frozenset({QueueStatus.VERIFIED, QueueStatus.IN_QUEUE})


def can_transition_appointment(current: AppointmentStatus, target: AppointmentStatus) -> bool:
    """Check whether a primary status transition is allowed."""
    return target in APPOINTMENT_TRANSITIONS[current]


def ensure_appointment_transition(current: AppointmentStatus, target: AppointmentStatus) -> None:
    """
    Reject a primary status transition the state machine forbids.

    Raises:
        InvalidStateException: If the transition is not allowed
    """
    if not can_transition_appointment(current, target):
        raise InvalidStateException(
            f"Cannot move appointment from '{current.value}' to '{target.value}'"
        )


def ensure_queue_transition(current: QueueStatus, target: QueueStatus) -> None:
    """
    Reject a queue status transition the state machine forbids.

    Raises:
        AlreadyTerminalException: If the current status is terminal
        InvalidStateException: If the transition is not allowed
    """
    if current in TERMINAL_QUEUE_STATUSES:
        raise AlreadyTerminalException(
            f"Queue entry is already '{current.value}' and cannot move to '{target.value}'"
        )
    if target not in QUEUE_TRANSITIONS[current]:
        raise InvalidStateException(
            f"Cannot move queue entry from '{current.value}' to '{target.value}'"
        )
