"""Meet-link scheduler endpoints."""

from uuid import UUID

from fastapi import APIRouter, status

from app.dependencies import LinkScheduler
from app.schemas.scheduler import MeetLinkCancelResponse, MeetLinkStatus, SweepResponse

router = APIRouter()


@router.post(
    "/sweep",
    response_model=SweepResponse,
    status_code=status.HTTP_200_OK,
    tags=["Meet Links"],
    summary="Run recovery sweep",
)
async def sweep(scheduler: LinkScheduler) -> SweepResponse:
    """Fire every due online appointment that has no link yet."""
    return await scheduler.sweep()


@router.post(
    "/{appointment_id}/schedule",
    response_model=MeetLinkStatus,
    status_code=status.HTTP_200_OK,
    tags=["Meet Links"],
    summary="Schedule meet link",
)
async def schedule(appointment_id: UUID, scheduler: LinkScheduler) -> MeetLinkStatus:
    """
    Arm link generation for an online appointment.

    Args:
        appointment_id: Appointment ID
        scheduler: Meet-link scheduler

    Returns:
        Scheduler status
    """
    return await scheduler.schedule(appointment_id)


@router.get(
    "/{appointment_id}",
    response_model=MeetLinkStatus,
    status_code=status.HTTP_200_OK,
    tags=["Meet Links"],
    summary="Meet link status",
)
async def get_status(appointment_id: UUID, scheduler: LinkScheduler) -> MeetLinkStatus:
    """Report where an appointment is in the link lifecycle."""
    return await scheduler.status(appointment_id)


@router.delete(
    "/{appointment_id}",
    response_model=MeetLinkCancelResponse,
    status_code=status.HTTP_200_OK,
    tags=["Meet Links"],
    summary="Cancel meet link timer",
)
async def cancel(appointment_id: UUID, scheduler: LinkScheduler) -> MeetLinkCancelResponse:
    """Drop the pending timer of an appointment."""
    return MeetLinkCancelResponse(
        appointment_id=appointment_id,
        timer_cancelled=scheduler.cancel(appointment_id),
    )
