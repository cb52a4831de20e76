"""Live queue endpoints."""

from datetime import date
from uuid import UUID

from fastapi import APIRouter, Query, status

from app.core.timeutils import clinic_today
from app.dependencies import Queue
from app.schemas.appointments import AppointmentResponse
from app.schemas.queue import (
    ExpireStaleResponse,
    LiveQueueStatus,
    QueueAlertResponse,
    QueueListResponse,
)

router = APIRouter()


@router.post(
    "/expire-stale",
    response_model=ExpireStaleResponse,
    status_code=status.HTTP_200_OK,
    tags=["Queue"],
    summary="Expire stale tokens",
)
async def expire_stale(service: Queue) -> ExpireStaleResponse:
    """Expire every non-terminal entry whose token has lapsed."""
    return await service.expire_stale()


@router.get(
    "/doctors/{doctor_id}",
    response_model=QueueListResponse,
    status_code=status.HTTP_200_OK,
    tags=["Queue"],
    summary="List doctor queue",
)
async def list_queue(
    doctor_id: UUID,
    service: Queue,
    queue_date: date | None = Query(None, description="Defaults to today at the clinic"),
) -> QueueListResponse:
    """
    List a doctor's queue for one day, ordered by position.

    Args:
        doctor_id: Doctor ID
        service: Queue service
        queue_date: Queue day

    Returns:
        Queue entries
    """
    return await service.list_queue(doctor_id, queue_date or clinic_today())


@router.post(
    "/doctors/{doctor_id}/alerts",
    response_model=QueueAlertResponse,
    status_code=status.HTTP_200_OK,
    tags=["Queue"],
    summary="Send turn alerts",
)
async def send_turn_alerts(
    doctor_id: UUID,
    service: Queue,
    queue_date: date | None = Query(None, description="Defaults to today at the clinic"),
    threshold: int = Query(3, ge=1, le=10, description="Alert patients up to this position"),
) -> QueueAlertResponse:
    """Alert every queued patient of a doctor whose turn is within ``threshold``."""
    return await service.notify_approaching(
        doctor_id, queue_date or clinic_today(), threshold=threshold
    )


@router.post(
    "/{appointment_id}/enqueue",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    tags=["Queue"],
    summary="Join queue",
)
async def enqueue(appointment_id: UUID, service: Queue) -> AppointmentResponse:
    """Place a verified patient into the doctor's queue."""
    record = await service.enqueue(appointment_id)
    return AppointmentResponse.from_record(record)


@router.post(
    "/{appointment_id}/start",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    tags=["Queue"],
    summary="Start consultation",
)
async def start_consultation(appointment_id: UUID, service: Queue) -> AppointmentResponse:
    """Call a queued patient in."""
    record = await service.start_consultation(appointment_id)
    return AppointmentResponse.from_record(record)


@router.post(
    "/{appointment_id}/complete",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    tags=["Queue"],
    summary="Complete visit",
)
async def mark_completed(appointment_id: UUID, service: Queue) -> AppointmentResponse:
    """Mark a visit completed."""
    record = await service.mark_completed(appointment_id)
    return AppointmentResponse.from_record(record)


@router.post(
    "/{appointment_id}/no-show",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    tags=["Queue"],
    summary="Mark no-show",
)
async def mark_no_show(appointment_id: UUID, service: Queue) -> AppointmentResponse:
    """Mark a checked-in patient as not present when called."""
    record = await service.mark_no_show(appointment_id)
    return AppointmentResponse.from_record(record)


@router.get(
    "/{appointment_id}/status",
    response_model=LiveQueueStatus,
    status_code=status.HTTP_200_OK,
    tags=["Queue"],
    summary="Live wait status",
)
async def live_status(appointment_id: UUID, service: Queue) -> LiveQueueStatus:
    """
    Get a queued patient's live position and wait estimate.

    Args:
        appointment_id: Appointment ID
        service: Queue service

    Returns:
        Live queue status
    """
    return await service.get_live_status(appointment_id)
