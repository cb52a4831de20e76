"""Appointment endpoints."""

from datetime import date
from uuid import UUID

from fastapi import APIRouter, Query, status

from app.dependencies import Appointments
from app.schemas.appointments import (
    AppointmentCancel,
    AppointmentCreate,
    AppointmentFilters,
    AppointmentListResponse,
    AppointmentResponse,
    AppointmentStatus,
    PaymentConfirmation,
)
from app.schemas.refunds import CancellationResult

router = APIRouter()


@router.post(
    "/",
    response_model=AppointmentResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Appointments"],
    summary="Book appointment",
)
async def book_appointment(
    data: AppointmentCreate,
    service: Appointments,
) -> AppointmentResponse:
    """
    Book an appointment.

    The appointment is confirmed straight away when a payment is attached,
    gets its check-in token, and online consultations get their meet link armed.

    Args:
        data: Appointment creation data
        service: Appointment service

    Returns:
        Created appointment
    """
    return await service.book(data)


@router.get(
    "/",
    response_model=AppointmentListResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="List appointments",
)
async def list_appointments(
    service: Appointments,
    status_filter: AppointmentStatus | None = Query(None, alias="status"),
    patient_id: UUID | None = Query(None),
    doctor_id: UUID | None = Query(None),
    clinic_id: UUID | None = Query(None),
    from_date: date | None = Query(None),
    to_date: date | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
) -> AppointmentListResponse:
    """
    List appointments with filtering.

    Args:
        service: Appointment service
        status_filter: Filter by status
        patient_id: Filter by patient ID
        doctor_id: Filter by doctor ID
        clinic_id: Filter by clinic ID
        from_date: Filter by start date
        to_date: Filter by end date
        page: Page number
        page_size: Items per page

    Returns:
        Paginated list of appointments
    """
    filters = AppointmentFilters(
        status=status_filter,
        patient_id=patient_id,
        doctor_id=doctor_id,
        clinic_id=clinic_id,
        from_date=from_date,
        to_date=to_date,
        page=page,
        page_size=page_size,
    )
    return await service.list_appointments(filters)


@router.get(
    "/{appointment_id}",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Get appointment",
)
async def get_appointment(
    appointment_id: UUID,
    service: Appointments,
) -> AppointmentResponse:
    """Get appointment by ID."""
    return await service.get_appointment(appointment_id)


@router.post(
    "/{appointment_id}/confirm-payment",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Confirm payment",
)
async def confirm_payment(
    appointment_id: UUID,
    data: PaymentConfirmation,
    service: Appointments,
) -> AppointmentResponse:
    """
    Record a completed payment for a pending appointment.

    Args:
        appointment_id: Appointment ID
        data: Payment details
        service: Appointment service

    Returns:
        Confirmed appointment
    """
    return await service.confirm_payment(appointment_id, data)


@router.post(
    "/{appointment_id}/cancel",
    response_model=CancellationResult,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Cancel appointment",
)
async def cancel_appointment(
    appointment_id: UUID,
    data: AppointmentCancel,
    service: Appointments,
) -> CancellationResult:
    """
    Cancel an appointment and process its refund.

    Args:
        appointment_id: Appointment ID
        data: Who cancelled and why
        service: Appointment service

    Returns:
        Cancelled appointment and refund outcome
    """
    return await service.cancel(appointment_id, data)
