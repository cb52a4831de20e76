"""Refund policy endpoints."""

from uuid import UUID

from fastapi import APIRouter, Query, status

from app.dependencies import Refunds
from app.schemas.appointments import CancelledBy
from app.schemas.refunds import (
    RefundPolicyDetails,
    RefundPreview,
    RefundProcessRequest,
    RefundResult,
)
from app.services.refund_service import RefundService

router = APIRouter()


@router.get(
    "/policy",
    response_model=RefundPolicyDetails,
    status_code=status.HTTP_200_OK,
    tags=["Refunds"],
    summary="Refund policy",
)
async def get_policy() -> RefundPolicyDetails:
    """Describe the refund policy."""
    return RefundService.get_policy_details()


@router.get(
    "/{appointment_id}/preview",
    response_model=RefundPreview,
    status_code=status.HTTP_200_OK,
    tags=["Refunds"],
    summary="Preview refund",
)
async def preview_refund(
    appointment_id: UUID,
    service: Refunds,
    cancelled_by: CancelledBy = Query(CancelledBy.PATIENT),
) -> RefundPreview:
    """
    Show what cancelling now would refund.

    Args:
        appointment_id: Appointment ID
        service: Refund service
        cancelled_by: Who would cancel

    Returns:
        Refund calculation
    """
    return await service.preview_refund(appointment_id, cancelled_by)


@router.post(
    "/{appointment_id}/process",
    response_model=RefundResult,
    status_code=status.HTTP_200_OK,
    tags=["Refunds"],
    summary="Process refund",
)
async def process_refund(
    appointment_id: UUID,
    data: RefundProcessRequest,
    service: Refunds,
) -> RefundResult:
    """
    Process the refund of a cancelled appointment.

    Repeated calls return the stored outcome and retry a pending wallet credit.

    Args:
        appointment_id: Appointment ID
        data: Who cancelled, if not already recorded
        service: Refund service

    Returns:
        Refund outcome
    """
    return await service.process_refund(appointment_id, data.cancelled_by)
