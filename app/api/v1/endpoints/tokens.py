"""Check-in token endpoints."""

from uuid import UUID

from fastapi import APIRouter, status

from app.dependencies import DatabaseSession
from app.schemas.queue import (
    TokenIssueRequest,
    TokenIssueResponse,
    TokenVerifyRequest,
    VerifiedAppointmentSummary,
)
from app.services.token_service import TokenService

router = APIRouter()


@router.post(
    "/appointments/{appointment_id}",
    response_model=TokenIssueResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Tokens"],
    summary="Issue check-in token",
)
async def issue_token(
    appointment_id: UUID,
    data: TokenIssueRequest,
    db: DatabaseSession,
) -> TokenIssueResponse:
    """
    Issue a fresh check-in token for an appointment.

    Args:
        appointment_id: Appointment ID
        data: Optional doctor code overriding the specialty prefix
        db: Database session

    Returns:
        Token and its expiry
    """
    service = TokenService(db)
    return await service.issue_token(appointment_id, data.doctor_code)


@router.post(
    "/verify",
    response_model=VerifiedAppointmentSummary,
    status_code=status.HTTP_200_OK,
    tags=["Tokens"],
    summary="Verify check-in token",
)
async def verify_token(
    data: TokenVerifyRequest,
    db: DatabaseSession,
) -> VerifiedAppointmentSummary:
    """
    Verify a token presented at the clinic desk.

    Args:
        data: Token as presented
        db: Database session

    Returns:
        Appointment summary
    """
    service = TokenService(db)
    return await service.verify_token(data.token)
