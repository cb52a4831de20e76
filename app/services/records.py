"""Shared appointment record lookups."""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NotFoundException
from app.models.appointments import appointments
from app.schemas.appointments import AppointmentRecord


async def fetch_appointment(db: AsyncSession, appointment_id: UUID) -> AppointmentRecord:
    """
    Load an appointment record by ID.

    Raises:
        NotFoundException: If the appointment does not exist
    """
    result = await db.execute(select(appointments).where(appointments.c.id == appointment_id))
    row = result.fetchone()

    if not row:
        raise NotFoundException("Appointment not found")

    return AppointmentRecord.from_row(row)
