"""API v1 router configuration."""

from fastapi import APIRouter

from app.api.v1.endpoints import (
    appointments,
    health,
    meet_links,
    queue,
    refunds,
    tokens,
)

api_router = APIRouter()

# Include routers
api_router.include_router(health.router, tags=["Health"])
api_router.include_router(appointments.router, prefix="/appointments", tags=["Appointments"])
api_router.include_router(tokens.router, prefix="/tokens", tags=["Tokens"])
api_router.include_router(queue.router, prefix="/queue", tags=["Queue"])
api_router.include_router(refunds.router, prefix="/refunds", tags=["Refunds"])
api_router.include_router(meet_links.router, prefix="/meet-links", tags=["Meet Links"])
