"""Health check endpoints."""

from fastapi import APIRouter, status
from pydantic import BaseModel

from app.config import settings
from app.core.firebase import is_firebase_initialized
from app.core.redis_client import check_redis_connection
from app.database import check_database_connection
from app.dependencies import LinkScheduler

router = APIRouter()


class HealthResponse(BaseModel):
    status: str
    version: str
    environment: str


class DetailedHealthResponse(HealthResponse):
    """Dependency status plus the number of armed meet-link timers."""

    database: str
    redis: str
    push_notifications: str
    pending_meet_links: int


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Basic health check",
)
async def health_check() -> HealthResponse:
    return HealthResponse(
        status="healthy",
        version=settings.app_version,
        environment=settings.environment,
    )


@router.get(
    "/health/detailed",
    response_model=DetailedHealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Detailed health check",
)
async def detailed_health_check(scheduler: LinkScheduler) -> DetailedHealthResponse:
    """
    Report database, Redis and Firebase status.

    Redis only backs the duration cache, so an outage degrades the service
    without making it unhealthy. Firebase is optional and never affects status.
    """
    db_healthy = await check_database_connection()
    redis_healthy = await check_redis_connection()

    if not db_healthy:
        overall = "unhealthy"
    elif not redis_healthy:
        overall = "degraded"
    else:
        overall = "healthy"

    return DetailedHealthResponse(
        status=overall,
        version=settings.app_version,
        environment=settings.environment,
        database="healthy" if db_healthy else "unhealthy",
        redis="healthy" if redis_healthy else "unhealthy",
        push_notifications="enabled" if is_firebase_initialized() else "disabled",
        pending_meet_links=scheduler.pending_count,
    )


@router.get("/ping", status_code=status.HTTP_200_OK, summary="Simple ping")
async def ping() -> dict[str, str]:
    return {"message": "pong"}
