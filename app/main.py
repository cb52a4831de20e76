"""FastAPI application entry point."""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.v1.router import api_router
from app.config import settings
from app.core.background import run_periodic
from app.core.exceptions import AppException
from app.core.firebase import initialize_firebase
from app.core.link_providers import GoogleMeetLinkProvider, JitsiLinkProvider
from app.core.redis_client import check_redis_connection, close_redis_connection
from app.database import AsyncSessionLocal, check_database_connection, engine
from app.middleware.error_handler import (
    app_exception_handler,
    general_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from app.middleware.logging import LoggingMiddleware, configure_logging
from app.services.notification_service import FirebaseNotifier
from app.services.queue_service import QueueService
from app.services.scheduler_service import MeetLinkScheduler

# Configure logging
configure_logging()
logger = structlog.get_logger()


async def expire_stale_tokens() -> None:
    """Expire lapsed check-in tokens across all queues."""
    async with AsyncSessionLocal() as db:
        await QueueService(db).expire_stale()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    # Startup
    logger.info("application_startup", environment=settings.environment)

    # Push delivery of meet links is optional
    try:
        initialize_firebase(
            settings.firebase_credentials_path or None,
            settings.firebase_config_json or None,
        )
    except (ValueError, OSError) as e:
        logger.warning(
            "firebase_initialization_failed",
            error=str(e),
            note="Push notifications will not be sent. Set FIREBASE_CREDENTIALS_PATH env var.",
        )

    # Test database connection
    if await check_database_connection():
        logger.info("database_connected")
    else:
        logger.error("database_connection_failed")

    # Redis only backs the duration cache
    if await check_redis_connection():
        logger.info("redis_connected")
    else:
        logger.warning("redis_unavailable", note="Wait-time averages will not be cached.")

    # Meet-link scheduler
    notifier = FirebaseNotifier()
    app.state.notifier = notifier
    scheduler = MeetLinkScheduler(
        AsyncSessionLocal,
        primary=GoogleMeetLinkProvider(),
        fallback=JitsiLinkProvider(),
        notifier=notifier,
    )
    app.state.link_scheduler = scheduler
    try:
        await scheduler.recover()
    except SQLAlchemyError as e:
        logger.error("meet_link_recovery_failed", error=str(e))

    background_tasks = [
        asyncio.create_task(
            run_periodic(
                "meet_link_sweep",
                scheduler.sweep,
                settings.meet_link_sweep_interval_seconds,
            )
        ),
        asyncio.create_task(
            run_periodic(
                "queue_expiry",
                expire_stale_tokens,
                settings.queue_expiry_interval_seconds,
                run_immediately=True,
            )
        ),
    ]

    yield

    # Shutdown
    logger.info("application_shutdown")

    for task in background_tasks:
        task.cancel()
    await asyncio.gather(*background_tasks, return_exceptions=True)
    await scheduler.shutdown()

    # Close database connections
    await engine.dispose()
    logger.info("database_connections_closed")

    # Close Redis connection
    close_redis_connection()
    logger.info("redis_connection_closed")


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Clinic appointment lifecycle, check-in tokens, live queue and refunds",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add logging middleware
app.add_middleware(LoggingMiddleware)

# Add exception handlers
app.add_exception_handler(AppException, app_exception_handler)  # type: ignore[arg-type]
app.add_exception_handler(StarletteHTTPException, http_exception_handler)  # type: ignore[arg-type]
app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
app.add_exception_handler(Exception, general_exception_handler)  # type: ignore[arg-type]

# Include API router
app.include_router(api_router, prefix=settings.api_v1_prefix)

# Setup Prometheus instrumentation
Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=False,
    should_instrument_requests_inprogress=True,
    excluded_handlers=["/docs", "/redoc", "/openapi.json"],
    inprogress_name="http_requests_inprogress",
    inprogress_labels=True,
).instrument(app).expose(app, endpoint="/metrics", include_in_schema=False)


@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """
    Root endpoint.

    Returns:
        Welcome message
    """
    return {
        "message": f"Welcome to {settings.app_name}",
        "version": settings.app_version,
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.reload,
        log_level=settings.log_level.lower(),
    )
