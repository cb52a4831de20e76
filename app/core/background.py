"""Periodic background jobs run inside the application process."""

import asyncio
from collections.abc import Awaitable, Callable

import structlog

logger = structlog.get_logger(__name__)


async def run_periodic(
    name: str,
    job: Callable[[], Awaitable[object]],
    interval_seconds: float,
    run_immediately: bool = False,
) -> None:
    """
    Run ``job`` every ``interval_seconds`` until cancelled.

    A failing run is logged and the loop carries on with the next one.
    """
    logger.info("background_job_started", job=name, interval_seconds=interval_seconds)

    if not run_immediately:
        await asyncio.sleep(interval_seconds)

    while True:
        try:
            await job()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("background_job_failed", job=name, error=str(e))
        await asyncio.sleep(interval_seconds)
