"""Exception handlers rendering every failure as one JSON error shape."""

from typing import Any

import structlog
from fastapi import Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.core.exceptions import AppException

logger = structlog.get_logger(__name__)

HTTP_ERROR_KINDS = {
    status.HTTP_404_NOT_FOUND: "not_found",
    status.HTTP_405_METHOD_NOT_ALLOWED: "method_not_allowed",
    status.HTTP_409_CONFLICT: "conflict",
}


def error_response(
    request: Request,
    status_code: int,
    error: str,
    kind: str,
    message: Any,
    **extra: Any,
) -> JSONResponse:
    """Build the ``{"error", "kind", "message", "path"}`` body."""
    content = {"error": error, "kind": kind, "message": message, **extra}
    content["path"] = str(request.url)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(content))


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """
    Render domain errors; upstream and internal failures are logged as errors.

    Args:
        request: Request object
        exc: Application exception

    Returns:
        JSON error response
    """
    log = logger.error if exc.status_code >= 500 else logger.info
    log("request_failed", path=request.url.path, kind=exc.kind, error=exc.message)

    return error_response(
        request, exc.status_code, exc.__class__.__name__, exc.kind, exc.message
    )


async def http_exception_handler(
    request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    kind = HTTP_ERROR_KINDS.get(exc.status_code, "http_error")
    return error_response(request, exc.status_code, "HTTPException", kind, exc.detail)


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Request body, path and query errors, with pydantic's per-field details."""
    return error_response(
        request,
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "ValidationError",
        "validation_error",
        "Request validation failed",
        details=exc.errors(),
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_exception", path=request.url.path, error=str(exc))
    return error_response(
        request,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "InternalServerError",
        "internal_error",
        "An unexpected error occurred",
    )
