"""Custom application exceptions."""


class AppException(Exception):
    """Base application exception."""

    kind = "internal_error"

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code."""
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class NotFoundException(AppException):
    """Resource not found exception."""

    kind = "not_found"

    def __init__(self, message: str = "Resource not found"):
        """Initialize with 404 status code."""
        super().__init__(message, status_code=404)


class InvalidStateException(AppException):
    """Operation attempted from a state that forbids it."""

    kind = "invalid_state"

    def __init__(self, message: str = "Invalid state for this operation"):
        """Initialize with 409 status code."""
        super().__init__(message, status_code=409)


class AlreadyTerminalException(InvalidStateException):
    """Queue entry already reached a terminal status."""

    kind = "already_terminal"

    def __init__(self, message: str = "Appointment already reached a terminal queue status"):
        super().__init__(message)


class ExpiredException(AppException):
    """Token past its expiry."""

    kind = "expired"

    def __init__(self, message: str = "Token has expired"):
        """Initialize with 410 status code."""
        super().__init__(message, status_code=410)


class ConflictException(AppException):
    """Conflict exception."""

    kind = "conflict"

    def __init__(self, message: str = "Conflict"):
        """Initialize with 409 status code."""
        super().__init__(message, status_code=409)


class UpstreamFailureException(AppException):
    """External collaborator failed (link provider, payment gateway)."""

    kind = "upstream_failure"

    def __init__(self, message: str = "Upstream service failed"):
        """Initialize with 502 status code."""
        super().__init__(message, status_code=502)


class ValidationException(AppException):
    """Validation error exception."""

    kind = "validation_error"

    def __init__(self, message: str = "Validation error"):
        """Initialize with 422 status code."""
        super().__init__(message, status_code=422)
