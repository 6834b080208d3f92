"""
Custom exception classes for the publishing pipeline.

Caller errors (``InvalidScheduleError``, ``UnsupportedPlatformError``,
``InvalidStateError``, ``JobNotFoundError``) surface immediately and are
never retried.  Platform errors carry an :class:`~postflow.models.ErrorKind`
so that the retry controller can decide without looking at transport
details.

Hierarchy:
    Exception
    +-- PipelineError (base for all pipeline errors)
    |   +-- InvalidScheduleError
    |   +-- UnsupportedPlatformError
    |   +-- InvalidStateError
    |   +-- JobNotFoundError
    |   +-- PlatformError
    |       +-- RateLimitedError
    |       +-- AuthExpiredError
    |       +-- RejectedError
    |       +-- TransientError
    |       +-- NotFoundError
    +-- ValidationError (ValueError)
    +-- DatabaseError
    +-- ConfigurationError
    +-- RetryExhaustedError
"""

from typing import Optional

from postflow.models import ErrorKind


# =============================================================================
# BASE EXCEPTION
# =============================================================================


class PipelineError(Exception):
    """Base exception for all publishing-pipeline errors."""

    pass


# =============================================================================
# CALLER ERRORS
# =============================================================================


class InvalidScheduleError(PipelineError):
    """Raised when a schedule request is malformed or due in the past."""

    pass


class UnsupportedPlatformError(PipelineError):
    """Raised when a platform value is not part of the ``Platform`` enum."""

    pass


class InvalidStateError(PipelineError):
    """Raised when a job transition is not allowed from its current state.

    Attributes:
        job_id: Job the transition was attempted on (may be ``None``).
        current: State the job was in.
        target: State the caller tried to move to.
    """

    def __init__(
        self,
        message: str,
        job_id: Optional[str] = None,
        current: Optional[str] = None,
        target: Optional[str] = None,
    ):
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(message)


class JobNotFoundError(PipelineError):
    """Raised when a job id does not exist in the store."""

    pass


# =============================================================================
# PLATFORM ADAPTER ERRORS
# =============================================================================


class PlatformError(PipelineError):
    """Classified failure raised at the platform adapter boundary.

    Attributes:
        kind: The :class:`ErrorKind` used by the retry controller.
        retry_after: Optional platform-supplied wait hint in seconds.
    """

    kind: ErrorKind = ErrorKind.TRANSIENT

    def __init__(self, message: str, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message)


class RateLimitedError(PlatformError):
    """Raised when the platform rate-limits a request."""

    kind = ErrorKind.RATE_LIMITED


class AuthExpiredError(PlatformError):
    """Raised when platform credentials or the session are no longer valid."""

    kind = ErrorKind.AUTH_EXPIRED


class RejectedError(PlatformError):
    """Raised when the platform permanently rejects the content."""

    kind = ErrorKind.REJECTED


class TransientError(PlatformError):
    """Raised for network failures, timeouts and 5xx responses."""

    kind = ErrorKind.TRANSIENT


class NotFoundError(PlatformError):
    """Raised when a published post can no longer be found on the platform."""

    kind = ErrorKind.NOT_FOUND


# =============================================================================
# INFRASTRUCTURE EXCEPTIONS
# =============================================================================


class ValidationError(ValueError):
    """Raised when input validation fails."""

    pass


class DatabaseError(Exception):
    """Raised when database operations fail."""

    pass


class ConfigurationError(Exception):
    """Raised when system configuration is invalid."""

    pass


class RetryExhaustedError(Exception):
    """Raised when all retry attempts have been exhausted.

    Attributes:
        operation: Name of the operation that was retried.
        attempts: Total number of attempts made.
        last_error: The last exception raised before giving up.
    """

    def __init__(self, operation: str, attempts: int, last_error: Exception):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{operation} failed after {attempts} attempts. "
            f"Last error: {last_error}"
        )


# Lookup used when rebuilding an error from a stored ``ErrorKind``.
PLATFORM_ERRORS = {
    ErrorKind.RATE_LIMITED: RateLimitedError,
    ErrorKind.AUTH_EXPIRED: AuthExpiredError,
    ErrorKind.REJECTED: RejectedError,
    ErrorKind.TRANSIENT: TransientError,
    ErrorKind.NOT_FOUND: NotFoundError,
}


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    # Base
    "PipelineError",
    # Caller errors
    "InvalidScheduleError",
    "UnsupportedPlatformError",
    "InvalidStateError",
    "JobNotFoundError",
    # Platform errors
    "PlatformError",
    "RateLimitedError",
    "AuthExpiredError",
    "RejectedError",
    "TransientError",
    "NotFoundError",
    "PLATFORM_ERRORS",
    # Infrastructure
    "ValidationError",
    "DatabaseError",
    "ConfigurationError",
    "RetryExhaustedError",
]
