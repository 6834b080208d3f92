"""
Small helpers shared by the pipeline modules.

Provides:
    - utc_now(): the default ``clock`` of every component
    - generate_id(): UUID4 strings for job ids, metric ids and claim tokens
    - ensure_utc(dt) / parse_timestamp(value) / isoformat(dt): the
      TIMESTAMPTZ wire format used by the store
    - @with_retry: backoff wrapper for idempotent store reads
"""

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Callable, Optional, Tuple, Type, TypeVar

from postflow.exceptions import RetryExhaustedError

T = TypeVar("T")

logger = logging.getLogger(__name__)


# ===========================================================================
# TIME
# Supabase columns are TIMESTAMPTZ; naive datetimes never reach the store.
# ===========================================================================


def utc_now() -> datetime:
    """Current time as an aware UTC datetime.

    Components take a ``clock`` callable defaulting to this so tests can
    pin time; never call ``datetime.now()`` directly.
    """
    return datetime.now(timezone.utc)


def generate_id() -> str:
    """Random UUID4 string (valid for Supabase ``uuid`` and ``text`` ids)."""
    return str(uuid.uuid4())


def ensure_utc(dt: datetime) -> datetime:
    """Normalize *dt* to aware UTC; naive values are taken to be UTC already."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Read a timestamp column back into an aware UTC datetime.

    Accepts datetimes and ISO-8601 strings, including the trailing ``Z``
    PostgREST emits.  Anything unparseable gives ``None``.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, TypeError):
        return None
    return ensure_utc(parsed)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    """Serialize an optional datetime to a UTC ISO string."""
    if value is None:
        return None
    return ensure_utc(value).isoformat()


# ===========================================================================
# STORE READ RETRIES
# Platform calls never retry in-process; their policy lives in
# postflow.scheduling.retry.  This wrapper is for idempotent store reads.
# ===========================================================================


def with_retry(
    max_attempts: int = 3,
    base_delay: float = 2.0,
    retryable_exceptions: Tuple[Type[Exception], ...] = (Exception,),
    operation_name: Optional[str] = None,
) -> Callable:
    """
    Retry a coroutine function on the given exception types.

    The n-th retry waits ``base_delay * 2 ** (n - 1)`` seconds.  Other
    exception types propagate on the first failure.

    Args:
        max_attempts: Total attempts including the first call.
        base_delay: Wait before the first retry, in seconds.
        retryable_exceptions: Exception types worth another attempt.
        operation_name: Label for log lines; defaults to ``__name__``.

    Raises:
        RetryExhaustedError: Every attempt failed with a retryable error.
        TypeError: The decorated function is not a coroutine function.

    Usage::

        @with_retry(retryable_exceptions=(httpx.HTTPError,))
        async def load_calibration(self) -> Optional[Dict[str, Any]]:
            ...
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        if not asyncio.iscoroutinefunction(func):
            raise TypeError(f"with_retry only wraps coroutines, got {func.__name__}")
        label = operation_name or func.__name__

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            failure: Optional[Exception] = None
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except retryable_exceptions as exc:
                    failure = exc
                    if attempt == max_attempts:
                        break
                    wait = base_delay * (2 ** (attempt - 1))
                    logger.warning(
                        "[RETRY] %s failed (%d/%d): %s; next try in %.1fs",
                        label,
                        attempt,
                        max_attempts,
                        exc,
                        wait,
                    )
                    await asyncio.sleep(wait)

            logger.error("[RETRY] %s gave up after %d attempts: %s", label, max_attempts, failure)
            raise RetryExhaustedError(label, max_attempts, failure)  # type: ignore[arg-type]

        return wrapper  # type: ignore[return-value]

    return decorator
