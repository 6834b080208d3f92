"""
Retry controller: pure decision function for failed dispatch attempts.

``RetryPolicy.decide(attempt_count, kind)`` maps an attempt count and a
classified error to either :class:`RetryDecision` with a delay or a
give-up decision.  The policy holds no state and never reads the clock,
so the same inputs always yield the same decision.
"""

from dataclasses import dataclass
from typing import Optional

from postflow.config import RetrySettings
from postflow.models import ErrorKind


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of :meth:`RetryPolicy.decide`.

    Attributes:
        retry: ``True`` to reschedule the job, ``False`` to give up.
        delay_seconds: Backoff before the next attempt (``0`` on give-up).
        reason: Short human-readable explanation for logs.
    """

    retry: bool
    delay_seconds: float = 0.0
    reason: str = ""

    @classmethod
    def give_up(cls, reason: str) -> "RetryDecision":
        return cls(retry=False, delay_seconds=0.0, reason=reason)


class RetryPolicy:
    """Exponential backoff capped at ``max_delay_seconds``.

    Args:
        base_delay_seconds: Delay for ``attempt_count == 0``.
        max_delay_seconds: Upper bound for any delay.
        max_attempts: Attempts after which retryable errors give up.
    """

    def __init__(
        self,
        base_delay_seconds: float = 30.0,
        max_delay_seconds: float = 3600.0,
        max_attempts: int = 3,
    ) -> None:
        # Reuse the settings validation.
        settings = RetrySettings(base_delay_seconds, max_delay_seconds, max_attempts)
        self.base_delay_seconds = settings.base_delay_seconds
        self.max_delay_seconds = settings.max_delay_seconds
        self.max_attempts = settings.max_attempts

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> "RetryPolicy":
        return cls(
            base_delay_seconds=settings.base_delay_seconds,
            max_delay_seconds=settings.max_delay_seconds,
            max_attempts=settings.max_attempts,
        )

    def backoff(self, attempt_count: int) -> float:
        """``min(base * 2 ** attempt_count, cap)``; non-decreasing in the count."""
        if attempt_count < 0:
            raise ValueError(f"attempt_count cannot be negative, got {attempt_count}")
        # Cap the exponent so huge counts cannot overflow the float.
        exponent = min(attempt_count, 62)
        return min(self.base_delay_seconds * (2 ** exponent), self.max_delay_seconds)

    def decide(
        self,
        attempt_count: int,
        kind: ErrorKind,
        retry_after: Optional[float] = None,
    ) -> RetryDecision:
        """Decide whether a failed attempt is retried.

        Args:
            attempt_count: Attempts made so far, including the failed one.
            kind: Classification of the failure.
            retry_after: Optional platform wait hint (rate limits).  Raises
                the delay to at least the hint, still capped.

        Returns:
            The retry or give-up decision.
        """
        if not kind.is_retryable:
            return RetryDecision.give_up(f"{kind.value} is not retryable")

        if attempt_count >= self.max_attempts:
            return RetryDecision.give_up(
                f"attempt budget exhausted ({attempt_count}/{self.max_attempts})"
            )

        delay = self.backoff(attempt_count)
        if retry_after is not None and retry_after > delay:
            delay = min(retry_after, self.max_delay_seconds)

        return RetryDecision(
            retry=True,
            delay_seconds=delay,
            reason=f"{kind.value}, attempt {attempt_count}/{self.max_attempts}",
        )


__all__ = ["RetryDecision", "RetryPolicy"]
