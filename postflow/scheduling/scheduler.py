"""
Scheduler: validates publish requests and writes pending job records.

``JobScheduler`` is the inbound API of the pipeline.  The insert into the
job store is the durability boundary: once :meth:`JobScheduler.schedule`
returns, the job will be attempted at least once, even across restarts.

All database interactions go through the ``store`` parameter (any
:class:`~postflow.database.JobStore`).
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Union

from postflow.exceptions import (
    InvalidScheduleError,
    InvalidStateError,
    JobNotFoundError,
    UnsupportedPlatformError,
)
from postflow.logging import LifecycleLogger, LogComponent
from postflow.models import JobRecord, JobState, Platform
from postflow.scheduling.lifecycle import ensure_transition
from postflow.utils import ensure_utc, generate_id, isoformat, utc_now

logger = logging.getLogger(__name__)


def resolve_platform(platform: Union[str, Platform]) -> Platform:
    """Map a platform value onto the closed enum.

    Raises:
        UnsupportedPlatformError: For anything outside :class:`Platform`.
    """
    if isinstance(platform, Platform):
        return platform
    try:
        return Platform(platform)
    except ValueError:
        raise UnsupportedPlatformError(f"Unsupported platform: {platform!r}") from None


def is_eligible(job: JobRecord, now: datetime) -> bool:
    """Whether the dispatch loop may pick *job* up at *now*.

    Pending jobs are eligible once due.  Claimed or publishing jobs are
    eligible only after their lease has expired (crash recovery).
    """
    if job.state == JobState.PENDING:
        return job.due_at <= now
    if job.state in (JobState.CLAIMED, JobState.PUBLISHING):
        return job.lease_expired(now)
    return False


class JobScheduler:
    """Accepts, cancels and looks up publish jobs.

    Args:
        store: Job store backend.
        grace_seconds: Clock-skew tolerance for ``due_at`` in the past.
        clock: Returns the current UTC time.
        lifecycle: Optional lifecycle audit logger.
    """

    def __init__(
        self,
        store: "JobStore",  # noqa: F821
        grace_seconds: float = 30.0,
        clock: Callable[[], datetime] = utc_now,
        lifecycle: Optional[LifecycleLogger] = None,
    ) -> None:
        self.store = store
        self.grace = timedelta(seconds=grace_seconds)
        self.clock = clock
        self.lifecycle = lifecycle

    # ================================================================
    # SCHEDULE / CANCEL
    # ================================================================

    async def schedule(
        self,
        content_ref: str,
        platform: Union[str, Platform],
        due_at: datetime,
        predicted_score: float,
    ) -> str:
        """Create a pending job.

        Args:
            content_ref: Opaque reference to the content to publish.
            platform: Target platform (``Platform`` or its string value).
            due_at: Earliest execution time.  Naive datetimes are UTC.
            predicted_score: Engagement forecast, 0-100.

        Returns:
            The new job id.

        Raises:
            InvalidScheduleError: Blank reference, score out of range, or
                ``due_at`` in the past beyond the grace window.
            UnsupportedPlatformError: Unknown platform.
        """
        target = resolve_platform(platform)

        if not content_ref or not str(content_ref).strip():
            raise InvalidScheduleError("content_ref cannot be empty")
        if due_at is None:
            raise InvalidScheduleError("due_at is required")
        try:
            score = float(predicted_score)
        except (TypeError, ValueError):
            raise InvalidScheduleError(
                f"predicted_score must be a number, got {predicted_score!r}"
            ) from None
        if not 0.0 <= score <= 100.0:
            raise InvalidScheduleError(
                f"predicted_score must be within [0, 100], got {score}"
            )

        now = self.clock()
        due_at = ensure_utc(due_at)
        if due_at < now - self.grace:
            raise InvalidScheduleError(
                f"due_at {due_at.isoformat()} is in the past "
                f"(now {now.isoformat()}, grace {self.grace.total_seconds():.0f}s)"
            )

        job = JobRecord(
            id=generate_id(),
            content_ref=str(content_ref),
            platform=target,
            due_at=due_at,
            predicted_score=score,
            created_at=now,
            updated_at=now,
        )
        await self.store.insert_job(job.to_row())

        logger.info(
            "[SCHEDULER] Job %s scheduled for %s at %s (predicted=%.1f)",
            job.id,
            target.value,
            due_at.isoformat(),
            score,
        )
        if self.lifecycle:
            await self.lifecycle.info(
                LogComponent.SCHEDULER,
                "scheduled",
                job_id=job.id,
                state=job.state.value,
                data={"platform": target.value, "due_at": isoformat(due_at)},
            )
        return job.id

    async def cancel(self, job_id: str) -> JobRecord:
        """Cancel a pending job.

        Raises:
            JobNotFoundError: Unknown id.
            InvalidStateError: The job is no longer pending, including when
                a worker claimed it between our read and our write.
        """
        job = await self.get_job(job_id)
        ensure_transition(job.state, JobState.CANCELLED, job_id)

        now = self.clock()
        row = await self.store.update_job(
            job_id,
            {
                "state": JobState.CANCELLED.value,
                "cancelled_at": isoformat(now),
                "updated_at": isoformat(now),
            },
            expected_state=JobState.PENDING.value,
            expected_token=None,
        )
        if row is None:
            current = await self.get_job(job_id)
            raise InvalidStateError(
                f"job {job_id} was {current.state.value} before it could be cancelled",
                job_id=job_id,
                current=current.state.value,
                target=JobState.CANCELLED.value,
            )

        logger.info("[SCHEDULER] Job %s cancelled", job_id)
        if self.lifecycle:
            await self.lifecycle.info(
                LogComponent.SCHEDULER,
                "cancelled",
                job_id=job_id,
                state=JobState.CANCELLED.value,
            )
        return JobRecord.from_row(row)

    # ================================================================
    # QUERIES
    # ================================================================

    async def get_job(self, job_id: str) -> JobRecord:
        """Load a job.

        Raises:
            JobNotFoundError: Unknown id.
        """
        row = await self.store.get_job(job_id)
        if row is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return JobRecord.from_row(row)

    async def list_jobs(
        self, state: Optional[JobState] = None, limit: int = 20
    ) -> List[JobRecord]:
        rows = await self.store.list_jobs(
            state=state.value if state else None, limit=limit
        )
        return [JobRecord.from_row(row) for row in rows]

    def is_eligible(self, job: JobRecord, now: Optional[datetime] = None) -> bool:
        return is_eligible(job, now or self.clock())


__all__ = ["JobScheduler", "is_eligible", "resolve_platform"]
