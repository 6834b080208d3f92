"""
Dispatch loop: turns eligible job records into publish attempts.

``DispatchLoop`` runs as an asyncio background task.  Each cycle it:

1. Polls the store for eligible jobs (pending and due, or claimed /
   publishing with an expired lease), earliest ``due_at`` first.
2. Fans the batch out over a fixed pool of worker tasks.
3. Each worker claims its job with a conditional write, moves it to
   ``publishing``, calls the platform adapter under a timeout while a
   companion task renews the lease, then records the outcome or asks the
   retry policy what to do.

The store's conditional write is the only synchronization between
workers (and between processes).  Losing a race is a no-op.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from postflow.adapters.base import AdapterRegistry, idempotency_key
from postflow.config import PipelineSettings
from postflow.exceptions import PlatformError, TransientError
from postflow.logging import LifecycleLogger, LogComponent
from postflow.models import ErrorKind, JobError, JobRecord, JobState
from postflow.scheduling.lifecycle import ensure_transition
from postflow.scheduling.retry import RetryPolicy
from postflow.utils import generate_id, isoformat, utc_now

logger = logging.getLogger(__name__)


@dataclass
class DispatchStats:
    """Counters for one :meth:`DispatchLoop.run_once` cycle."""

    polled: int = 0
    claimed: int = 0
    published: int = 0
    retried: int = 0
    failed: int = 0
    lost: int = 0
    skipped: int = 0

    def as_dict(self) -> Dict[str, int]:
        return dict(self.__dict__)


class DispatchLoop:
    """Worker pool that publishes due jobs.

    Args:
        store: Job store backend (:class:`~postflow.database.JobStore`).
        adapters: Registry of platform adapters.
        retry_policy: Decides retry vs give-up on failure.
        worker_count: Concurrent workers per cycle.
        poll_interval_seconds: Sleep between cycles.
        poll_batch_size: Max jobs fetched per cycle.
        lease_seconds: Claim lease duration.
        submit_timeout_seconds: Bound on a single adapter ``submit`` call.
        clock: Returns the current UTC time.
        lifecycle: Optional lifecycle audit logger.
        notifier: Optional :class:`~postflow.notify.TelegramNotifier`.
    """

    def __init__(
        self,
        store: "JobStore",  # noqa: F821
        adapters: AdapterRegistry,
        retry_policy: Optional[RetryPolicy] = None,
        worker_count: int = 4,
        poll_interval_seconds: float = 15.0,
        poll_batch_size: int = 50,
        lease_seconds: float = 120.0,
        submit_timeout_seconds: float = 60.0,
        clock: Callable[[], datetime] = utc_now,
        lifecycle: Optional[LifecycleLogger] = None,
        notifier: Optional[Any] = None,
    ) -> None:
        self.store = store
        self.adapters = adapters
        self.retry_policy = retry_policy or RetryPolicy()
        self.worker_count = worker_count
        self.poll_interval_seconds = poll_interval_seconds
        self.poll_batch_size = poll_batch_size
        self.lease = timedelta(seconds=lease_seconds)
        self.submit_timeout_seconds = submit_timeout_seconds
        self.clock = clock
        self.lifecycle = lifecycle
        self.notifier = notifier
        self._running: bool = False
        self._cycle_count: int = 0

    @classmethod
    def from_settings(
        cls,
        store: "JobStore",  # noqa: F821
        adapters: AdapterRegistry,
        settings: PipelineSettings,
        **kwargs: Any,
    ) -> "DispatchLoop":
        return cls(
            store,
            adapters,
            retry_policy=RetryPolicy.from_settings(settings.retry),
            worker_count=settings.worker_count,
            poll_interval_seconds=settings.poll_interval_seconds,
            poll_batch_size=settings.poll_batch_size,
            lease_seconds=settings.lease_seconds,
            submit_timeout_seconds=settings.submit_timeout_seconds,
            **kwargs,
        )

    # ================================================================
    # LIFECYCLE
    # ================================================================

    async def start(self) -> None:
        """Run dispatch cycles until :meth:`stop` is called."""
        self._running = True
        self._cycle_count = 0
        logger.info(
            "[DISPATCH] Dispatch loop started (workers=%d, interval=%.0fs, lease=%.0fs)",
            self.worker_count,
            self.poll_interval_seconds,
            self.lease.total_seconds(),
        )

        while self._running:
            try:
                await self.run_once()
                self._cycle_count += 1
            except asyncio.CancelledError:
                logger.info("[DISPATCH] Dispatch loop cancelled")
                break
            except Exception:
                logger.exception("[DISPATCH] Unexpected error in dispatch loop")

            try:
                await asyncio.sleep(self.poll_interval_seconds)
            except asyncio.CancelledError:
                logger.info("[DISPATCH] Dispatch loop sleep cancelled")
                break

        logger.info("[DISPATCH] Dispatch loop stopped")

    async def stop(self) -> None:
        """Ask the loop to exit after the current cycle."""
        self._running = False
        logger.info("[DISPATCH] Dispatch loop stop requested")

    # ================================================================
    # CYCLE
    # ================================================================

    async def run_once(self) -> DispatchStats:
        """Poll one batch and process it with the worker pool."""
        stats = DispatchStats()
        rows = await self.store.find_eligible_jobs(self.clock(), self.poll_batch_size)
        stats.polled = len(rows)
        if not rows:
            return stats

        logger.info("[DISPATCH] Found %d eligible jobs", len(rows))

        queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()
        for row in rows:
            queue.put_nowait(row)

        workers = [
            asyncio.create_task(self._worker(queue, stats))
            for _ in range(min(self.worker_count, len(rows)))
        ]
        await asyncio.gather(*workers)
        logger.info("[DISPATCH] Cycle done: %s", stats.as_dict())
        return stats

    async def _worker(
        self, queue: "asyncio.Queue[Dict[str, Any]]", stats: DispatchStats
    ) -> None:
        while True:
            try:
                row = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                await self.process_job(row, stats)
            except Exception:
                # One bad job must not take the worker down.
                logger.exception("[DISPATCH] Worker failed on job %s", row.get("id"))
            finally:
                queue.task_done()

    async def process_job(
        self, row: Dict[str, Any], stats: Optional[DispatchStats] = None
    ) -> Optional[JobState]:
        """Claim and execute one job row.

        Returns:
            The state the job ended in, or ``None`` if this worker did not
            get to run it (lost race, lost lease, no adapter).
        """
        stats = stats if stats is not None else DispatchStats()
        job = JobRecord.from_row(row)

        if job.platform not in self.adapters:
            logger.warning(
                "[DISPATCH] No adapter for %s; leaving job %s",
                job.platform.value,
                job.id,
            )
            stats.skipped += 1
            return None

        if job.state == JobState.PUBLISHING and (
            job.attempt_count >= self.retry_policy.max_attempts
        ):
            return await self._fail_abandoned(job, stats)

        claimed = await self._claim(job)
        if claimed is None:
            stats.lost += 1
            return None
        stats.claimed += 1

        outcome = await self._execute(claimed)
        if outcome is None:
            stats.lost += 1
        elif outcome == JobState.PUBLISHED:
            stats.published += 1
        elif outcome == JobState.PENDING:
            stats.retried += 1
        elif outcome == JobState.FAILED:
            stats.failed += 1
        return outcome

    # ================================================================
    # CLAIM
    # ================================================================

    async def _claim(self, job: JobRecord) -> Optional[JobRecord]:
        """Take the lease on *job*; ``None`` if another worker got there first."""
        now = self.clock()
        if job.state == JobState.PENDING:
            if job.due_at > now:
                return None
        elif job.state in (JobState.CLAIMED, JobState.PUBLISHING):
            if not job.lease_expired(now):
                return None
            logger.warning(
                "[DISPATCH] Recovering job %s from expired %s lease (token=%s)",
                job.id,
                job.state.value,
                job.claim_token,
            )
        ensure_transition(job.state, JobState.CLAIMED, job.id)

        token = generate_id()
        row = await self.store.update_job(
            job.id,
            {
                "state": JobState.CLAIMED.value,
                "claim_token": token,
                "claimed_until": isoformat(now + self.lease),
                "updated_at": isoformat(now),
            },
            expected_state=job.state.value,
            expected_token=job.claim_token,
        )
        if row is None:
            logger.debug("[DISPATCH] Job %s already claimed, skipping", job.id)
            return None

        if self.lifecycle:
            await self.lifecycle.info(
                LogComponent.DISPATCH,
                "recovered" if job.state != JobState.PENDING else "claimed",
                job_id=job.id,
                state=JobState.CLAIMED.value,
                attempt=job.attempt_count,
            )
        return JobRecord.from_row(row)

    async def _fail_abandoned(
        self, job: JobRecord, stats: DispatchStats
    ) -> Optional[JobState]:
        """A job whose final attempt died mid-flight is failed, not resubmitted."""
        now = self.clock()
        if not job.lease_expired(now):
            return None
        ensure_transition(job.state, JobState.FAILED, job.id)

        error = JobError(
            ErrorKind.TRANSIENT,
            f"lease expired during attempt {job.attempt_count}; attempt budget exhausted",
        )
        row = await self.store.update_job(
            job.id,
            {
                "state": JobState.FAILED.value,
                "last_error": error.to_dict(),
                "claim_token": None,
                "claimed_until": None,
                "updated_at": isoformat(now),
            },
            expected_state=JobState.PUBLISHING.value,
            expected_token=job.claim_token,
        )
        if row is None:
            stats.lost += 1
            return None

        stats.failed += 1
        failed = JobRecord.from_row(row)
        logger.error("[DISPATCH] Job %s failed: %s", job.id, error.message)
        await self._report_failure(failed, error)
        return JobState.FAILED

    # ================================================================
    # EXECUTE
    # ================================================================

    async def _execute(self, job: JobRecord) -> Optional[JobState]:
        token = job.claim_token
        now = self.clock()
        ensure_transition(job.state, JobState.PUBLISHING, job.id)

        row = await self.store.update_job(
            job.id,
            {
                "state": JobState.PUBLISHING.value,
                "attempt_count": job.attempt_count + 1,
                "claimed_until": isoformat(now + self.lease),
                "updated_at": isoformat(now),
            },
            expected_state=JobState.CLAIMED.value,
            expected_token=token,
        )
        if row is None:
            logger.warning("[DISPATCH] Lost lease on job %s before submit", job.id)
            return None
        job = JobRecord.from_row(row)

        adapter = self.adapters.get(job.platform)
        logger.info(
            "[DISPATCH] Publishing job %s to %s (attempt %d)",
            job.id,
            job.platform.value,
            job.attempt_count,
        )

        renewal = asyncio.create_task(self._renew_lease(job.id, token))
        error: Optional[PlatformError] = None
        post_id: Optional[str] = None
        try:
            post_id = await asyncio.wait_for(
                adapter.submit(job.content_ref, idempotency_key(job.id)),
                timeout=self.submit_timeout_seconds,
            )
        except asyncio.TimeoutError:
            error = TransientError(
                f"submit timed out after {self.submit_timeout_seconds:.0f}s"
            )
        except PlatformError as exc:
            error = exc
        except Exception as exc:
            logger.exception("[DISPATCH] Unclassified adapter error on job %s", job.id)
            error = TransientError(f"{type(exc).__name__}: {exc}")
        finally:
            renewal.cancel()
            await asyncio.gather(renewal, return_exceptions=True)

        if error is None and not post_id:
            error = TransientError("adapter returned an empty post id")

        if error is not None:
            return await self._fail_or_retry(job, token, error)
        return await self._complete(job, token, post_id)

    async def _renew_lease(self, job_id: str, token: Optional[str]) -> None:
        """Extend ``claimed_until`` every third of a lease while a submit runs."""
        interval = self.lease.total_seconds() / 3
        while True:
            await asyncio.sleep(interval)
            now = self.clock()
            try:
                row = await self.store.update_job(
                    job_id,
                    {
                        "claimed_until": isoformat(now + self.lease),
                        "updated_at": isoformat(now),
                    },
                    expected_state=JobState.PUBLISHING.value,
                    expected_token=token,
                )
            except Exception:
                logger.exception("[DISPATCH] Lease renewal failed for job %s", job_id)
                continue
            if row is None:
                logger.warning(
                    "[DISPATCH] Lease on job %s was taken over; another worker may resubmit",
                    job_id,
                )
                return
            logger.debug("[DISPATCH] Lease renewed for job %s", job_id)

    async def _complete(
        self, job: JobRecord, token: Optional[str], post_id: str
    ) -> Optional[JobState]:
        now = self.clock()
        ensure_transition(job.state, JobState.PUBLISHED, job.id)

        row = await self.store.update_job(
            job.id,
            {
                "state": JobState.PUBLISHED.value,
                "platform_post_id": post_id,
                "published_at": isoformat(now),
                "last_error": None,
                "claim_token": None,
                "claimed_until": None,
                "updated_at": isoformat(now),
            },
            expected_state=JobState.PUBLISHING.value,
            expected_token=token,
        )
        if row is None:
            logger.error(
                "[DISPATCH] Job %s was published as %s but its lease was lost; "
                "the recovering worker may publish again",
                job.id,
                post_id,
            )
            if self.lifecycle:
                await self.lifecycle.error(
                    LogComponent.DISPATCH,
                    "lease_lost",
                    job_id=job.id,
                    attempt=job.attempt_count,
                    data={"platform_post_id": post_id},
                )
            return None

        logger.info(
            "[DISPATCH] Job %s published (platform_post_id=%s, attempts=%d)",
            job.id,
            post_id,
            job.attempt_count,
        )
        if self.lifecycle:
            await self.lifecycle.info(
                LogComponent.DISPATCH,
                "published",
                job_id=job.id,
                state=JobState.PUBLISHED.value,
                attempt=job.attempt_count,
                data={"platform_post_id": post_id},
            )
        return JobState.PUBLISHED

    async def _fail_or_retry(
        self, job: JobRecord, token: Optional[str], error: PlatformError
    ) -> Optional[JobState]:
        now = self.clock()
        decision = self.retry_policy.decide(
            job.attempt_count, error.kind, error.retry_after
        )
        last_error = JobError(error.kind, str(error))

        if decision.retry:
            target = JobState.PENDING
            changes = {
                "state": target.value,
                "due_at": isoformat(now + timedelta(seconds=decision.delay_seconds)),
            }
        else:
            target = JobState.FAILED
            changes = {"state": target.value}
        ensure_transition(job.state, target, job.id)
        changes.update(
            {
                "last_error": last_error.to_dict(),
                "claim_token": None,
                "claimed_until": None,
                "updated_at": isoformat(now),
            }
        )

        row = await self.store.update_job(
            job.id,
            changes,
            expected_state=JobState.PUBLISHING.value,
            expected_token=token,
        )
        if row is None:
            logger.warning(
                "[DISPATCH] Lost lease on job %s while recording %s failure",
                job.id,
                error.kind.value,
            )
            return None

        if decision.retry:
            logger.warning(
                "[DISPATCH] Job %s attempt %d failed (%s: %s); retrying in %.0fs",
                job.id,
                job.attempt_count,
                error.kind.value,
                error,
                decision.delay_seconds,
            )
            if self.lifecycle:
                await self.lifecycle.warning(
                    LogComponent.DISPATCH,
                    "retry_scheduled",
                    job_id=job.id,
                    state=target.value,
                    attempt=job.attempt_count,
                    error=error,
                    data={"delay_seconds": decision.delay_seconds},
                )
            return target

        logger.error(
            "[DISPATCH] Job %s failed after %d attempt(s): %s (%s)",
            job.id,
            job.attempt_count,
            error,
            decision.reason,
        )
        await self._report_failure(JobRecord.from_row(row), last_error, error)
        return target

    async def _report_failure(
        self,
        job: JobRecord,
        last_error: JobError,
        error: Optional[Exception] = None,
    ) -> None:
        if self.lifecycle:
            await self.lifecycle.error(
                LogComponent.DISPATCH,
                "failed",
                job_id=job.id,
                state=JobState.FAILED.value,
                attempt=job.attempt_count,
                message=last_error.message,
                error=error,
                data={"kind": last_error.kind.value},
            )
        if self.notifier:
            await self.notifier.job_failed(job)


__all__ = ["DispatchLoop", "DispatchStats"]
