"""
Analytics collector: observed-metric sourcing for published jobs.

Two modes feed the append-only ``observed_metrics`` table:

* **pull** -- :meth:`AnalyticsCollector.collect_once` asks each
  platform adapter for current counts of every job published within the
  trailing window.  Runs every ``interval_seconds`` under :meth:`start`.
* **push** -- :meth:`AnalyticsCollector.ingest_push` accepts metric
  events delivered from outside (see :mod:`postflow.analytics.webhook`).

Collection never changes job state; publishing and analytics lifecycles
are independent.  A failed fetch is logged and picked up again on the
next interval.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, Tuple, Union

from postflow.adapters.base import AdapterRegistry
from postflow.config import PipelineSettings
from postflow.exceptions import (
    InvalidStateError,
    JobNotFoundError,
    NotFoundError,
    PlatformError,
    ValidationError,
)
from postflow.logging import LifecycleLogger, LogComponent
from postflow.models import JobRecord, JobState, ObservedMetric, Platform, RawCounts
from postflow.utils import ensure_utc, generate_id, utc_now

logger = logging.getLogger(__name__)

# Pushed snapshots may be stamped slightly ahead of our clock.
MAX_FUTURE_SKEW = timedelta(minutes=5)


@dataclass
class MetricPush:
    """An externally delivered metric event.

    Identify the job by ``job_id`` or by ``platform`` + ``platform_post_id``.
    """

    counts: RawCounts
    captured_at: Optional[datetime] = None
    job_id: Optional[str] = None
    platform: Optional[Union[str, Platform]] = None
    platform_post_id: Optional[str] = None


@dataclass
class CollectionReport:
    jobs_checked: int = 0
    metrics_recorded: int = 0
    failures: int = 0
    not_found: List[str] = field(default_factory=list)


def validate_counts(counts: RawCounts) -> None:
    """Raises :class:`ValidationError` on negative counts."""
    for name in ("impressions", "likes", "comments", "shares", "clicks"):
        value = getattr(counts, name)
        if value is not None and value < 0:
            raise ValidationError(f"{name} cannot be negative, got {value}")


class AnalyticsCollector:
    """Pull and push sourcing of observed metrics.

    Args:
        store: Job store backend.
        adapters: Registry used for pull fetches.
        interval_seconds: Pull period.
        window_days: Only jobs published this recently are pulled.
        fetch_timeout_seconds: Bound on one ``fetch_metrics`` call.
        page_size: Published jobs read from the store per query.
        clock: Returns the current UTC time.
        lifecycle: Optional lifecycle audit logger.
    """

    def __init__(
        self,
        store: "JobStore",  # noqa: F821
        adapters: AdapterRegistry,
        interval_seconds: float = 6 * 3600.0,
        window_days: int = 30,
        fetch_timeout_seconds: float = 30.0,
        page_size: int = 500,
        clock: Callable[[], datetime] = utc_now,
        lifecycle: Optional[LifecycleLogger] = None,
    ) -> None:
        self.store = store
        self.adapters = adapters
        self.interval_seconds = interval_seconds
        self.window = timedelta(days=window_days)
        self.fetch_timeout_seconds = fetch_timeout_seconds
        self.page_size = page_size
        self.clock = clock
        self.lifecycle = lifecycle
        self._running: bool = False

    @classmethod
    def from_settings(
        cls,
        store: "JobStore",  # noqa: F821
        adapters: AdapterRegistry,
        settings: PipelineSettings,
        **kwargs: Any,
    ) -> "AnalyticsCollector":
        return cls(
            store,
            adapters,
            interval_seconds=settings.analytics_interval_seconds,
            window_days=settings.analytics_window_days,
            fetch_timeout_seconds=settings.fetch_timeout_seconds,
            **kwargs,
        )

    # ================================================================
    # LIFECYCLE
    # ================================================================

    async def start(self) -> None:
        """Run pull collection every ``interval_seconds`` until stopped."""
        self._running = True
        logger.info(
            "[METRICS] Analytics collector started (interval=%.0fs, window=%dd)",
            self.interval_seconds,
            self.window.days,
        )

        while self._running:
            try:
                await self.collect_once()
            except asyncio.CancelledError:
                logger.info("[METRICS] Analytics collector cancelled")
                break
            except Exception:
                logger.exception("[METRICS] Unexpected error in analytics collector loop")

            try:
                await asyncio.sleep(self.interval_seconds)
            except asyncio.CancelledError:
                logger.info("[METRICS] Analytics collector sleep cancelled")
                break

        logger.info("[METRICS] Analytics collector stopped")

    async def stop(self) -> None:
        self._running = False
        logger.info("[METRICS] Analytics collector stop requested")

    # ================================================================
    # PULL
    # ================================================================

    async def collect_once(self) -> CollectionReport:
        """Fetch metrics for every job published within the window.

        The window is read page by page, keyed on ``(published_at, id)``,
        until a short page shows it is exhausted.
        """
        report = CollectionReport()
        since = self.clock() - self.window
        cursor: Optional[Tuple[datetime, str]] = None

        while True:
            rows = await self.store.list_published_jobs(
                since, limit=self.page_size, after=cursor
            )
            for row in rows:
                await self._collect_row(JobRecord.from_row(row), report)
            if len(rows) < self.page_size:
                break
            last = JobRecord.from_row(rows[-1])
            cursor = (last.published_at, last.id)

        if report.jobs_checked:
            logger.info(
                "[METRICS] Collected %d/%d jobs (%d failures)",
                report.metrics_recorded,
                report.jobs_checked,
                report.failures,
            )
        return report

    async def _collect_row(self, job: JobRecord, report: CollectionReport) -> None:
        if not job.platform_post_id or job.platform not in self.adapters:
            return
        report.jobs_checked += 1
        try:
            metric_id = await self.collect_job(job)
        except NotFoundError as exc:
            logger.warning("[METRICS] Post for job %s not found: %s", job.id, exc)
            report.not_found.append(job.id)
            report.failures += 1
            return
        except PlatformError as exc:
            logger.warning(
                "[METRICS] Fetch failed for job %s (%s): %s; retrying next interval",
                job.id,
                exc.kind.value,
                exc,
            )
            report.failures += 1
            return
        except asyncio.TimeoutError:
            logger.warning(
                "[METRICS] Fetch for job %s timed out after %.0fs",
                job.id,
                self.fetch_timeout_seconds,
            )
            report.failures += 1
            return
        except Exception:
            logger.exception("[METRICS] Unexpected error collecting job %s", job.id)
            report.failures += 1
            return
        if metric_id:
            report.metrics_recorded += 1

    async def collect_job(self, job: JobRecord) -> str:
        """Fetch and append one snapshot for *job*; returns the metric id."""
        adapter = self.adapters.get(job.platform)
        counts = await asyncio.wait_for(
            adapter.fetch_metrics(job.platform_post_id),
            timeout=self.fetch_timeout_seconds,
        )
        validate_counts(counts)
        metric = ObservedMetric(
            id=generate_id(),
            job_id=job.id,
            captured_at=self.clock(),
            counts=counts,
            source="pull",
        )
        metric_id = await self.store.append_metric(metric.to_row())
        logger.debug(
            "[METRICS] Job %s: impressions=%s likes=%d comments=%d shares=%d",
            job.id,
            counts.impressions,
            counts.likes,
            counts.comments,
            counts.shares,
        )
        return metric_id

    # ================================================================
    # PUSH
    # ================================================================

    async def resolve_push_job(self, event: MetricPush) -> JobRecord:
        """Find the job an event refers to.

        Raises:
            ValidationError: Neither identification form is present.
            JobNotFoundError: No matching job.
        """
        if event.job_id:
            row = await self.store.get_job(event.job_id)
            missing = event.job_id
        elif event.platform and event.platform_post_id:
            try:
                platform = Platform(event.platform)
            except ValueError:
                raise ValidationError(f"Unknown platform: {event.platform!r}") from None
            row = await self.store.find_job_by_platform_post(
                platform.value, event.platform_post_id
            )
            missing = f"{platform.value}:{event.platform_post_id}"
        else:
            raise ValidationError(
                "metric event needs job_id or platform + platform_post_id"
            )
        if row is None:
            raise JobNotFoundError(f"Job not found: {missing}")
        return JobRecord.from_row(row)

    async def ingest_push(self, event: MetricPush) -> str:
        """Append a pushed snapshot.

        Returns:
            The stored metric id.  A redelivered event (same job and
            ``captured_at``) returns the id of the original record.

        Raises:
            ValidationError: Malformed event.
            JobNotFoundError: Unknown job.
            InvalidStateError: The job is not published.
        """
        validate_counts(event.counts)
        now = self.clock()
        captured_at = ensure_utc(event.captured_at) if event.captured_at else now
        if captured_at > now + MAX_FUTURE_SKEW:
            raise ValidationError(f"captured_at {captured_at.isoformat()} is in the future")

        job = await self.resolve_push_job(event)
        if job.state != JobState.PUBLISHED:
            raise InvalidStateError(
                f"job {job.id} is {job.state.value}; metrics accepted only once published",
                job_id=job.id,
                current=job.state.value,
            )

        metric = ObservedMetric(
            id=generate_id(),
            job_id=job.id,
            captured_at=captured_at,
            counts=event.counts,
            source="push",
        )
        metric_id = await self.store.append_metric(metric.to_row())
        logger.info("[METRICS] Pushed metrics stored for job %s (%s)", job.id, metric_id)
        if self.lifecycle:
            await self.lifecycle.info(
                LogComponent.ANALYTICS,
                "metrics_pushed",
                job_id=job.id,
                data={"metric_id": metric_id},
            )
        return metric_id


__all__ = ["AnalyticsCollector", "CollectionReport", "MetricPush", "validate_counts"]
