"""
Reconciliation engine: folds observed engagement back into calibration.

Every ``interval_seconds`` the engine reads observed-metric records that
have not been reconciled yet, takes the most recent one per published
job, compares the job's predicted score with the observed engagement
(normalized to 0-100) and nudges that platform's ``gain``/``bias``
calibration by a bounded gradient step.

The engine is the only writer of :class:`~postflow.models.CalibrationState`.
Calibration is saved with a version check *before* metric records are
marked reconciled; ``applied_metric_ids`` inside the saved state makes a
re-run after a crash between the two writes a no-op.

Published jobs that reach ``window_days`` without a single applied
observation (no metrics at all, or only ones with an unknown engagement
rate) are marked ``unreconciled`` and never looked at again.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from postflow.analytics.scoring import calibrated_score, normalize_engagement
from postflow.config import PipelineSettings
from postflow.logging import LifecycleLogger, LogComponent
from postflow.models import (
    CalibrationState,
    JobState,
    ObservedMetric,
    Platform,
    PlatformCalibration,
    ReconciliationStatus,
)
from postflow.utils import isoformat, parse_timestamp, utc_now

logger = logging.getLogger(__name__)

MIN_GAIN = 0.1
MAX_GAIN = 5.0


def _clip(value: float, limit: float) -> float:
    return max(-limit, min(limit, value))


@dataclass
class ReconciliationReport:
    """Outcome of one :meth:`ReconciliationEngine.reconcile_once` run."""

    examined: int = 0
    applied: int = 0
    superseded: int = 0
    skipped: int = 0
    duplicates: int = 0
    conflict: bool = False
    unreconciled_jobs: List[str] = field(default_factory=list)
    version: int = 0


class ReconciliationEngine:
    """Single writer of the calibration state.

    Args:
        store: Job store backend.
        learning_rate: Step size of the gradient update.
        max_step: Largest bias change per observation (score points);
            gain steps are limited to ``max_step / 100``.
        engagement_rate_ceiling: Engagement rate that maps to a score of 100.
        interval_seconds: Period of :meth:`start`.
        window_days: Days after publication before a job with no applied
            observation is given up on.
        batch_size: Max jobs whose unreconciled metrics are read per run.
        clock: Returns the current UTC time.
        lifecycle: Optional lifecycle audit logger.
        notifier: Optional :class:`~postflow.notify.TelegramNotifier`.
    """

    def __init__(
        self,
        store: "JobStore",  # noqa: F821
        learning_rate: float = 0.05,
        max_step: float = 2.0,
        engagement_rate_ceiling: float = 0.10,
        interval_seconds: float = 3600.0,
        window_days: int = 30,
        batch_size: int = 200,
        clock: Callable[[], datetime] = utc_now,
        lifecycle: Optional[LifecycleLogger] = None,
        notifier: Optional[Any] = None,
    ) -> None:
        self.store = store
        self.learning_rate = learning_rate
        self.max_step = max_step
        self.engagement_rate_ceiling = engagement_rate_ceiling
        self.interval_seconds = interval_seconds
        self.window = timedelta(days=window_days)
        self.batch_size = batch_size
        self.clock = clock
        self.lifecycle = lifecycle
        self.notifier = notifier
        self._state: Optional[CalibrationState] = None
        self._lock = asyncio.Lock()
        self._running: bool = False

    @classmethod
    def from_settings(
        cls,
        store: "JobStore",  # noqa: F821
        settings: PipelineSettings,
        **kwargs: Any,
    ) -> "ReconciliationEngine":
        return cls(
            store,
            learning_rate=settings.learning_rate,
            max_step=settings.max_calibration_step,
            engagement_rate_ceiling=settings.engagement_rate_ceiling,
            interval_seconds=settings.reconciliation_interval_seconds,
            window_days=settings.reconciliation_window_days,
            batch_size=settings.reconciliation_batch_size,
            **kwargs,
        )

    # ================================================================
    # STATE
    # ================================================================

    async def load(self) -> CalibrationState:
        """(Re)load calibration from the store; defaults on first start."""
        row = await self.store.load_calibration()
        self._state = CalibrationState.from_row(row)
        logger.info(
            "[RECONCILE] Calibration loaded (version=%d, updates=%d, platforms=%s)",
            self._state.version,
            self._state.updates_applied,
            sorted(self._state.platforms),
        )
        return self._state

    def snapshot(self) -> CalibrationState:
        """Read-only copy of the current calibration."""
        if self._state is None:
            return CalibrationState()
        return self._state.snapshot()

    async def reset_calibration(self) -> CalibrationState:
        """Operator action: drop all learned calibration.

        The applied-id guard is kept so old metrics are not re-applied.
        """
        async with self._lock:
            current = self._state or await self.load()
            fresh = CalibrationState(
                version=current.version + 1,
                applied_metric_ids=list(current.applied_metric_ids),
                updated_at=self.clock(),
            )
            if not await self.store.save_calibration(fresh.to_row(), current.version):
                await self.load()
                raise RuntimeError("calibration changed concurrently; reset not applied")
            self._state = fresh
            logger.warning("[RECONCILE] Calibration reset (version=%d)", fresh.version)
            return fresh.snapshot()

    # ================================================================
    # UPDATE RULE
    # ================================================================

    def apply_observation(
        self,
        calibration: PlatformCalibration,
        predicted: float,
        actual: float,
    ) -> PlatformCalibration:
        """One bounded gradient step on ``(gain * predicted + bias - actual)^2 / 2``."""
        residual = (calibration.gain * predicted + calibration.bias) - actual
        bias_step = _clip(-self.learning_rate * residual, self.max_step)
        gain_step = _clip(
            -self.learning_rate * residual * predicted / 100.0,
            self.max_step / 100.0,
        )
        return PlatformCalibration(
            gain=max(MIN_GAIN, min(MAX_GAIN, calibration.gain + gain_step)),
            bias=calibration.bias + bias_step,
        )

    def apply_metric(self, state: CalibrationState, row: Dict[str, Any]) -> Optional[str]:
        """Fold one joined metric row into *state* in place.

        Returns:
            ``"applied"``, ``"duplicate"`` (already in the applied-id guard)
            or ``"skipped"`` (no engagement rate).
        """
        metric = ObservedMetric.from_row(row)
        if metric.id in state.applied_metric_ids:
            return "duplicate"

        rate = metric.engagement_rate
        if rate is None:
            return "skipped"

        platform = Platform(row["platform"])
        predicted = float(row["predicted_score"])
        actual = normalize_engagement(rate, self.engagement_rate_ceiling)
        before = state.for_platform(platform)
        after = self.apply_observation(before, predicted, actual)
        state.platforms[platform.value] = after
        state.applied_metric_ids.append(metric.id)
        state.updates_applied += 1

        logger.debug(
            "[RECONCILE] Job %s on %s: predicted=%.1f calibrated=%.1f actual=%.1f "
            "gain %.4f->%.4f bias %.3f->%.3f",
            metric.job_id,
            platform.value,
            predicted,
            calibrated_score(before, predicted),
            actual,
            before.gain,
            after.gain,
            before.bias,
            after.bias,
        )
        return "applied"

    # ================================================================
    # RUN
    # ================================================================

    async def reconcile_once(self) -> ReconciliationReport:
        """Reconcile one batch of unreconciled metric records."""
        async with self._lock:
            if self._state is None:
                await self.load()
            current = self._state
            report = ReconciliationReport(version=current.version)
            now = self.clock()

            rows = await self.store.get_unreconciled_metrics(self.batch_size)
            report.examined = len(rows)

            by_job: Dict[str, List[Dict[str, Any]]] = {}
            for row in rows:
                by_job.setdefault(row["job_id"], []).append(row)

            working = current.snapshot()
            marks: List[Dict[str, Any]] = []
            reconciled_jobs: List[str] = []

            for job_id, job_rows in by_job.items():
                job_rows.sort(key=lambda r: (parse_timestamp(r["captured_at"]), r["id"]))
                latest = job_rows[-1]
                for older in job_rows[:-1]:
                    marks.append(self._mark(older, "superseded", now))
                    report.superseded += 1

                outcome = self.apply_metric(working, latest)
                marks.append(self._mark(latest, outcome, now))
                if outcome == "applied":
                    report.applied += 1
                    reconciled_jobs.append(job_id)
                elif outcome == "duplicate":
                    report.duplicates += 1
                    reconciled_jobs.append(job_id)
                else:
                    report.skipped += 1

            if report.applied:
                overflow = len(working.applied_metric_ids) - CalibrationState.MAX_TRACKED_IDS
                if overflow > 0:
                    del working.applied_metric_ids[:overflow]
                working.version = current.version + 1
                working.updated_at = now
                saved = await self.store.save_calibration(
                    working.to_row(), expected_version=current.version
                )
                if not saved:
                    logger.warning(
                        "[RECONCILE] Calibration version %d is stale; reloading",
                        current.version,
                    )
                    report.conflict = True
                    await self.load()
                    return report
                self._state = working
                report.version = working.version

            # Marks go in only after calibration is durable.
            if marks:
                await self.store.mark_metrics_reconciled(marks)
            for job_id in reconciled_jobs:
                await self.store.update_job(
                    job_id,
                    {
                        "reconciliation_status": ReconciliationStatus.RECONCILED.value,
                        "updated_at": isoformat(now),
                    },
                    expected_state=JobState.PUBLISHED.value,
                    expected_token=None,
                )

            report.unreconciled_jobs = await self._mark_stale_jobs(now)

        if report.examined or report.unreconciled_jobs:
            logger.info(
                "[RECONCILE] examined=%d applied=%d superseded=%d skipped=%d "
                "duplicates=%d unreconciled=%d version=%d",
                report.examined,
                report.applied,
                report.superseded,
                report.skipped,
                report.duplicates,
                len(report.unreconciled_jobs),
                report.version,
            )
        if self.lifecycle and report.applied:
            await self.lifecycle.info(
                LogComponent.RECONCILIATION,
                "calibration_updated",
                data={"applied": report.applied, "version": report.version},
            )
        return report

    async def mark_stale_jobs(self) -> List[str]:
        """Give up on published jobs that never produced a usable observation."""
        async with self._lock:
            return await self._mark_stale_jobs(self.clock())

    async def _mark_stale_jobs(self, now: datetime) -> List[str]:
        rows = await self.store.list_stale_jobs(now - self.window, self.batch_size)
        marked: List[str] = []
        for row in rows:
            updated = await self.store.update_job(
                row["id"],
                {
                    "reconciliation_status": ReconciliationStatus.UNRECONCILED.value,
                    "updated_at": isoformat(now),
                },
                expected_state=JobState.PUBLISHED.value,
                expected_token=None,
            )
            if updated is not None:
                marked.append(row["id"])

        if marked:
            logger.warning(
                "[RECONCILE] %d published job(s) got no usable metrics within %d days",
                len(marked),
                self.window.days,
            )
            if self.lifecycle:
                for job_id in marked:
                    await self.lifecycle.warning(
                        LogComponent.RECONCILIATION,
                        "unreconciled",
                        job_id=job_id,
                    )
            if self.notifier:
                await self.notifier.jobs_unreconciled(marked)
        return marked

    @staticmethod
    def _mark(row: Dict[str, Any], outcome: str, now: datetime) -> Dict[str, Any]:
        return {
            "metric_id": row["id"],
            "job_id": row["job_id"],
            "outcome": outcome,
            "reconciled_at": isoformat(now),
        }

    # ================================================================
    # LIFECYCLE
    # ================================================================

    async def start(self) -> None:
        """Run :meth:`reconcile_once` every ``interval_seconds`` until stopped."""
        self._running = True
        logger.info(
            "[RECONCILE] Reconciliation engine started (interval=%.0fs)",
            self.interval_seconds,
        )
        while self._running:
            try:
                await self.reconcile_once()
            except asyncio.CancelledError:
                logger.info("[RECONCILE] Reconciliation engine cancelled")
                break
            except Exception:
                logger.exception("[RECONCILE] Unexpected error in reconciliation loop")

            try:
                await asyncio.sleep(self.interval_seconds)
            except asyncio.CancelledError:
                logger.info("[RECONCILE] Reconciliation engine sleep cancelled")
                break

        logger.info("[RECONCILE] Reconciliation engine stopped")

    async def stop(self) -> None:
        self._running = False
        logger.info("[RECONCILE] Reconciliation engine stop requested")


__all__ = ["ReconciliationEngine", "ReconciliationReport", "MIN_GAIN", "MAX_GAIN"]
