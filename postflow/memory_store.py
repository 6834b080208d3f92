"""In-process job store with the same conditional-write semantics as Supabase.

Used by the test suite and for local dry runs (``run.py --memory``).
Nothing here is durable.
"""

import asyncio
import copy
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from postflow.database import validate_job_row
from postflow.exceptions import DatabaseError, ValidationError
from postflow.utils import parse_timestamp


class MemoryJobStore:
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._jobs: Dict[str, Dict[str, Any]] = {}
        self._metrics: Dict[str, Dict[str, Any]] = {}
        self._reconciliations: Dict[str, Dict[str, Any]] = {}
        self._calibration: Optional[Dict[str, Any]] = None
        # Counts conditional writes that lost, for concurrency tests.
        self.lost_updates = 0

    @staticmethod
    def _copy(row: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        return copy.deepcopy(row) if row is not None else None

    # -----------------------------------------------------------------
    # JOBS
    # -----------------------------------------------------------------

    async def insert_job(self, row: Dict[str, Any]) -> None:
        validate_job_row(row)
        async with self._lock:
            if row["id"] in self._jobs:
                raise DatabaseError(f"duplicate job id {row['id']}")
            self._jobs[row["id"]] = copy.deepcopy(row)

    async def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            return self._copy(self._jobs.get(job_id))

    async def list_jobs(
        self, state: Optional[str] = None, limit: int = 20
    ) -> List[Dict[str, Any]]:
        async with self._lock:
            rows = [
                row for row in self._jobs.values()
                if state is None or row["state"] == state
            ]
            rows.sort(key=lambda r: (parse_timestamp(r["due_at"]), r["id"]))
            return [copy.deepcopy(r) for r in rows[:limit]]

    async def find_eligible_jobs(
        self, now: datetime, limit: int
    ) -> List[Dict[str, Any]]:
        async with self._lock:
            pending = []
            expired = []
            for row in self._jobs.values():
                if row["state"] == "pending":
                    if parse_timestamp(row["due_at"]) <= now:
                        pending.append(row)
                elif row["state"] in ("claimed", "publishing"):
                    until = parse_timestamp(row.get("claimed_until"))
                    if until is None or until < now:
                        expired.append(row)
            rows = pending + expired
            rows.sort(key=lambda r: (parse_timestamp(r["due_at"]), r["id"]))
            return [copy.deepcopy(r) for r in rows[:limit]]

    async def update_job(
        self,
        job_id: str,
        changes: Dict[str, Any],
        expected_state: str,
        expected_token: Optional[str],
    ) -> Optional[Dict[str, Any]]:
        if not changes:
            raise ValidationError("changes cannot be empty")
        async with self._lock:
            row = self._jobs.get(job_id)
            if (
                row is None
                or row["state"] != expected_state
                or row.get("claim_token") != expected_token
            ):
                self.lost_updates += 1
                return None
            row.update(copy.deepcopy(changes))
            return copy.deepcopy(row)

    async def list_published_jobs(
        self,
        published_after: datetime,
        limit: int = 500,
        after: Optional[Tuple[datetime, str]] = None,
    ) -> List[Dict[str, Any]]:
        async with self._lock:
            keyed = [
                ((parse_timestamp(row["published_at"]), row["id"]), row)
                for row in self._jobs.values()
                if row["state"] == "published" and row.get("published_at")
            ]
            keyed = [
                (key, row) for key, row in keyed
                if key[0] >= published_after and (after is None or key > after)
            ]
            keyed.sort(key=lambda item: item[0])
            return [copy.deepcopy(row) for _, row in keyed[:limit]]

    async def find_job_by_platform_post(
        self, platform: str, platform_post_id: str
    ) -> Optional[Dict[str, Any]]:
        async with self._lock:
            for row in self._jobs.values():
                if (
                    row["platform"] == platform
                    and row.get("platform_post_id") == platform_post_id
                ):
                    return copy.deepcopy(row)
            return None

    # -----------------------------------------------------------------
    # METRICS
    # -----------------------------------------------------------------

    async def append_metric(self, row: Dict[str, Any]) -> str:
        for key in ("id", "job_id", "captured_at"):
            if key not in row:
                raise ValidationError(f"metric row must have '{key}'")
        captured = parse_timestamp(row["captured_at"])
        async with self._lock:
            for existing in self._metrics.values():
                if (
                    existing["job_id"] == row["job_id"]
                    and parse_timestamp(existing["captured_at"]) == captured
                ):
                    return existing["id"]
            self._metrics[row["id"]] = copy.deepcopy(row)
            return row["id"]

    async def list_metrics(self, job_id: str) -> List[Dict[str, Any]]:
        async with self._lock:
            rows = [m for m in self._metrics.values() if m["job_id"] == job_id]
            rows.sort(key=lambda m: parse_timestamp(m["captured_at"]))
            return [copy.deepcopy(m) for m in rows]

    async def get_unreconciled_metrics(self, max_jobs: int) -> List[Dict[str, Any]]:
        async with self._lock:
            rows = []
            for metric in self._metrics.values():
                if metric["id"] in self._reconciliations:
                    continue
                job = self._jobs.get(metric["job_id"])
                if job is None or job["state"] != "published":
                    continue
                rows.append(
                    dict(
                        copy.deepcopy(metric),
                        platform=job["platform"],
                        predicted_score=job["predicted_score"],
                    )
                )
            rows.sort(key=lambda m: (parse_timestamp(m["captured_at"]), m["id"]))
            first_seen: Dict[str, int] = {}
            for position, row in enumerate(rows):
                first_seen.setdefault(row["job_id"], position)
            wanted = set(sorted(first_seen, key=first_seen.get)[:max_jobs])
            rows = [row for row in rows if row["job_id"] in wanted]
            rows.sort(key=lambda m: first_seen[m["job_id"]])
            return rows

    async def mark_metrics_reconciled(self, entries: List[Dict[str, Any]]) -> None:
        async with self._lock:
            for entry in entries:
                self._reconciliations.setdefault(entry["metric_id"], dict(entry))

    def reconciliation_marks(self) -> Dict[str, Dict[str, Any]]:
        return copy.deepcopy(self._reconciliations)

    async def list_stale_jobs(
        self, published_before: datetime, limit: int
    ) -> List[Dict[str, Any]]:
        async with self._lock:
            # Unmarked rows are still waiting for reconciliation.
            usable = set()
            for metric in self._metrics.values():
                mark = self._reconciliations.get(metric["id"])
                if mark is None or mark["outcome"] in ("applied", "duplicate"):
                    usable.add(metric["job_id"])
            rows = [
                row for row in self._jobs.values()
                if row["state"] == "published"
                and row.get("reconciliation_status") is None
                and row["id"] not in usable
                and row.get("published_at")
                and parse_timestamp(row["published_at"]) < published_before
            ]
            rows.sort(key=lambda r: parse_timestamp(r["published_at"]))
            return [copy.deepcopy(r) for r in rows[:limit]]

    # -----------------------------------------------------------------
    # CALIBRATION
    # -----------------------------------------------------------------

    async def load_calibration(self) -> Optional[Dict[str, Any]]:
        async with self._lock:
            return self._copy(self._calibration)

    async def save_calibration(
        self, row: Dict[str, Any], expected_version: int
    ) -> bool:
        if row.get("version") != expected_version + 1:
            raise ValidationError("calibration row version must be expected_version + 1")
        async with self._lock:
            current = self._calibration["version"] if self._calibration else 0
            if current != expected_version:
                return False
            self._calibration = copy.deepcopy(row)
            return True
