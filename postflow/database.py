"""
Durable job store for the publishing pipeline.

ALL persistence goes through a ``JobStore``.  Production uses
:class:`SupabaseJobStore` (Postgres via the async Supabase client); tests
and local dry runs use :class:`~postflow.memory_store.MemoryJobStore`,
which implements the same conditional-write semantics in process.

The only synchronization primitive the pipeline relies on is
:meth:`JobStore.update_job`: an UPDATE conditioned on the row still
having the expected ``state`` and ``claim_token``.  A ``None`` result is
a lost race, never an error.

Schema: ``migrations/001_publishing_pipeline.sql``.

Usage::

    from postflow.database import get_store

    store = await get_store()
    row = await store.get_job(job_id)
"""

import asyncio
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Set, Tuple

import httpx
from supabase import AsyncClient, create_async_client

from postflow.exceptions import DatabaseError, ValidationError
from postflow.utils import isoformat, with_retry

logger = logging.getLogger(__name__)

JOBS_TABLE = "publish_jobs"
METRICS_TABLE = "observed_metrics"
RECONCILIATIONS_TABLE = "metric_reconciliations"
CALIBRATION_TABLE = "calibration_state"
CALIBRATION_ID = "engagement"


# =============================================================================
# VALIDATION HELPERS
# =============================================================================


def validate_not_empty(value: Any, name: str) -> None:
    """Validate that *value* is not ``None`` or an empty string.

    Raises:
        ValidationError: If *value* is ``None`` or a blank string.
    """
    if value is None:
        raise ValidationError(f"{name} cannot be None")
    if isinstance(value, str) and not value.strip():
        raise ValidationError(f"{name} cannot be empty string")


def validate_positive(value: Any, name: str) -> None:
    """Validate that *value* is strictly positive (> 0).

    Raises:
        ValidationError: If *value* is ``None`` or not positive.
    """
    if value is None:
        raise ValidationError(f"{name} cannot be None")
    if value <= 0:
        raise ValidationError(f"{name} must be positive, got {value}")


def validate_job_row(row: Dict[str, Any]) -> None:
    """Check a new ``publish_jobs`` row carries every required column."""
    if not row:
        raise ValidationError("job row cannot be None or empty")
    required_fields: Set[str] = {
        "id",
        "content_ref",
        "platform",
        "due_at",
        "state",
        "predicted_score",
    }
    missing = required_fields - set(row.keys())
    if missing:
        raise ValidationError(f"job row missing required fields: {sorted(missing)}")


def merge_eligible(
    pending: List[Dict[str, Any]],
    expired: List[Dict[str, Any]],
    limit: int,
) -> List[Dict[str, Any]]:
    """Merge the two eligibility queries: earliest due first, ties by id."""
    by_id = {row["id"]: row for row in pending + expired}
    ordered = sorted(by_id.values(), key=lambda r: (r["due_at"], r["id"]))
    return ordered[:limit]


# =============================================================================
# STORE INTERFACE
# =============================================================================


class JobStore(Protocol):
    """Operations every job store backend provides.

    Rows are plain dicts in the ``publish_jobs`` / ``observed_metrics``
    wire format (see :mod:`postflow.models`).
    """

    async def insert_job(self, row: Dict[str, Any]) -> None: ...

    async def get_job(self, job_id: str) -> Optional[Dict[str, Any]]: ...

    async def list_jobs(
        self, state: Optional[str] = None, limit: int = 20
    ) -> List[Dict[str, Any]]: ...

    async def find_eligible_jobs(
        self, now: datetime, limit: int
    ) -> List[Dict[str, Any]]: ...

    async def update_job(
        self,
        job_id: str,
        changes: Dict[str, Any],
        expected_state: str,
        expected_token: Optional[str],
    ) -> Optional[Dict[str, Any]]: ...

    async def list_published_jobs(
        self,
        published_after: datetime,
        limit: int = 500,
        after: Optional[Tuple[datetime, str]] = None,
    ) -> List[Dict[str, Any]]: ...

    async def find_job_by_platform_post(
        self, platform: str, platform_post_id: str
    ) -> Optional[Dict[str, Any]]: ...

    async def append_metric(self, row: Dict[str, Any]) -> str: ...

    async def get_unreconciled_metrics(self, max_jobs: int) -> List[Dict[str, Any]]: ...

    async def mark_metrics_reconciled(self, entries: List[Dict[str, Any]]) -> None: ...

    async def list_stale_jobs(
        self, published_before: datetime, limit: int
    ) -> List[Dict[str, Any]]: ...

    async def load_calibration(self) -> Optional[Dict[str, Any]]: ...

    async def save_calibration(
        self, row: Dict[str, Any], expected_version: int
    ) -> bool: ...


# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass
class SupabaseConfig:
    """Supabase configuration loaded from environment variables.

    Attributes:
        url: The Supabase project URL (``SUPABASE_URL``).
        key: The service-role key (``SUPABASE_SERVICE_KEY``).
    """

    url: str
    key: str

    @classmethod
    def from_env(cls) -> "SupabaseConfig":
        """Create a config instance from environment variables.

        Raises:
            ValueError: If either variable is missing or empty.
        """
        url = os.environ.get("SUPABASE_URL")
        key = os.environ.get("SUPABASE_SERVICE_KEY")

        if not url or not key:
            raise ValueError(
                "SUPABASE_URL and SUPABASE_SERVICE_KEY must be set"
            )

        return cls(url=url, key=key)


# =============================================================================
# SUPABASE JOB STORE
# =============================================================================


class SupabaseJobStore:
    """Async Supabase-backed :class:`JobStore`.

    **Important:** Use the :meth:`create` factory method instead of
    ``__init__`` directly -- the underlying async client requires an
    ``await`` during initialisation.
    """

    def __init__(self, client: AsyncClient) -> None:
        """Private constructor.  Use :meth:`create` factory method."""
        self.client = client

    @classmethod
    async def create(
        cls, config: Optional[SupabaseConfig] = None
    ) -> "SupabaseJobStore":
        """Factory method to create an initialised store.

        Args:
            config: Optional configuration.  When ``None``,
                :meth:`SupabaseConfig.from_env` is used.
        """
        config = config or SupabaseConfig.from_env()
        client = await create_async_client(config.url, config.key)
        return cls(client)

    # -----------------------------------------------------------------
    # JOBS
    # -----------------------------------------------------------------

    async def insert_job(self, row: Dict[str, Any]) -> None:
        """Insert a new job row.

        Raises:
            ValidationError: On missing fields.
            DatabaseError: When the insert returns no data.
        """
        validate_job_row(row)
        result = await self.client.table(JOBS_TABLE).insert(row).execute()
        if not result.data:
            raise DatabaseError("Insert succeeded but returned no data")

    @with_retry(max_attempts=3, retryable_exceptions=(httpx.HTTPError,))
    async def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Get a job row by id, or ``None``."""
        validate_not_empty(job_id, "job_id")

        result = await (
            self.client.table(JOBS_TABLE)
            .select("*")
            .eq("id", job_id)
            .execute()
        )
        return result.data[0] if result.data else None

    async def list_jobs(
        self, state: Optional[str] = None, limit: int = 20
    ) -> List[Dict[str, Any]]:
        """List jobs ordered by ``due_at``, optionally filtered by state."""
        validate_positive(limit, "limit")

        query = (
            self.client.table(JOBS_TABLE)
            .select("*")
            .order("due_at", desc=False)
            .order("id", desc=False)
            .limit(limit)
        )
        if state is not None:
            query = query.eq("state", state)

        result = await query.execute()
        return result.data

    @with_retry(max_attempts=3, retryable_exceptions=(httpx.HTTPError,))
    async def find_eligible_jobs(
        self, now: datetime, limit: int
    ) -> List[Dict[str, Any]]:
        """Jobs ready for a dispatch attempt.

        Pending jobs that are due, plus claimed/publishing jobs whose lease
        has lapsed (crash recovery).  Uses the ``(state, due_at)`` index.
        """
        validate_positive(limit, "limit")
        now_iso = isoformat(now)

        pending = await (
            self.client.table(JOBS_TABLE)
            .select("*")
            .eq("state", "pending")
            .lte("due_at", now_iso)
            .order("due_at", desc=False)
            .order("id", desc=False)
            .limit(limit)
            .execute()
        )
        expired = await (
            self.client.table(JOBS_TABLE)
            .select("*")
            .in_("state", ["claimed", "publishing"])
            .lt("claimed_until", now_iso)
            .order("due_at", desc=False)
            .order("id", desc=False)
            .limit(limit)
            .execute()
        )
        return merge_eligible(pending.data, expired.data, limit)

    async def update_job(
        self,
        job_id: str,
        changes: Dict[str, Any],
        expected_state: str,
        expected_token: Optional[str],
    ) -> Optional[Dict[str, Any]]:
        """Conditionally update a job row.

        The UPDATE only matches while the row still has ``expected_state``
        and ``expected_token`` as its claim token, so concurrent workers
        cannot both win.

        Returns:
            The updated row, or ``None`` if the condition did not match.
        """
        validate_not_empty(job_id, "job_id")
        if not changes:
            raise ValidationError("changes cannot be empty")

        query = (
            self.client.table(JOBS_TABLE)
            .update(changes)
            .eq("id", job_id)
            .eq("state", expected_state)
        )
        if expected_token is None:
            query = query.is_("claim_token", "null")
        else:
            query = query.eq("claim_token", expected_token)

        result = await query.execute()
        # If data is returned, the update matched and the write won
        return result.data[0] if result.data else None

    async def list_published_jobs(
        self,
        published_after: datetime,
        limit: int = 500,
        after: Optional[Tuple[datetime, str]] = None,
    ) -> List[Dict[str, Any]]:
        """One page of published jobs with ``published_at >= published_after``.

        Pages are ordered by ``(published_at, id)``; pass the last row's
        pair as *after* to read the next page.
        """
        validate_positive(limit, "limit")

        query = (
            self.client.table(JOBS_TABLE)
            .select("*")
            .eq("state", "published")
            .gte("published_at", isoformat(published_after))
        )
        if after is not None:
            # Reserved characters in or() values must be double quoted.
            cursor_at = isoformat(after[0])
            query = query.or_(
                f'published_at.gt."{cursor_at}",'
                f'and(published_at.eq."{cursor_at}",id.gt."{after[1]}")'
            )
        result = await (
            query.order("published_at", desc=False)
            .order("id", desc=False)
            .limit(limit)
            .execute()
        )
        return result.data

    async def find_job_by_platform_post(
        self, platform: str, platform_post_id: str
    ) -> Optional[Dict[str, Any]]:
        """Resolve a job from its external post id."""
        validate_not_empty(platform_post_id, "platform_post_id")

        result = await (
            self.client.table(JOBS_TABLE)
            .select("*")
            .eq("platform", platform)
            .eq("platform_post_id", platform_post_id)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    # -----------------------------------------------------------------
    # OBSERVED METRICS (append-only)
    # -----------------------------------------------------------------

    async def append_metric(self, row: Dict[str, Any]) -> str:
        """Append a metric snapshot.

        A redelivered snapshot with the same ``(job_id, captured_at)`` is
        ignored and the existing row id is returned.

        Returns:
            Id of the stored metric row.
        """
        if not row:
            raise ValidationError("metric row cannot be None or empty")
        for key in ("id", "job_id", "captured_at"):
            if key not in row:
                raise ValidationError(f"metric row must have '{key}'")

        result = await (
            self.client.table(METRICS_TABLE)
            .upsert(row, on_conflict="job_id,captured_at", ignore_duplicates=True)
            .execute()
        )
        if result.data:
            return result.data[0]["id"]

        existing = await (
            self.client.table(METRICS_TABLE)
            .select("id")
            .eq("job_id", row["job_id"])
            .eq("captured_at", row["captured_at"])
            .limit(1)
            .execute()
        )
        if not existing.data:
            raise DatabaseError("Metric upsert returned no data and no row exists")
        return existing.data[0]["id"]

    @with_retry(max_attempts=3, retryable_exceptions=(httpx.HTTPError,))
    async def get_unreconciled_metrics(self, max_jobs: int) -> List[Dict[str, Any]]:
        """Metric rows with no reconciliation mark, joined with their job.

        Uses the Supabase RPC function ``get_unreconciled_metrics``.  The
        batch holds up to *max_jobs* jobs and always every unmarked row of
        each of them, so the newest snapshot of a job is never split from
        its older ones.  Each row carries the metric columns plus
        ``platform`` and ``predicted_score`` of the job.
        """
        validate_positive(max_jobs, "max_jobs")
        result = await self.client.rpc(
            "get_unreconciled_metrics", {"max_jobs": max_jobs}
        ).execute()
        return result.data or []

    async def mark_metrics_reconciled(self, entries: List[Dict[str, Any]]) -> None:
        """Record reconciliation marks (``metric_id``, ``job_id``, ``outcome``...)."""
        if not entries:
            return
        await (
            self.client.table(RECONCILIATIONS_TABLE)
            .upsert(entries, on_conflict="metric_id", ignore_duplicates=True)
            .execute()
        )

    async def list_stale_jobs(
        self, published_before: datetime, limit: int
    ) -> List[Dict[str, Any]]:
        """Published, unclassified jobs with no usable metric left.

        A job qualifies when every metric row it has is already marked
        and none of those marks applied it to calibration, which includes
        jobs with no metric rows at all.  Uses the Supabase RPC function
        ``get_stale_jobs``.
        """
        validate_positive(limit, "limit")
        result = await self.client.rpc(
            "get_stale_jobs",
            {"published_before": isoformat(published_before), "max_rows": limit},
        ).execute()
        return result.data or []

    # -----------------------------------------------------------------
    # CALIBRATION STATE (single versioned record)
    # -----------------------------------------------------------------

    @with_retry(max_attempts=3, retryable_exceptions=(httpx.HTTPError,))
    async def load_calibration(self) -> Optional[Dict[str, Any]]:
        """Load the calibration record, or ``None`` on first start."""
        result = await (
            self.client.table(CALIBRATION_TABLE)
            .select("*")
            .eq("id", CALIBRATION_ID)
            .execute()
        )
        return result.data[0] if result.data else None

    async def save_calibration(
        self, row: Dict[str, Any], expected_version: int
    ) -> bool:
        """Persist calibration if the stored version still matches.

        ``row["version"]`` must already be ``expected_version + 1``.

        Returns:
            ``True`` on success, ``False`` on a version conflict.
        """
        if row.get("version") != expected_version + 1:
            raise ValidationError("calibration row version must be expected_version + 1")

        if expected_version == 0:
            existing = await self.load_calibration()
            if existing is not None:
                return False
            result = await self.client.table(CALIBRATION_TABLE).insert(row).execute()
            return bool(result.data)

        result = await (
            self.client.table(CALIBRATION_TABLE)
            .update(row)
            .eq("id", CALIBRATION_ID)
            .eq("version", expected_version)
            .execute()
        )
        return bool(result.data)


# =============================================================================
# GLOBAL STORE INSTANCE (Singleton)
# =============================================================================

_store_instance: Optional[SupabaseJobStore] = None
_store_lock: Optional[asyncio.Lock] = None

# Thread lock for safe initialisation of the async lock itself.
_init_lock = threading.Lock()


async def get_store() -> SupabaseJobStore:
    """Get the global Supabase job store, creating it on first use."""
    global _store_instance, _store_lock

    if _store_lock is None:
        with _init_lock:
            if _store_lock is None:
                _store_lock = asyncio.Lock()

    if _store_instance is None:
        async with _store_lock:
            if _store_instance is None:
                _store_instance = await SupabaseJobStore.create()

    return _store_instance


__all__ = [
    "JobStore",
    "SupabaseConfig",
    "SupabaseJobStore",
    "get_store",
    "merge_eligible",
    "validate_job_row",
    "validate_not_empty",
    "validate_positive",
]
