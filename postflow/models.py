"""
Pipeline data models: Platform, JobState, ErrorKind, JobRecord,
RawCounts, ObservedMetric, CalibrationState.

Rows are exchanged with the store as plain dicts with ISO-8601 timestamp
strings (the Supabase wire format).  Every model that is persisted has a
``to_row()`` / ``from_row()`` pair so the Supabase and in-memory stores
share one serialization path.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse(value: Any) -> Optional[datetime]:
    # Local copy of utils.parse_timestamp: utils imports exceptions, which
    # imports this module.
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


# =============================================================================
# ENUMS
# =============================================================================


class Platform(Enum):
    """Closed set of supported distribution targets.

    ``Platform("twitter")`` and ``Platform("x")`` resolve to
    :attr:`MICROBLOG`; any other unknown value raises ``ValueError``.
    """

    LINKEDIN = "linkedin"
    MICROBLOG = "microblog"

    @classmethod
    def _missing_(cls, value: object) -> Optional["Platform"]:
        if isinstance(value, str):
            normalized = value.strip().lower()
            aliases = {"twitter": cls.MICROBLOG, "x": cls.MICROBLOG}
            if normalized in aliases:
                return aliases[normalized]
            for member in cls:
                if member.value == normalized:
                    return member
        return None


class JobState(Enum):
    """Lifecycle state of a publish job.

    Transitions:
        PENDING -> CLAIMED -> PUBLISHING -> PUBLISHED
                                         -> PENDING (retry)
                                         -> FAILED
        PENDING -> CANCELLED

    Lease recovery adds CLAIMED -> CLAIMED, PUBLISHING -> CLAIMED and
    PUBLISHING -> FAILED (recovered after the attempt budget is spent).
    """

    PENDING = "pending"
    CLAIMED = "claimed"
    PUBLISHING = "publishing"
    PUBLISHED = "published"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        """Check if state is terminal (no further transitions allowed)."""
        return self in {JobState.PUBLISHED, JobState.CANCELLED, JobState.FAILED}

    def can_transition_to(self, target: "JobState") -> bool:
        """Check whether ``self -> target`` is in the transition table."""
        return target in ALLOWED_TRANSITIONS.get(self, frozenset())


ALLOWED_TRANSITIONS: Dict[JobState, FrozenSet[JobState]] = {
    JobState.PENDING: frozenset({JobState.CLAIMED, JobState.CANCELLED}),
    JobState.CLAIMED: frozenset({JobState.PUBLISHING, JobState.CLAIMED}),
    JobState.PUBLISHING: frozenset({
        JobState.PUBLISHED,
        JobState.PENDING,
        JobState.FAILED,
        JobState.CLAIMED,
    }),
    JobState.PUBLISHED: frozenset(),
    JobState.FAILED: frozenset(),
    JobState.CANCELLED: frozenset(),
}


class ErrorKind(Enum):
    """Classification of a platform failure, as seen by the retry controller."""

    RATE_LIMITED = "rate_limited"
    AUTH_EXPIRED = "auth_expired"
    REJECTED = "rejected"
    TRANSIENT = "transient"
    NOT_FOUND = "not_found"

    @property
    def is_retryable(self) -> bool:
        return self in {ErrorKind.RATE_LIMITED, ErrorKind.TRANSIENT}


class ReconciliationStatus(Enum):
    """Outcome of the metrics feedback loop for a published job."""

    RECONCILED = "reconciled"
    UNRECONCILED = "unreconciled"


# =============================================================================
# JOB RECORD
# =============================================================================


@dataclass
class JobError:
    """Last classified failure of a job."""

    kind: ErrorKind
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind.value, "message": self.message}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["JobError"]:
        if not data:
            return None
        return cls(kind=ErrorKind(data["kind"]), message=data.get("message", ""))


@dataclass
class JobRecord:
    """A unit of scheduled distribution work.

    Attributes:
        id: Unique, immutable job identifier.
        content_ref: Opaque reference to the content payload.
        platform: Target platform.
        due_at: The job is not eligible before this instant (UTC).
        predicted_score: Engagement forecast (0-100) attached at schedule
            time; never modified afterwards.
        state: Current lifecycle state.
        attempt_count: Number of dispatch attempts made so far.
        last_error: Last classified failure, if any.
        platform_post_id: External post id, set once on publication.
        claim_token: Token of the worker currently holding the lease.
        claimed_until: Lease expiry.
        reconciliation_status: Feedback-loop outcome for published jobs.
    """

    id: str
    content_ref: str
    platform: Platform
    due_at: datetime
    predicted_score: float

    state: JobState = JobState.PENDING
    attempt_count: int = 0
    last_error: Optional[JobError] = None
    platform_post_id: Optional[str] = None

    # Lease
    claim_token: Optional[str] = None
    claimed_until: Optional[datetime] = None

    # Timestamps
    created_at: datetime = field(default_factory=_utc_now)
    updated_at: datetime = field(default_factory=_utc_now)
    published_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    reconciliation_status: Optional[ReconciliationStatus] = None

    def lease_expired(self, now: datetime) -> bool:
        """Whether the claim lease (if any) has lapsed at ``now``."""
        if self.claimed_until is None:
            return True
        return self.claimed_until < now

    def to_row(self) -> Dict[str, Any]:
        """Serialize to a ``publish_jobs`` row."""
        return {
            "id": self.id,
            "content_ref": self.content_ref,
            "platform": self.platform.value,
            "due_at": _iso(self.due_at),
            "predicted_score": self.predicted_score,
            "state": self.state.value,
            "attempt_count": self.attempt_count,
            "last_error": self.last_error.to_dict() if self.last_error else None,
            "platform_post_id": self.platform_post_id,
            "claim_token": self.claim_token,
            "claimed_until": _iso(self.claimed_until),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "published_at": _iso(self.published_at),
            "cancelled_at": _iso(self.cancelled_at),
            "reconciliation_status": (
                self.reconciliation_status.value
                if self.reconciliation_status
                else None
            ),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "JobRecord":
        """Build a ``JobRecord`` from a ``publish_jobs`` row."""
        status = row.get("reconciliation_status")
        return cls(
            id=row["id"],
            content_ref=row["content_ref"],
            platform=Platform(row["platform"]),
            due_at=_parse(row["due_at"]),  # type: ignore[arg-type]
            predicted_score=float(row.get("predicted_score", 0.0)),
            state=JobState(row.get("state", "pending")),
            attempt_count=int(row.get("attempt_count", 0)),
            last_error=JobError.from_dict(row.get("last_error")),
            platform_post_id=row.get("platform_post_id"),
            claim_token=row.get("claim_token"),
            claimed_until=_parse(row.get("claimed_until")),
            created_at=_parse(row.get("created_at")) or _utc_now(),
            updated_at=_parse(row.get("updated_at")) or _utc_now(),
            published_at=_parse(row.get("published_at")),
            cancelled_at=_parse(row.get("cancelled_at")),
            reconciliation_status=ReconciliationStatus(status) if status else None,
        )


# =============================================================================
# METRICS
# =============================================================================


@dataclass
class RawCounts:
    """Raw engagement counts as reported by a platform."""

    impressions: Optional[int] = None
    likes: int = 0
    comments: int = 0
    shares: int = 0
    clicks: Optional[int] = None

    @property
    def engagement_rate(self) -> Optional[float]:
        """(likes + comments + shares) / impressions, or ``None`` if unknown."""
        if not self.impressions or self.impressions <= 0:
            return None
        return (self.likes + self.comments + self.shares) / self.impressions


@dataclass
class ObservedMetric:
    """Append-only snapshot of engagement for a published job."""

    id: str
    job_id: str
    captured_at: datetime
    counts: RawCounts
    source: str = "pull"

    @property
    def engagement_rate(self) -> Optional[float]:
        return self.counts.engagement_rate

    def to_row(self) -> Dict[str, Any]:
        """Serialize to an ``observed_metrics`` row."""
        return {
            "id": self.id,
            "job_id": self.job_id,
            "captured_at": _iso(self.captured_at),
            "impressions": self.counts.impressions,
            "likes": self.counts.likes,
            "comments": self.counts.comments,
            "shares": self.counts.shares,
            "clicks": self.counts.clicks,
            "engagement_rate": self.engagement_rate,
            "source": self.source,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ObservedMetric":
        return cls(
            id=row["id"],
            job_id=row["job_id"],
            captured_at=_parse(row["captured_at"]),  # type: ignore[arg-type]
            counts=RawCounts(
                impressions=row.get("impressions"),
                likes=int(row.get("likes") or 0),
                comments=int(row.get("comments") or 0),
                shares=int(row.get("shares") or 0),
                clicks=row.get("clicks"),
            ),
            source=row.get("source", "pull"),
        )


# =============================================================================
# CALIBRATION
# =============================================================================


@dataclass
class PlatformCalibration:
    """Linear correction ``gain * predicted + bias`` for one platform."""

    gain: float = 1.0
    bias: float = 0.0


@dataclass
class CalibrationState:
    """Tunable parameters of the engagement scoring function.

    Owned by :class:`~postflow.analytics.reconciliation.ReconciliationEngine`;
    everyone else reads a :meth:`snapshot`.

    Attributes:
        version: Optimistic-concurrency version of the persisted record.
        platforms: Per-platform correction keyed by ``Platform.value``.
        updates_applied: Number of observations folded in so far.
        applied_metric_ids: Recently applied metric ids (idempotence guard).
        updated_at: Last persisted update.
    """

    version: int = 0
    platforms: Dict[str, PlatformCalibration] = field(default_factory=dict)
    updates_applied: int = 0
    applied_metric_ids: List[str] = field(default_factory=list)
    updated_at: Optional[datetime] = None

    # Bound on applied_metric_ids; older ids are also marked in the store.
    MAX_TRACKED_IDS = 10000

    def for_platform(self, platform: Platform) -> PlatformCalibration:
        return self.platforms.get(platform.value, PlatformCalibration())

    def snapshot(self) -> "CalibrationState":
        """Deep copy safe to hand to readers."""
        return copy.deepcopy(self)

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": "engagement",
            "version": self.version,
            "weights": {
                name: {"gain": cal.gain, "bias": cal.bias}
                for name, cal in self.platforms.items()
            },
            "updates_applied": self.updates_applied,
            "applied_metric_ids": list(self.applied_metric_ids),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_row(cls, row: Optional[Dict[str, Any]]) -> "CalibrationState":
        if not row:
            return cls()
        weights = row.get("weights") or {}
        return cls(
            version=int(row.get("version", 0)),
            platforms={
                name: PlatformCalibration(
                    gain=float(values.get("gain", 1.0)),
                    bias=float(values.get("bias", 0.0)),
                )
                for name, values in weights.items()
            },
            updates_applied=int(row.get("updates_applied", 0)),
            applied_metric_ids=list(row.get("applied_metric_ids") or []),
            updated_at=_parse(row.get("updated_at")),
        )


# =============================================================================
# CONTENT
# =============================================================================


@dataclass
class ContentPayload:
    """Resolved content for a ``content_ref``."""

    text: str
    media_path: Optional[str] = None


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "Platform",
    "JobState",
    "ALLOWED_TRANSITIONS",
    "ErrorKind",
    "ReconciliationStatus",
    "JobError",
    "JobRecord",
    "RawCounts",
    "ObservedMetric",
    "PlatformCalibration",
    "CalibrationState",
    "ContentPayload",
]
