"""Scheduling subsystem: job intake, retry policy, background dispatch."""

from postflow.scheduling.dispatcher import DispatchLoop, DispatchStats
from postflow.scheduling.lifecycle import ensure_transition
from postflow.scheduling.retry import RetryDecision, RetryPolicy
from postflow.scheduling.scheduler import JobScheduler, is_eligible, resolve_platform

__all__ = [
    "DispatchLoop",
    "DispatchStats",
    "JobScheduler",
    "RetryDecision",
    "RetryPolicy",
    "ensure_transition",
    "is_eligible",
    "resolve_platform",
]
