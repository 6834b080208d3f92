"""Shared fixtures for the postflow test suite."""

import asyncio
import os
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Union
from unittest.mock import AsyncMock, MagicMock

import pytest

from postflow.adapters.base import AdapterRegistry, PlatformAdapter
from postflow.memory_store import MemoryJobStore
from postflow.models import Platform, RawCounts


# ---------------------------------------------------------------------------
# Ensure we don't hit real APIs during tests
# ---------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def _block_env_keys(monkeypatch):
    """Clear all credentials and overrides so tests never hit real services."""
    keys = [
        "SUPABASE_URL",
        "SUPABASE_SERVICE_KEY",
        "LINKEDIN_EMAIL",
        "TELEGRAM_BOT_TOKEN",
        "TELEGRAM_CHAT_ID",
        "TWITTER_BEARER_TOKEN",
    ]
    keys += [key for key in os.environ if key.startswith("POSTFLOW_")]
    for key in keys:
        monkeypatch.delenv(key, raising=False)


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------
class FakeClock:
    """Manually advanced UTC clock; pass the instance as ``clock=``."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def sample_utc_now():
    """A fixed UTC datetime for deterministic tests."""
    return datetime(2025, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(sample_utc_now):
    return FakeClock(sample_utc_now)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------
@pytest.fixture
def store():
    return MemoryJobStore()


# ---------------------------------------------------------------------------
# Scripted platform adapter
# ---------------------------------------------------------------------------
Outcome = Union[str, Exception]


class FakeAdapter(PlatformAdapter):
    """Adapter whose submit results are scripted in order.

    Each entry of ``submit_results`` is either a post id (success) or an
    exception instance to raise.  Once the script runs out, submits succeed
    with ``post-<n>``.
    """

    def __init__(
        self,
        platform: Platform = Platform.MICROBLOG,
        submit_results: Optional[List[Outcome]] = None,
        metrics: Optional[Union[RawCounts, Exception]] = None,
        submit_delay: float = 0.0,
    ) -> None:
        self.platform = platform
        self.submit_results = list(submit_results or [])
        self.metrics = metrics if metrics is not None else RawCounts(impressions=1000, likes=30)
        self.submit_delay = submit_delay
        self.submit_calls: List[tuple] = []
        self.fetch_calls: List[str] = []
        self.in_flight = 0
        self.max_in_flight_per_key: dict = {}
        self._active_keys: dict = {}

    async def submit(self, content_ref: str, idempotency_key: str) -> str:
        self.submit_calls.append((content_ref, idempotency_key))
        self._active_keys[idempotency_key] = self._active_keys.get(idempotency_key, 0) + 1
        self.max_in_flight_per_key[idempotency_key] = max(
            self.max_in_flight_per_key.get(idempotency_key, 0),
            self._active_keys[idempotency_key],
        )
        try:
            if self.submit_delay:
                await asyncio.sleep(self.submit_delay)
            else:
                await asyncio.sleep(0)
            if self.submit_results:
                result = self.submit_results.pop(0)
                if isinstance(result, Exception):
                    raise result
                return result
            return f"post-{len(self.submit_calls)}"
        finally:
            self._active_keys[idempotency_key] -= 1

    async def fetch_metrics(self, external_post_id: str) -> RawCounts:
        self.fetch_calls.append(external_post_id)
        if isinstance(self.metrics, Exception):
            raise self.metrics
        return self.metrics


@pytest.fixture
def fake_adapter_cls():
    return FakeAdapter


@pytest.fixture
def fake_clock_cls():
    return FakeClock


@pytest.fixture
def microblog_adapter():
    return FakeAdapter(Platform.MICROBLOG)


@pytest.fixture
def registry(microblog_adapter):
    return AdapterRegistry([microblog_adapter, FakeAdapter(Platform.LINKEDIN)])


# ---------------------------------------------------------------------------
# Mock Supabase client
# ---------------------------------------------------------------------------
@pytest.fixture
def mock_supabase_client():
    """A mock Supabase async client with a chainable query builder.

    ``client.table(...)`` always returns the same builder; set
    ``builder.execute.return_value`` to control results.
    """
    client = MagicMock()
    builder = MagicMock()
    for method in (
        "select", "insert", "update", "upsert", "delete", "eq", "is_", "in_",
        "gte", "lte", "lt", "or_", "order", "limit",
    ):
        getattr(builder, method).return_value = builder
    builder.execute = AsyncMock(return_value=MagicMock(data=[]))
    client.table.return_value = builder

    rpc_builder = MagicMock()
    rpc_builder.execute = AsyncMock(return_value=MagicMock(data=[]))
    client.rpc.return_value = rpc_builder

    client.builder = builder
    client.rpc_builder = rpc_builder
    return client
