"""
Platform adapter capability set.

Every distribution target implements :class:`PlatformAdapter`:

* ``submit(content_ref, idempotency_key) -> external post id``
* ``fetch_metrics(external_post_id) -> RawCounts``

Adapters classify failures into :mod:`postflow.exceptions` platform
errors at this boundary and never retry internally.  The dispatch loop
picks the adapter for a job from an :class:`AdapterRegistry`, keyed by
the closed :class:`~postflow.models.Platform` enumeration.
"""

import hashlib
from abc import ABC, abstractmethod
from typing import Dict, Iterable, Optional

from postflow.exceptions import RejectedError, UnsupportedPlatformError
from postflow.models import ContentPayload, Platform, RawCounts


def idempotency_key(job_id: str) -> str:
    """Stable key for a job; identical across every retry of that job."""
    return hashlib.sha256(f"postflow:{job_id}".encode("utf-8")).hexdigest()[:32]


class ContentResolver(ABC):
    """Turns an opaque ``content_ref`` into publishable content."""

    @abstractmethod
    async def resolve(self, content_ref: str) -> ContentPayload:
        """Raises :class:`~postflow.exceptions.RejectedError` if the ref is unusable."""


class StaticContentResolver(ContentResolver):
    """Resolver over an in-memory mapping (tests, dry runs)."""

    def __init__(self, contents: Optional[Dict[str, ContentPayload]] = None) -> None:
        self.contents: Dict[str, ContentPayload] = dict(contents or {})

    def add(self, content_ref: str, text: str, media_path: Optional[str] = None) -> None:
        self.contents[content_ref] = ContentPayload(text=text, media_path=media_path)

    async def resolve(self, content_ref: str) -> ContentPayload:
        payload = self.contents.get(content_ref)
        if payload is None:
            raise RejectedError(f"Unknown content_ref: {content_ref}")
        return payload


class PlatformAdapter(ABC):
    """One distribution target."""

    platform: Platform

    @abstractmethod
    async def submit(self, content_ref: str, idempotency_key: str) -> str:
        """Publish content and return the platform's post id.

        Raises:
            RateLimitedError, AuthExpiredError, RejectedError, TransientError
        """

    @abstractmethod
    async def fetch_metrics(self, external_post_id: str) -> RawCounts:
        """Fetch current engagement counts for a published post.

        Raises:
            NotFoundError, TransientError
        """

    async def close(self) -> None:
        """Release network resources.  Default: nothing to release."""


class AdapterRegistry:
    """Adapters keyed by platform."""

    def __init__(self, adapters: Optional[Iterable[PlatformAdapter]] = None) -> None:
        self._adapters: Dict[Platform, PlatformAdapter] = {}
        for adapter in adapters or ():
            self.register(adapter)

    def register(self, adapter: PlatformAdapter) -> None:
        self._adapters[adapter.platform] = adapter

    def get(self, platform: Platform) -> PlatformAdapter:
        """Raises :class:`UnsupportedPlatformError` when no adapter is registered."""
        adapter = self._adapters.get(platform)
        if adapter is None:
            raise UnsupportedPlatformError(
                f"No adapter registered for platform {platform.value}"
            )
        return adapter

    def __contains__(self, platform: object) -> bool:
        return platform in self._adapters

    def platforms(self) -> Iterable[Platform]:
        return list(self._adapters)

    async def close(self) -> None:
        for adapter in self._adapters.values():
            await adapter.close()


__all__ = [
    "AdapterRegistry",
    "ContentResolver",
    "PlatformAdapter",
    "StaticContentResolver",
    "idempotency_key",
]
