"""Structured job-lifecycle audit log.

``LifecycleLogger`` appends one JSON line per lifecycle event to
``<log_dir>/lifecycle.log`` (via ``aiofiles``); ERROR and above also go
to ``<log_dir>/errors.log``.  A bounded in-memory ring buffer serves
``get_recent()`` without touching disk.

Global helpers:
    - ``init_lifecycle_logger()`` -- create and register the singleton
    - ``get_lifecycle_logger()``  -- retrieve it (raises if not initialised)
"""

import logging
from collections import deque
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional

import aiofiles

from postflow.exceptions import PlatformError
from postflow.logging.models import LifecycleEntry, LogComponent, LogLevel
from postflow.utils import utc_now

logger = logging.getLogger(__name__)


class LifecycleLogger:
    """Audit trail for job lifecycle events.

    Parameters:
        log_dir: Directory for log files (created if missing).
        enabled: When ``False`` entries are kept in memory only.
        max_recent: Size of the ring buffer.
    """

    def __init__(
        self,
        log_dir: str = "logs",
        enabled: bool = True,
        max_recent: int = 1000,
    ) -> None:
        self.log_dir = Path(log_dir)
        self.enabled = enabled
        if enabled:
            self.log_dir.mkdir(parents=True, exist_ok=True)

        self._main_log = self.log_dir / "lifecycle.log"
        self._error_log = self.log_dir / "errors.log"

        self._recent: Deque[LifecycleEntry] = deque(maxlen=max_recent)
        self._handlers: List[Callable[[LifecycleEntry], None]] = []

    def add_handler(self, handler: Callable[[LifecycleEntry], None]) -> None:
        """Register a custom synchronous handler called for each entry."""
        self._handlers.append(handler)

    async def log(
        self,
        level: LogLevel,
        component: LogComponent,
        event: str,
        job_id: Optional[str] = None,
        message: str = "",
        state: Optional[str] = None,
        attempt: Optional[int] = None,
        data: Optional[Dict[str, Any]] = None,
        error: Optional[Exception] = None,
    ) -> LifecycleEntry:
        """Record a lifecycle event and return the entry."""
        entry = LifecycleEntry(
            timestamp=utc_now(),
            level=level,
            component=component,
            event=event,
            message=message,
            job_id=job_id,
            state=state,
            attempt=attempt,
            data=data or {},
        )
        if error is not None:
            entry.error_type = type(error).__name__
            if isinstance(error, PlatformError):
                entry.error_kind = error.kind.value
            if not entry.message:
                entry.message = str(error)

        self._recent.append(entry)

        if self.enabled:
            await self._write_to_file(entry)

        for handler in self._handlers:
            try:
                handler(entry)
            except Exception:
                logger.exception("[LIFECYCLE] Handler %r failed", handler)

        return entry

    async def info(self, component: LogComponent, event: str, **kwargs: Any) -> LifecycleEntry:
        return await self.log(LogLevel.INFO, component, event, **kwargs)

    async def warning(self, component: LogComponent, event: str, **kwargs: Any) -> LifecycleEntry:
        return await self.log(LogLevel.WARNING, component, event, **kwargs)

    async def error(self, component: LogComponent, event: str, **kwargs: Any) -> LifecycleEntry:
        return await self.log(LogLevel.ERROR, component, event, **kwargs)

    def get_recent(
        self,
        limit: int = 20,
        job_id: Optional[str] = None,
        component: Optional[LogComponent] = None,
        event: Optional[str] = None,
    ) -> List[LifecycleEntry]:
        """Return recent entries from the ring buffer, oldest first."""
        entries = list(self._recent)
        if job_id is not None:
            entries = [e for e in entries if e.job_id == job_id]
        if component is not None:
            entries = [e for e in entries if e.component == component]
        if event is not None:
            entries = [e for e in entries if e.event == event]
        return entries[-limit:]

    async def _write_to_file(self, entry: LifecycleEntry) -> None:
        json_line = entry.to_json() + "\n"

        async with aiofiles.open(self._main_log, "a", encoding="utf-8") as f:
            await f.write(json_line)

        if entry.level.value >= LogLevel.ERROR.value:
            async with aiofiles.open(self._error_log, "a", encoding="utf-8") as f:
                await f.write(json_line)


# ======================================================================
# GLOBAL LOGGER SINGLETON
# ======================================================================

_lifecycle_logger: Optional[LifecycleLogger] = None


def init_lifecycle_logger(log_dir: str = "logs", enabled: bool = True) -> LifecycleLogger:
    """Initialise and register the global ``LifecycleLogger``."""
    global _lifecycle_logger
    _lifecycle_logger = LifecycleLogger(log_dir=log_dir, enabled=enabled)
    return _lifecycle_logger


def get_lifecycle_logger() -> LifecycleLogger:
    """Retrieve the global ``LifecycleLogger``.

    Raises:
        RuntimeError: If ``init_lifecycle_logger()`` has not been called yet.
    """
    if _lifecycle_logger is None:
        raise RuntimeError(
            "Lifecycle logger not initialized. Call init_lifecycle_logger() first."
        )
    return _lifecycle_logger
