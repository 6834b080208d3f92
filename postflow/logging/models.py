"""Lifecycle log data models: LogLevel, LogComponent, LifecycleEntry."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class LogLevel(Enum):
    """Log levels with numeric values for severity comparison.

    Values match the stdlib ``logging`` levels.
    """

    DEBUG = 10
    INFO = 20
    WARNING = 30
    ERROR = 40
    CRITICAL = 50

    @property
    def name_str(self) -> str:
        """Get lowercase name for display/serialization."""
        return self.name.lower()


class LogComponent(Enum):
    """Pipeline components that write lifecycle entries."""

    SCHEDULER = "scheduler"
    DISPATCH = "dispatch"
    ADAPTER = "adapter"
    ANALYTICS = "analytics"
    RECONCILIATION = "reconciliation"
    WEBHOOK = "webhook"
    STARTUP = "startup"


@dataclass
class LifecycleEntry:
    """One audit event in a job's life (scheduled, claimed, published...)."""

    timestamp: datetime
    level: LogLevel
    component: LogComponent
    event: str
    message: str = ""

    job_id: Optional[str] = None
    state: Optional[str] = None
    attempt: Optional[int] = None

    data: Dict[str, Any] = field(default_factory=dict)

    error_type: Optional[str] = None
    error_kind: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.value,
            "level_name": self.level.name_str,
            "component": self.component.value,
            "event": self.event,
            "message": self.message,
            "job_id": self.job_id,
            "state": self.state,
            "attempt": self.attempt,
            "data": self.data,
            "error_type": self.error_type,
            "error_kind": self.error_kind,
        }

    def to_json(self) -> str:
        """Serialize to JSON string for file logging."""
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)

    def to_readable(self) -> str:
        """Human-readable format for Telegram/console output."""
        time_str = self.timestamp.strftime("%H:%M:%S")
        msg = f"[{self.level.name}] [{time_str}] [{self.component.value}] {self.event}"
        if self.job_id:
            msg += f" job={self.job_id}"
        if self.message:
            msg += f": {self.message}"
        return msg
