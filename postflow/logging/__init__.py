"""Job-lifecycle audit logging."""
from postflow.logging.models import LogLevel, LogComponent, LifecycleEntry
from postflow.logging.lifecycle_logger import (
    LifecycleLogger,
    init_lifecycle_logger,
    get_lifecycle_logger,
)

__all__ = [
    "LogLevel", "LogComponent", "LifecycleEntry",
    "LifecycleLogger", "init_lifecycle_logger", "get_lifecycle_logger",
]
