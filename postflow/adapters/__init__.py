"""Platform adapters: one capability set per distribution target."""

from postflow.adapters.base import (
    AdapterRegistry,
    ContentResolver,
    PlatformAdapter,
    StaticContentResolver,
    idempotency_key,
)
from postflow.adapters.content import SupabaseContentResolver
from postflow.adapters.linkedin import LinkedInAdapter
from postflow.adapters.microblog import MicroblogAdapter

__all__ = [
    "AdapterRegistry",
    "ContentResolver",
    "LinkedInAdapter",
    "MicroblogAdapter",
    "PlatformAdapter",
    "StaticContentResolver",
    "SupabaseContentResolver",
    "idempotency_key",
]
