"""
Service wiring: one object that owns every background loop.

``PublishingService`` builds the scheduler, dispatch loop, analytics
collector, reconciliation engine and metric webhook around a single job
store and adapter registry, then runs the loops concurrently until
:meth:`stop` is called.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, List, Optional

import uvicorn

from postflow.adapters import (
    AdapterRegistry,
    ContentResolver,
    LinkedInAdapter,
    MicroblogAdapter,
    StaticContentResolver,
    SupabaseContentResolver,
)
from postflow.analytics import AnalyticsCollector, EngagementScorer, ReconciliationEngine
from postflow.analytics.webhook import create_app
from postflow.config import PipelineSettings, get_settings, validate_env
from postflow.database import get_store
from postflow.logging import LifecycleLogger, LogComponent, init_lifecycle_logger
from postflow.memory_store import MemoryJobStore
from postflow.notify import TelegramNotifier
from postflow.scheduling import DispatchLoop, JobScheduler
from postflow.utils import utc_now

logger = logging.getLogger(__name__)


def build_adapters(content: ContentResolver, settings: PipelineSettings) -> AdapterRegistry:
    return AdapterRegistry(
        [
            LinkedInAdapter(content),
            MicroblogAdapter(content, timeout_seconds=settings.fetch_timeout_seconds),
        ]
    )


class PublishingService:
    """Runs dispatch, collection and reconciliation side by side.

    Args:
        store: Job store backend shared by every component.
        adapters: Platform adapter registry.
        settings: Pipeline settings.
        lifecycle: Optional lifecycle audit logger.
        notifier: Optional Telegram notifier.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        store: Any,
        adapters: AdapterRegistry,
        settings: PipelineSettings,
        lifecycle: Optional[LifecycleLogger] = None,
        notifier: Optional[TelegramNotifier] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.adapters = adapters
        self.settings = settings
        self.lifecycle = lifecycle
        self.notifier = notifier

        self.scheduler = JobScheduler(
            store,
            grace_seconds=settings.schedule_grace_seconds,
            clock=clock,
            lifecycle=lifecycle,
        )
        self.dispatcher = DispatchLoop.from_settings(
            store, adapters, settings, clock=clock, lifecycle=lifecycle, notifier=notifier
        )
        self.collector = AnalyticsCollector.from_settings(
            store, adapters, settings, clock=clock, lifecycle=lifecycle
        )
        self.reconciler = ReconciliationEngine.from_settings(
            store, settings, clock=clock, lifecycle=lifecycle, notifier=notifier
        )
        self.scorer = EngagementScorer(self.reconciler.snapshot)
        self.webhook = create_app(self.collector, settings.webhook_secret)
        self._server: Optional[uvicorn.Server] = None
        self._loops: List[asyncio.Task] = []

    @classmethod
    async def create(
        cls,
        settings: Optional[PipelineSettings] = None,
        in_memory: bool = False,
    ) -> "PublishingService":
        """Build the production service (Supabase) or a dry-run one (memory)."""
        settings = settings or get_settings()
        lifecycle = init_lifecycle_logger(
            log_dir=settings.log_dir, enabled=settings.lifecycle_log_enabled
        )

        content: ContentResolver
        if in_memory:
            store: Any = MemoryJobStore()
            content = StaticContentResolver()
        else:
            validate_env(strict=True)
            store = await get_store()
            content = SupabaseContentResolver(store.client)

        return cls(
            store,
            build_adapters(content, settings),
            settings,
            lifecycle=lifecycle,
            notifier=TelegramNotifier.from_env(),
        )

    async def run(self, serve_webhook: bool = True) -> None:
        """Run every loop until :meth:`stop`; returns once they have exited."""
        await self.reconciler.load()
        if self.lifecycle:
            await self.lifecycle.info(
                LogComponent.STARTUP,
                "service_started",
                data={"platforms": [p.value for p in self.adapters.platforms()]},
            )

        self._loops = [
            asyncio.create_task(self.dispatcher.start(), name="dispatch"),
            asyncio.create_task(self.collector.start(), name="analytics"),
            asyncio.create_task(self.reconciler.start(), name="reconcile"),
        ]
        tasks: List[asyncio.Task] = list(self._loops)
        if serve_webhook:
            config = uvicorn.Config(
                self.webhook,
                host=self.settings.webhook_host,
                port=self.settings.webhook_port,
                log_level=self.settings.log_level.lower(),
            )
            self._server = uvicorn.Server(config)
            tasks.append(asyncio.create_task(self._server.serve(), name="webhook"))

        logger.info("[SERVICE] Publishing service running")
        try:
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for task, result in zip(tasks, results):
                if isinstance(result, Exception):
                    logger.error("[SERVICE] %s exited with error: %s", task.get_name(), result)
        finally:
            self._loops = []
            await self.adapters.close()
            logger.info("[SERVICE] Publishing service stopped")

    async def stop(self) -> None:
        """Stop every loop now; sleeping loops are cancelled, not awaited."""
        await self.dispatcher.stop()
        await self.collector.stop()
        await self.reconciler.stop()
        if self._server is not None:
            self._server.should_exit = True
        for task in self._loops:
            if not task.done():
                task.cancel()


__all__ = ["PublishingService", "build_adapters"]
