"""Registration Sync Service - keeps the registration cache converged with the upstream."""

import asyncio
import logging
import os
import signal
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .buffer_queue import BufferQueue, BufferScheduler, RegistrationSubmitter
from .clients.upstream_rest import UpstreamClient
from .config.settings import ServiceSettings, load_settings
from .kv_store import KeyValueStore
from .record_cache import RecordCache, RegistrationFilters, RegistrationPage
from .sync_worker import SyncWorker
from .utils.logging import setup_logging
from .webhook import WebhookIngester


logger = logging.getLogger(__name__)


class RegistrationSyncService:
    """Wires the store, cache, sync worker, webhook path and buffer into one service."""

    def __init__(
        self,
        settings: Optional[ServiceSettings] = None,
        redis_client: Optional[Any] = None,
        upstream: Optional[UpstreamClient] = None
    ):
        self.settings = settings or ServiceSettings()
        self._shutdown_event = asyncio.Event()
        self._sync_start_task: Optional[asyncio.Task] = None

        self.store = KeyValueStore(self.settings.redis, self.settings.retry, client=redis_client)
        self.cache = RecordCache(self.store)
        self.upstream = upstream or UpstreamClient(self.settings.upstream, self.settings.retry)
        self.webhook = WebhookIngester(self.cache, self.store, self.settings.webhook)
        self.sync_worker = SyncWorker(self.cache, self.store, self.upstream, self.settings.sync)
        self.buffer = BufferQueue(self.store, self.settings.buffer)
        self.submitter = RegistrationSubmitter(self.upstream, self.buffer, self.settings.upstream.registration_form)
        self.buffer_scheduler = BufferScheduler(self.buffer, self.submitter.submit_direct, self.settings.buffer)
        self.server = None

        logger.info(f"{self.settings.service_name} initialized ({self.settings.environment})")

    async def initialize(self):
        await self.store.initialize()
        await self.upstream.open()

    async def start(self):
        """Start every component and run until a shutdown signal arrives."""
        logger.info("Starting Registration Sync Service")

        await self.initialize()
        self._setup_signal_handlers()

        if self.settings.server.enabled:
            from .server import RegistrationSyncServer

            self.server = RegistrationSyncServer(self, self.settings.server.host, self.settings.server.port)
            await self.server.start()

        # The initial full sync can take a while; serve traffic meanwhile
        self.start_sync_worker()
        await self.buffer_scheduler.start()

        await self._shutdown_event.wait()
        await self.shutdown()

    def start_sync_worker(self) -> asyncio.Task:
        if self._sync_start_task is None or self._sync_start_task.done():
            self._sync_start_task = asyncio.create_task(self.sync_worker.start())
        return self._sync_start_task

    async def shutdown(self):
        logger.info("Shutting down Registration Sync Service")

        if self._sync_start_task and not self._sync_start_task.done():
            self._sync_start_task.cancel()
            await asyncio.gather(self._sync_start_task, return_exceptions=True)

        if self.sync_worker.is_running:
            await self.sync_worker.stop()
        await self.buffer_scheduler.stop()
        await self.buffer.close()

        if self.server:
            await self.server.stop()

        await self.upstream.close()
        await self.store.close()

        logger.info("Registration Sync Service stopped")

    def request_shutdown(self):
        self._shutdown_event.set()

    def _setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            logger.info(f"Received signal {signum}, initiating shutdown")
            self._shutdown_event.set()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    async def get_event_registrations(
        self,
        event_id: str,
        filters: Optional[RegistrationFilters] = None
    ) -> RegistrationPage:
        """Serve from the cache; on a miss populate the event from the upstream first."""
        page = await self.cache.get_event_registrations(event_id, filters)
        if page.cached:
            return page

        logger.info(f"Cache miss for event {event_id}, loading from upstream")
        result = await self.sync_worker.force_sync_event(event_id)
        if not result.success:
            return page

        page = await self.cache.get_event_registrations(event_id, filters)
        page.source = "upstream"
        return page

    async def health_check(self) -> Dict[str, Any]:
        """Perform health check."""
        health_status = {
            "service": self.settings.service_name,
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "components": {}
        }

        health_status["components"]["store"] = await self.store.health_check()

        buffer_status = await self.buffer.status()
        health_status["components"]["buffer"] = {
            "status": "healthy" if buffer_status["connected"] else "unhealthy",
            **buffer_status
        }

        health_status["components"]["sync_worker"] = {
            "status": "healthy" if self.sync_worker.is_running else "degraded",
            **self.sync_worker.get_status()
        }

        component_statuses = [
            comp.get("status", "unknown")
            for comp in health_status["components"].values()
        ]

        if any(status == "unhealthy" for status in component_statuses):
            health_status["status"] = "unhealthy"
        elif any(status == "degraded" for status in component_statuses):
            health_status["status"] = "degraded"

        return health_status


async def main():
    """Main entry point."""
    config_file = os.getenv("CONFIG_FILE")
    settings = load_settings(config_file)
    setup_logging(settings.logging, settings.service_name, settings.environment)

    service = RegistrationSyncService(settings)

    try:
        await service.start()
    except Exception as e:
        logger.error(f"Service failed: {e}", exc_info=True)
        sys.exit(1)


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
