"""CLOB Relay Service - Polymarket market data to Redis."""

import asyncio
import logging
import os
import signal
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import websockets

from .clients.redis_store import RedisStore
from .config.settings import RelaySettings, load_settings
from .connection import ConnectionManager, ConnectionState, Connector
from .exceptions import ConfigurationError, ReconnectLimitExceeded
from .health import HealthCheckServer
from .metrics import RelayMetrics
from .reconciler import SubscriptionReconciler
from .translator import MessageTranslator
from .utils.logging import setup_logging


logger = logging.getLogger(__name__)


class RelayService:
    """Wires the feed connection, translator, reconciler and Redis store together."""

    def __init__(
        self,
        settings: RelaySettings,
        store: Optional[RedisStore] = None,
        connector: Connector = websockets.connect
    ):
        self.settings = settings
        self.metrics = RelayMetrics()
        self.store = store or RedisStore(settings.redis, self.metrics)

        self.state = ConnectionState()
        self.connection = ConnectionManager(
            settings.feed,
            state=self.state,
            metrics=self.metrics,
            connector=connector
        )
        self.translator = MessageTranslator(
            self.store,
            self.state.subscriptions,
            settings.cache,
            self.metrics
        )
        self.connection.on_message = self.translator.handle
        self.reconciler = SubscriptionReconciler(
            self.store,
            self.connection,
            settings.cache,
            self.metrics
        )

        self.health_server: Optional[HealthCheckServer] = None
        self._tasks: List[asyncio.Task] = []
        self._shutdown_event = asyncio.Event()
        self._stopped = False
        self._signals: List[int] = []

        logger.info("CLOB Relay Service initialized")

    async def start(self):
        """
        Run until shutdown is requested or the feed gives up.

        Raises:
            ReconnectLimitExceeded: the feed could not be reconnected.
        """
        logger.info("🚀 Starting CLOB Relay Service")

        await self.store.initialize()
        await self.reconciler.load()

        if self.settings.health.enabled:
            self.health_server = HealthCheckServer(
                self,
                host=self.settings.health.host,
                port=self.settings.health.port
            )
            await self.health_server.start()

        self.metrics.start_server(self.settings.metrics)
        self._setup_signal_handlers()

        connection_task = asyncio.create_task(self.connection.run(), name="feed-connection")
        reconcile_task = asyncio.create_task(self.reconciler.run(), name="subscription-reconciler")
        reconcile_task.add_done_callback(self._log_task_failure)
        shutdown_task = asyncio.create_task(self._shutdown_event.wait(), name="shutdown-wait")
        self._tasks = [connection_task, reconcile_task, shutdown_task]

        logger.info(f"💡 Tokens managed via Redis set \"{self.settings.cache.subscriptions_key}\"")

        try:
            done, _ = await asyncio.wait(
                {connection_task, shutdown_task},
                return_when=asyncio.FIRST_COMPLETED
            )
            if connection_task in done:
                # Propagates ReconnectLimitExceeded
                connection_task.result()
        finally:
            await self.stop()

    def request_shutdown(self):
        """Ask a running service to stop."""
        self._shutdown_event.set()

    async def stop(self):
        """Stop all tasks and close connections. Safe to call twice."""
        if self._stopped:
            return
        self._stopped = True

        logger.info("Shutting down CLOB Relay Service")
        self._remove_signal_handlers()
        self.reconciler.stop()
        await self.connection.stop()

        for task in self._tasks:
            if not task.done():
                task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        if self.health_server:
            await self.health_server.stop()

        await self.store.close()
        logger.info("CLOB Relay Service stopped")

    def _log_task_failure(self, task: asyncio.Task):
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Task {task.get_name()} failed: {exc!r}")

    def _setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum):
            logger.info(f"Received signal {signum}, initiating shutdown")
            self.request_shutdown()

        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, signal_handler, signum)
            except (NotImplementedError, RuntimeError):
                # Not supported on this platform or outside the main thread
                continue
            self._signals.append(signum)

    def _remove_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for signum in self._signals:
            loop.remove_signal_handler(signum)
        self._signals = []

    async def health_check(self) -> Dict[str, Any]:
        """Perform health check."""
        health_status = {
            "service": self.settings.service_name,
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "components": {
                "connection": await self.connection.health_check(),
                "translator": await self.translator.health_check(),
                "store": await self.store.health_check()
            }
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

    def get_stats(self) -> Dict[str, Any]:
        return {
            "connection": self.connection.get_stats(),
            "translator": self.translator.get_stats(),
            "reconciler": self.reconciler.get_stats(),
            "store": self.store.get_stats()
        }


async def main() -> int:
    """Main entry point. Returns the process exit code."""
    config_file = os.getenv("CONFIG_FILE")

    try:
        settings = load_settings(config_file)
    except ConfigurationError as e:
        # Logging is not configured yet
        print(f"❌ {e}", file=sys.stderr)
        return 1

    setup_logging(settings.logging, settings.service_name)
    if config_file:
        logger.info(f"Loaded configuration from: {config_file}")
    logger.info(f"Starting {settings.service_name} in {settings.environment} environment")

    service = RelayService(settings)

    try:
        await service.start()
    except ReconnectLimitExceeded as e:
        logger.error(f"Service terminated: {e}")
        return 1

    return 0


def run():
    """Console script entry point."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
