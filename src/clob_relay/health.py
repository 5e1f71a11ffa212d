"""Health check endpoints for the relay service."""

import json
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from aiohttp import web

if TYPE_CHECKING:
    from .main import RelayService


logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class HealthCheckHandler:
    """Health check HTTP handler."""

    def __init__(self, service: "RelayService"):
        self.service = service

    async def health(self, request: web.Request) -> web.Response:
        """Overall health: 200 when healthy or degraded, 503 otherwise."""
        health_data = await self.service.health_check()
        status = 503 if health_data["status"] == "unhealthy" else 200
        return web.json_response(health_data, status=status, dumps=_dumps)

    async def ready(self, request: web.Request) -> web.Response:
        """Readiness probe: ready once the feed socket is connected."""
        is_ready = self.service.connection.is_open
        return web.json_response(
            {
                "ready": is_ready,
                "connection_status": self.service.connection.state.status.value,
                "timestamp": _now()
            },
            status=200 if is_ready else 503
        )

    async def live(self, request: web.Request) -> web.Response:
        """Liveness probe."""
        return web.json_response({"alive": True, "timestamp": _now()})

    async def stats(self, request: web.Request) -> web.Response:
        """Component statistics."""
        return web.json_response(
            {"timestamp": _now(), "stats": self.service.get_stats()},
            dumps=_dumps
        )


def _dumps(obj) -> str:
    return json.dumps(obj, default=str)


def create_app(service: "RelayService") -> web.Application:
    """Build the aiohttp application with health routes."""
    app = web.Application()
    handler = HealthCheckHandler(service)
    app.router.add_get('/health', handler.health)
    app.router.add_get('/ready', handler.ready)
    app.router.add_get('/live', handler.live)
    app.router.add_get('/stats', handler.stats)
    return app


class HealthCheckServer:
    """HTTP server for health check endpoints."""

    def __init__(self, service: "RelayService", host: str = "0.0.0.0", port: int = 8080):
        self.service = service
        self.host = host
        self.port = port
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None

    async def start(self):
        """Start the health check server."""
        logger.info(f"Starting health check server on {self.host}:{self.port}")

        self.runner = web.AppRunner(create_app(self.service))
        await self.runner.setup()

        self.site = web.TCPSite(self.runner, self.host, self.port)
        await self.site.start()

        logger.info(f"Health check server started on http://{self.host}:{self.port}")

    async def stop(self):
        """Stop the health check server."""
        if self.runner:
            await self.runner.cleanup()
            self.runner = None
            self.site = None
            logger.info("Health check server stopped")
