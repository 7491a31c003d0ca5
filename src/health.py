

"""
Health check HTTP server for container orchestration.

Provides /health for Docker healthchecks and /status with the tracked
presence view.
"""
from typing import Any, Optional

from aiohttp import web
import structlog

logger = structlog.get_logger()

SERVICE_NAME = "query-presence"


class HealthCheckServer:
    """Simple HTTP server for health checks."""

    def __init__(self, host: str = "0.0.0.0", port: int = 8080, tracker: Optional[Any] = None):
        """
        Initialize health check server.

        Args:
            host: Host to bind to (default: 0.0.0.0)
            port: Port to bind to (default: 8080)
            tracker: PresenceTracker whose state /status reports (read only)
        """
        self.host = host
        self.port = port
        self.tracker = tracker
        self.app = web.Application()
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None
        self._setup_routes()

    def _setup_routes(self) -> None:
        """Configure HTTP routes."""
        self.app.router.add_get("/health", self.health_handler)
        self.app.router.add_get("/status", self.status_handler)
        self.app.router.add_get("/", self.root_handler)

    async def health_handler(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "healthy",
            "service": SERVICE_NAME
        })

    async def status_handler(self, request: web.Request) -> web.Response:
        """
        Presence endpoint.

        Returns:
            200 with server_up and sorted online players, 503 without a tracker
        """
        if self.tracker is None:
            return web.json_response({"error": "presence tracking not running"}, status=503)

        return web.json_response({
            "server_up": self.tracker.state.server_up,
            "players": sorted(self.tracker.online_players),
        })

    async def root_handler(self, request: web.Request) -> web.Response:
        return web.json_response({
            "service": SERVICE_NAME,
            "endpoints": {
                "health": "/health",
                "status": "/status"
            }
        })

    async def start(self) -> None:
        """Start the health check server."""
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()

        self.site = web.TCPSite(
            self.runner,
            self.host,
            self.port
        )
        await self.site.start()

        logger.info(
            "health_server_started",
            host=self.host,
            port=self.port
        )

    async def stop(self) -> None:
        """Stop the health check server."""
        if self.site is not None:
            await self.site.stop()

        if self.runner is not None:
            await self.runner.cleanup()

        logger.info("health_server_stopped")
