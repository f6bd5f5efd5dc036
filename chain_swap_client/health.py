"""Health and session status HTTP server."""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from aiohttp import web
import structlog

logger = structlog.get_logger()

SERVICE_NAME = "chain-swap-client"


class HealthServer:
    """Serves /health, a /status listing live swap sessions and /sessions/{swap_id}."""

    def __init__(
        self,
        port: int = 8080,
        sessions_provider: Optional[Callable[[], Dict[str, Any]]] = None,
    ):
        self.port = port
        self.sessions_provider = sessions_provider
        self.app = web.Application()
        self.app.router.add_get('/health', self.health_handler)
        self.app.router.add_get('/status', self.status_handler)
        self.app.router.add_get('/sessions/{swap_id}', self.session_handler)
        self.runner = None
        self.site = None
        self._status_data: Dict[str, Any] = {}

    async def health_handler(self, request):
        return web.json_response({
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": SERVICE_NAME,
        })

    async def status_handler(self, request):
        """Report orchestrator counters and each session's status."""
        sessions = self.sessions_provider() if self.sessions_provider else {}
        return web.json_response({
            "status": "running",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": SERVICE_NAME,
            "sessions": sessions,
            **self._status_data,
        })

    async def session_handler(self, request):
        swap_id = request.match_info["swap_id"]
        sessions = self.sessions_provider() if self.sessions_provider else {}
        if swap_id not in sessions:
            return web.json_response({"error": f"unknown swap {swap_id}"}, status=404)
        return web.json_response({"id": swap_id, "status": sessions[swap_id]})

    def update_status(self, **kwargs):
        self._status_data.update(kwargs)

    async def start(self):
        try:
            self.runner = web.AppRunner(self.app)
            await self.runner.setup()
            self.site = web.TCPSite(self.runner, '0.0.0.0', self.port)
            await self.site.start()
            logger.info("Health server started", port=self.port)
        except OSError as e:
            logger.error("Failed to start health server", error=str(e), port=self.port)

    async def stop(self):
        if self.site:
            await self.site.stop()
        if self.runner:
            await self.runner.cleanup()
        logger.info("Health server stopped")
