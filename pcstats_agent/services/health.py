"""
Health Server

Local HTTP endpoint for checking on the agent:
- GET /health - liveness, uptime and online/offline mode
- GET /stats  - gateway, queue, collector and loop statistics
"""

import json
import time
from functools import partial
from datetime import datetime, timezone
from typing import Callable

from aiohttp import web

from ..common.logging_setup import get_service_logger

logger = get_service_logger("health")


class HealthServer:
    """aiohttp server reporting agent status"""

    def __init__(
        self,
        status_provider: Callable[[], dict],
        host: str = "127.0.0.1",
        port: int = 8095,
    ):
        """
        Args:
            status_provider: Returns the agent status dict; must contain
                "running" and may contain "gateway", "queue", "loop"
            host: Bind address
            port: Bind port
        """
        self.status_provider = status_provider
        self.host = host
        self.port = port
        self._start_time = time.time()
        self._runner: web.AppRunner | None = None

        self.app = web.Application()
        self.app.router.add_get("/health", self.health_handler)
        self.app.router.add_get("/stats", self.stats_handler)

    async def start(self) -> None:
        """Start the health check HTTP server"""
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()

        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()

        logger.info(f"Health server started on {self.host}:{self.port}")

    async def stop(self) -> None:
        """Stop the health check HTTP server"""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    async def health_handler(self, request: web.Request) -> web.Response:
        status = self.status_provider()
        gateway = status.get("gateway") or {}

        return web.json_response({
            "status": "healthy" if status.get("running") else "unhealthy",
            "service": "pcstats-agent",
            "uptime": int(time.time() - self._start_time),
            "mode": gateway.get("mode", "online"),
            "pending": gateway.get("pending", 0),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    async def stats_handler(self, request: web.Request) -> web.Response:
        return web.json_response(self.status_provider(), dumps=partial(json.dumps, default=str))
