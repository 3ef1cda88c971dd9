from __future__ import annotations

import asyncio
import json

from aiohttp.test_utils import make_mocked_request

from pcstats_agent.services.health import HealthServer


def _call(handler_name: str, status: dict) -> dict:
    async def run():
        server = HealthServer(lambda: status)
        handler = getattr(server, handler_name)
        response = await handler(make_mocked_request("GET", f"/{handler_name.split('_')[0]}"))
        return response.status, json.loads(response.text)

    code, body = asyncio.run(run())
    assert code == 200
    return body


def test_health_reports_mode_and_pending():
    body = _call("health_handler", {"running": True, "gateway": {"mode": "offline", "pending": 4}})

    assert body["status"] == "healthy"
    assert body["mode"] == "offline"
    assert body["pending"] == 4
    assert body["uptime"] >= 0


def test_health_unhealthy_when_stopped():
    body = _call("health_handler", {"running": False})

    assert body["status"] == "unhealthy"
    assert body["mode"] == "online"


def test_stats_returns_full_status():
    status = {"running": True, "cycles": 12, "queue": {"pending": 0}}

    assert _call("stats_handler", status) == status
