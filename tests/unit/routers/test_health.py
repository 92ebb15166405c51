"""Health endpoint tests."""

from __future__ import annotations

import asyncio

import pytest

from engagement_service.core.state import get_app_state
from tests.unit.routers.conftest import create_request


@pytest.mark.unit
async def test_health_reports_counts(client) -> None:
    empty = await client.get("/health")
    assert empty.status_code == 200
    assert empty.json()["status"] == "ok"
    assert empty.json()["total_requests"] == 0

    await create_request(client)
    body = (await client.get("/health")).json()

    assert body["total_requests"] == 1
    assert body["requests_by_status"] == {"pending": 1}
    assert body["uptime_seconds"] >= 0
    assert body["started_at"].endswith("Z")


@pytest.mark.unit
async def test_unknown_route_uses_error_envelope(client) -> None:
    response = await client.get("/nope")

    assert response.status_code == 404
    assert response.json()["error"] == "HTTP_ERROR"


@pytest.mark.unit
async def test_notifications_drain_in_the_background(client) -> None:
    await create_request(client)

    body: dict = {}
    for _ in range(100):
        body = (await client.get("/health")).json()
        if body["pending_notifications"] == 0:
            break
        await asyncio.sleep(0.01)

    assert body["pending_notifications"] == 0
    notifier = get_app_state().dispatcher._client
    notifier.push.assert_awaited_once()
    assert notifier.push.await_args.args[1] == "request.proposed"
