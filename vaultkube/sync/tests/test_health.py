"""
Tests for the health/webhook endpoint.

The coordinator is a MagicMock; background dispatch runs inside the ASGI
call, so it has completed by the time the client gets the response.
"""

from __future__ import annotations

import json
from unittest.mock import MagicMock

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport

from vaultkube.config import Config, WebhookConfig
from vaultkube.sync.events import SIGNATURE_HEADER, sign
from vaultkube.sync.health import create_app
from vaultkube.sync.models import RunPhase

SECRET = "hook-secret"
UPDATED = json.dumps({"eventType": "item.updated", "itemId": "abc"}).encode()


@pytest.fixture
def coordinator():
    c = MagicMock()
    c.phase = RunPhase.IDLE
    c.last_summary = None
    return c


@pytest_asyncio.fixture
async def client(coordinator):
    app = create_app(Config(webhook=WebhookConfig(secret=SECRET)), coordinator)
    async with httpx.AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest.mark.asyncio
async def test_health(client):
    r = await client.get("/health")
    assert r.status_code == 200
    data = r.json()
    assert data["status"] == "healthy"
    assert data["phase"] == "idle"
    assert data["interval_seconds"] == 3600
    assert data["last_run"] is None


@pytest.mark.asyncio
async def test_health_reports_last_run(client, coordinator):
    coordinator.last_summary =MagicMock(to_dict=MagicMock(return_value={"status": "SUCCESS"}))
    r = await client.get("/health")
    assert r.json()["last_run"] == {"status": "SUCCESS"}


@pytest.mark.asyncio
async def test_webhook_accepted_and_dispatched(client, coordinator):
    r = await client.post(
        "/webhook", content=UPDATED, headers={SIGNATURE_HEADER: sign(UPDATED, SECRET)}
    )
    assert r.status_code == 202
    assert r.json() == {
        "status": "accepted",
        "event_type": "item.updated",
        "item_id": "abc",
        "full_sync": False,
    }
    coordinator.handle_event.assert_called_once()
    assert coordinator.handle_event.call_args[0][0].item_id == "abc"


@pytest.mark.asyncio
async def test_webhook_bad_signature(client, coordinator):
    r = await client.post("/webhook", content=UPDATED, headers={SIGNATURE_HEADER: "deadbeef"})
    assert r.status_code == 401
    coordinator.handle_event.assert_not_called()


@pytest.mark.asyncio
async def test_webhook_malformed_payload(client, coordinator):
    body = b'{"itemId": "abc"}'
    r = await client.post("/webhook", content=body, headers={SIGNATURE_HEADER: sign(body, SECRET)})
    assert r.status_code == 400
    coordinator.handle_event.assert_not_called()


@pytest.mark.asyncio
async def test_webhook_accepted_when_sync_busy(client, coordinator):
    coordinator.handle_event.return_value = None
    r = await client.post(
        "/webhook", content=UPDATED, headers={SIGNATURE_HEADER: sign(UPDATED, SECRET)}
    )
    assert r.status_code == 202
