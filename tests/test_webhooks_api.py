"""Tests for the webhook HTTP API."""

import json

import pytest
from httpx import AsyncClient

from hookrelay.database import async_session
from hookrelay.main import app
from hookrelay.models.webhook import Webhook
from hookrelay.services.rate_limiter import RateLimiter
from hookrelay.services.webhook_dispatcher import SIGNATURE_HEADER, sign_payload

API = "/api/v1/webhooks"


async def create(client: AsyncClient, **overrides) -> dict:
    payload = {
        "workspace_id": "W1",
        "name": "CRM sync",
        "url": "https://hooks.example.com/crm",
        "events": ["deal.won"],
    }
    payload.update(overrides)
    resp = await client.post(f"{API}/", json=payload)
    assert resp.status_code == 201, resp.text
    return resp.json()


# ── Health / schema ──────────────────────────────────────
@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_list_event_types(client):
    resp = await client.get(f"{API}/events")
    assert resp.status_code == 200
    events = resp.json()
    assert "lead.created" in events
    assert "deal.won" in events
    assert "report.generated" in events


def test_webhook_create_defaults():
    from hookrelay.api.webhooks import WebhookCreate

    wh = WebhookCreate(workspace_id="W1", url="https://example.com")
    assert wh.events == ["*"]
    assert wh.secret is None
    assert wh.headers == {}
    assert wh.retry_count == 3


# ── Actions ──────────────────────────────────────────────
class TestActions:
    @pytest.mark.asyncio
    async def test_ping(self, client, subscribers):
        resp = await client.post(f"{API}/actions", json={"action": "ping"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["ok"] is True
        assert isinstance(body["timestamp"], int)
        assert subscribers.requests == []

    @pytest.mark.asyncio
    async def test_invalid_action(self, client):
        resp = await client.post(f"{API}/actions", json={"action": "explode"})
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Invalid action"

    @pytest.mark.asyncio
    async def test_trigger_delivers_signed_event(self, client, subscribers):
        await create(client, secret="whsec_abc")
        # Inserted directly, the create endpoint would reject this URL
        async with async_session() as db:
            db.add(Webhook(workspace_id="W1", url="http://192.168.1.50/hook", events='["deal.won"]'))
            await db.commit()

        resp = await client.post(
            f"{API}/actions",
            json={"action": "trigger", "workspace_id": "W1", "event_type": "deal.won", "data": {"deal": 1}},
        )

        assert resp.status_code == 200
        assert resp.json() == {"triggered": 1, "success": 1, "failed": 0}
        request = subscribers.requests[0]
        assert request.headers[SIGNATURE_HEADER] == sign_payload(
            request.content.decode("utf-8"), "whsec_abc"
        )

    @pytest.mark.asyncio
    async def test_trigger_passes_empty_list_payload(self, client, subscribers):
        await create(client)
        resp = await client.post(
            f"{API}/actions",
            json={"action": "trigger", "workspace_id": "W1", "event_type": "deal.won", "data": []},
        )
        assert resp.status_code == 200
        assert json.loads(subscribers.requests[0].content)["data"] == []

    @pytest.mark.asyncio
    async def test_trigger_missing_workspace(self, client, subscribers):
        resp = await client.post(f"{API}/actions", json={"action": "trigger", "event_type": "deal.won"})
        assert resp.status_code == 400
        assert subscribers.requests == []

    @pytest.mark.asyncio
    async def test_trigger_rate_limited(self, client, subscribers):
        await create(client)
        app.state.dispatcher.rate_limiter = RateLimiter(limit=1, window_ms=30_000, clock=lambda: 0.0)
        body = {"action": "trigger", "workspace_id": "W1", "event_type": "deal.won"}

        first = await client.post(f"{API}/actions", json=body)
        second = await client.post(f"{API}/actions", json=body)

        assert first.status_code == 200
        assert second.status_code == 429
        assert second.headers["Retry-After"] == "30"
        assert second.json()["detail"]["error"] == "RATE_LIMIT_EXCEEDED"
        assert len(subscribers.requests) == 1

    @pytest.mark.asyncio
    async def test_test_action(self, client, subscribers):
        wh = await create(client, events=["lead.created"])
        resp = await client.post(
            f"{API}/actions", json={"action": "test", "workspace_id": "W1", "webhook_id": wh["id"]}
        )
        assert resp.status_code == 200
        assert resp.json() == {"triggered": 1, "success": 1, "failed": 0}
        assert subscribers.requests[0].headers["X-Webhook-Event"] == "test"

    @pytest.mark.asyncio
    async def test_test_action_not_found(self, client):
        resp = await client.post(
            f"{API}/actions", json={"action": "test", "workspace_id": "W1", "webhook_id": "missing"}
        )
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_test_action_missing_ids(self, client):
        resp = await client.post(f"{API}/actions", json={"action": "test"})
        assert resp.status_code == 400


# ── Test endpoint ────────────────────────────────────────
@pytest.mark.asyncio
async def test_test_endpoint_reports_delivery(client, subscribers):
    wh = await create(client)
    subscribers.route("https://hooks.example.com/crm", status=410, text="gone")

    resp = await client.post(f"{API}/{wh['id']}/test", params={"workspace_id": "W1"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["triggered"] == 1
    assert body["failed"] == 1
    assert body["response_status"] == 410
    assert body["error"] == "HTTP 410: gone"

    logs = await client.get(f"{API}/{wh['id']}/logs", params={"workspace_id": "W1"})
    assert logs.status_code == 200
    assert len(logs.json()) == 1
    assert logs.json()[0]["response_status"] == 410

    detail = await client.get(f"{API}/{wh['id']}", params={"workspace_id": "W1"})
    assert detail.json()["last_status"] == 410


@pytest.mark.asyncio
async def test_test_endpoint_other_workspace(client):
    wh = await create(client)
    resp = await client.post(f"{API}/{wh['id']}/test", params={"workspace_id": "W2"})
    assert resp.status_code == 404


# ── Management ───────────────────────────────────────────
class TestManagement:
    @pytest.mark.asyncio
    async def test_create_hides_secret(self, client):
        wh = await create(client, secret="s3cret", headers={"X-Team": "growth"})
        assert wh["has_secret"] is True
        assert "secret" not in wh
        assert wh["headers"] == {"X-Team": "growth"}
        assert wh["is_active"] is True
        assert wh["last_status"] is None

    @pytest.mark.asyncio
    async def test_create_rejects_unknown_event(self, client):
        resp = await client.post(
            f"{API}/", json={"workspace_id": "W1", "url": "https://example.com/h", "events": ["nope"]}
        )
        assert resp.status_code == 400

    @pytest.mark.asyncio
    @pytest.mark.parametrize("url", ["http://localhost/hook", "ftp://example.com/", "not a url"])
    async def test_create_rejects_blocked_url(self, client, url):
        resp = await client.post(f"{API}/", json={"workspace_id": "W1", "url": url})
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_list_scoped_to_workspace(self, client):
        await create(client, name="one")
        await create(client, name="two", workspace_id="W2")
        resp = await client.get(f"{API}/", params={"workspace_id": "W1"})
        assert [w["name"] for w in resp.json()] == ["one"]

    @pytest.mark.asyncio
    async def test_list_requires_workspace(self, client):
        resp = await client.get(f"{API}/")
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_update(self, client):
        wh = await create(client)
        resp = await client.patch(
            f"{API}/{wh['id']}",
            params={"workspace_id": "W1"},
            json={"is_active": False, "events": ["lead.created", "lead.updated"]},
        )
        assert resp.status_code == 200
        assert resp.json()["is_active"] is False
        assert resp.json()["events"] == ["lead.created", "lead.updated"]

    @pytest.mark.asyncio
    async def test_update_rejects_blocked_url(self, client):
        wh = await create(client)
        resp = await client.patch(
            f"{API}/{wh['id']}", params={"workspace_id": "W1"}, json={"url": "http://10.0.0.1/"}
        )
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_inactive_webhook_not_triggered(self, client, subscribers):
        wh = await create(client)
        await client.patch(f"{API}/{wh['id']}", params={"workspace_id": "W1"}, json={"is_active": False})
        resp = await client.post(
            f"{API}/actions", json={"action": "trigger", "workspace_id": "W1", "event_type": "deal.won"}
        )
        assert resp.json()["triggered"] == 0
        assert subscribers.requests == []

    @pytest.mark.asyncio
    async def test_delete(self, client):
        wh = await create(client)
        resp = await client.delete(f"{API}/{wh['id']}", params={"workspace_id": "W1"})
        assert resp.status_code == 204
        resp = await client.get(f"{API}/{wh['id']}", params={"workspace_id": "W1"})
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_delete_other_workspace_404(self, client):
        wh = await create(client)
        resp = await client.delete(f"{API}/{wh['id']}", params={"workspace_id": "W2"})
        assert resp.status_code == 404
