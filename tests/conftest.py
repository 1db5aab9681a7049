"""Test fixtures — tables per test, fake subscriber endpoints, in-memory store."""

import json
import os
from collections.abc import AsyncGenerator
from typing import Optional

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Force SQLite test database and no DNS lookups *before* any app import
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_hookrelay.db"
os.environ["WEBHOOK_RESOLVE_DNS"] = "false"

from hookrelay.config import Settings  # noqa: E402
from hookrelay.database import Base, engine  # noqa: E402
from hookrelay.main import app, build_dispatcher  # noqa: E402
from hookrelay.models.webhook import Webhook  # noqa: E402


class SubscriberSpy:
    """httpx MockTransport handler standing in for subscriber endpoints.

    Unrouted URLs answer 200 "ok". A route can be a status/text pair or an
    exception instance to raise.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.routes: dict[str, object] = {}

    def route(self, url: str, status: int = 200, text: str = "ok", exc: Optional[Exception] = None):
        self.routes[str(httpx.URL(url))] = exc if exc is not None else (status, text)

    def requests_to(self, url: str) -> list[httpx.Request]:
        key = str(httpx.URL(url))
        return [r for r in self.requests if str(r.url) == key]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(str(request.url), (200, "ok"))
        if isinstance(route, Exception):
            raise route
        status, text = route
        return httpx.Response(status, text=text)


class InMemoryWebhookStore:
    def __init__(self, webhooks=()):
        self.webhooks = list(webhooks)
        self.logs = []
        self.health = {}
        self.find_active_calls = 0
        self.fail_inserts = False
        self.fail_updates = False

    async def find_active(self, workspace_id):
        self.find_active_calls += 1
        return [w for w in self.webhooks if w.workspace_id == workspace_id and w.is_active]

    async def find_one(self, webhook_id, workspace_id):
        for w in self.webhooks:
            if w.id == webhook_id and w.workspace_id == workspace_id:
                return w
        return None

    async def insert_log(self, entry):
        if self.fail_inserts:
            raise RuntimeError("database unavailable")
        self.logs.append(entry)

    async def update_health(self, webhook_id, last_triggered_at, last_status):
        if self.fail_updates:
            raise RuntimeError("database unavailable")
        self.health[webhook_id] = (last_triggered_at, last_status)


def make_webhook(
    id: str = "wh1",
    workspace_id: str = "W1",
    url: str = "https://hooks.example.com/receive",
    events=("*",),
    secret: Optional[str] = None,
    headers: Optional[dict] = None,
    is_active: bool = True,
) -> Webhook:
    return Webhook(
        id=id,
        workspace_id=workspace_id,
        url=url,
        events=json.dumps(list(events)),
        secret=secret,
        headers=json.dumps(headers or {}),
        is_active=is_active,
    )


@pytest.fixture
def settings() -> Settings:
    return Settings(webhook_resolve_dns=False, webhook_max_concurrency=5)


@pytest.fixture
def subscribers() -> SubscriberSpy:
    return SubscriberSpy()


@pytest_asyncio.fixture
async def http_client(subscribers) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(subscribers), timeout=5.0) as c:
        yield c


@pytest_asyncio.fixture(autouse=True)
async def _setup_db():
    """Create all tables before each test, drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def client(http_client) -> AsyncGenerator[AsyncClient, None]:
    app.state.dispatcher = build_dispatcher(http_client)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.state.dispatcher = None
