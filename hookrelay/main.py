"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from hookrelay.api import webhooks
from hookrelay.config import get_settings
from hookrelay.database import async_session, create_tables
from hookrelay.services.webhook_dispatcher import WebhookDispatcher
from hookrelay.services.webhook_store import SqlWebhookStore

settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def build_dispatcher(http_client: httpx.AsyncClient) -> WebhookDispatcher:
    return WebhookDispatcher(
        store=SqlWebhookStore(async_session),
        http_client=http_client,
        settings=settings,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    await create_tables()

    # Shared outbound client; redirects are never followed
    async with httpx.AsyncClient(
        timeout=settings.webhook_timeout_seconds,
        follow_redirects=False,
    ) as client:
        app.state.dispatcher = build_dispatcher(client)
        logger.info(f"{settings.app_name} started ({settings.app_env})")
        yield
        app.state.dispatcher = None


app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    description="Outbound webhook delivery for workspace events",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhooks.router, prefix="/api/v1")


@app.get("/health")
async def health():
    return {"status": "ok", "app": settings.app_name}
