"""Webhook management and event dispatch API."""

import json
import time
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from hookrelay.database import get_db
from hookrelay.models.webhook import WILDCARD_EVENT, Webhook, WebhookLog
from hookrelay.services.url_guard import is_blocked_url
from hookrelay.services.webhook_dispatcher import (
    InvalidTriggerRequest,
    RateLimitExceeded,
    WebhookDispatcher,
    WebhookNotFound,
)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


# ── Event Types ──────────────────────────────────────────
VALID_EVENTS = [
    "lead.created",
    "lead.updated",
    "deal.created",
    "deal.stage_changed",
    "deal.won",
    "deal.lost",
    "approval.pending",
    "approval.approved",
    "approval.rejected",
    "agent.completed",
    "agent.error",
    "alert.triggered",
    "report.generated",
]


# ── Schemas ──────────────────────────────────────────────
class WebhookCreate(BaseModel):
    workspace_id: str = Field(min_length=1)
    name: str = ""
    url: str
    secret: Optional[str] = None
    events: list[str] = Field(default_factory=lambda: [WILDCARD_EVENT])
    headers: dict[str, str] = Field(default_factory=dict)
    is_active: bool = True
    retry_count: int = Field(3, ge=0, le=10)


class WebhookUpdate(BaseModel):
    name: Optional[str] = None
    url: Optional[str] = None
    secret: Optional[str] = None
    events: Optional[list[str]] = None
    headers: Optional[dict[str, str]] = None
    is_active: Optional[bool] = None
    retry_count: Optional[int] = Field(None, ge=0, le=10)


class WebhookOut(BaseModel):
    id: str
    workspace_id: str
    name: str
    url: str
    has_secret: bool
    events: list[str]
    headers: dict[str, str]
    is_active: bool
    retry_count: int
    last_triggered_at: Optional[datetime] = None
    last_status: Optional[int] = None
    created_at: datetime

    @classmethod
    def from_model(cls, wh: Webhook):
        return cls(
            id=wh.id,
            workspace_id=wh.workspace_id,
            name=wh.name or "",
            url=wh.url,
            has_secret=bool(wh.secret),
            events=wh.event_list,
            headers=wh.header_map,
            is_active=bool(wh.is_active),
            retry_count=wh.retry_count if wh.retry_count is not None else 3,
            last_triggered_at=wh.last_triggered_at,
            last_status=wh.last_status,
            created_at=wh.created_at,
        )


class WebhookLogOut(BaseModel):
    id: str
    webhook_id: str
    event_type: str
    payload: Any = None
    response_status: Optional[int]
    response_body: Optional[str]
    duration_ms: Optional[int]
    error_message: Optional[str]
    created_at: datetime

    @classmethod
    def from_model(cls, log: WebhookLog):
        try:
            payload = json.loads(log.payload) if log.payload else None
        except (json.JSONDecodeError, TypeError):
            payload = log.payload
        return cls(
            id=log.id,
            webhook_id=log.webhook_id,
            event_type=log.event_type,
            payload=payload,
            response_status=log.response_status,
            response_body=log.response_body,
            duration_ms=log.duration_ms,
            error_message=log.error_message,
            created_at=log.created_at,
        )


# ── Helpers ──────────────────────────────────────────────
def get_dispatcher(request: Request) -> WebhookDispatcher:
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise HTTPException(503, "Webhook dispatcher not ready")
    return dispatcher


def _validate_events(events: list[str]):
    for evt in events:
        if evt != WILDCARD_EVENT and evt not in VALID_EVENTS:
            raise HTTPException(400, f"Invalid event type: {evt}")


def _validate_url(url: str):
    if is_blocked_url(url):
        raise HTTPException(400, "Webhook URL is not allowed")


async def _get_owned(db: AsyncSession, webhook_id: str, workspace_id: str) -> Webhook:
    result = await db.execute(
        select(Webhook).where(Webhook.id == webhook_id, Webhook.workspace_id == workspace_id)
    )
    wh = result.scalar_one_or_none()
    if not wh:
        raise HTTPException(404, "Webhook not found")
    return wh


async def _run_trigger(dispatcher: WebhookDispatcher, params: dict) -> dict:
    try:
        result = await dispatcher.trigger(
            params.get("workspace_id") or "",
            params.get("event_type") or "",
            params.get("data"),
        )
    except InvalidTriggerRequest as e:
        raise HTTPException(400, str(e))
    except RateLimitExceeded as e:
        raise HTTPException(
            429,
            detail={"error": e.code, "message": str(e), "retry_after": e.retry_after},
            headers={"Retry-After": str(max(1, int(e.retry_after + 0.999)))},
        )
    return result.as_dict()


async def _run_test(dispatcher: WebhookDispatcher, workspace_id: str, webhook_id: str):
    try:
        return await dispatcher.send_test(workspace_id, webhook_id)
    except InvalidTriggerRequest as e:
        raise HTTPException(400, str(e))
    except WebhookNotFound:
        raise HTTPException(404, "Webhook not found")


# ── Dispatch endpoints ───────────────────────────────────
@router.post("/actions")
async def run_action(
    params: dict = Body(...),
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
):
    """Single entry point for event producers: ping, trigger or test."""
    action = params.get("action")

    if action == "ping":
        return {"ok": True, "timestamp": int(time.time() * 1000)}
    if action == "trigger":
        return await _run_trigger(dispatcher, params)
    if action == "test":
        result = await _run_test(
            dispatcher, params.get("workspace_id") or "", params.get("webhook_id") or ""
        )
        return result.as_dict()
    raise HTTPException(400, "Invalid action")


@router.get("/events", response_model=list[str])
async def list_event_types():
    """List all available webhook event types."""
    return VALID_EVENTS


@router.post("/{webhook_id}/test", status_code=200)
async def test_webhook(
    webhook_id: str,
    workspace_id: str = Query(..., min_length=1),
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
):
    """Send a test delivery to one webhook."""
    result = await _run_test(dispatcher, workspace_id, webhook_id)
    body = result.as_dict()
    if result.outcomes:
        outcome = result.outcomes[0]
        body["response_status"] = outcome.status
        body["duration_ms"] = outcome.duration_ms
        body["error"] = outcome.error
    return body


# ── Management endpoints ─────────────────────────────────
@router.post("/", response_model=WebhookOut, status_code=201)
async def create_webhook(data: WebhookCreate, db: AsyncSession = Depends(get_db)):
    _validate_events(data.events)
    _validate_url(data.url)

    wh = Webhook(
        workspace_id=data.workspace_id,
        name=data.name,
        url=data.url,
        secret=data.secret or None,
        events=json.dumps(data.events),
        headers=json.dumps(data.headers),
        is_active=data.is_active,
        retry_count=data.retry_count,
    )
    db.add(wh)
    await db.commit()
    await db.refresh(wh)
    return WebhookOut.from_model(wh)


@router.get("/", response_model=list[WebhookOut])
async def list_webhooks(
    workspace_id: str = Query(..., min_length=1),
    is_active: Optional[bool] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    stmt = select(Webhook).where(Webhook.workspace_id == workspace_id)
    if is_active is not None:
        stmt = stmt.where(Webhook.is_active == is_active)
    stmt = stmt.order_by(Webhook.created_at.desc()).offset(skip).limit(limit)
    result = await db.execute(stmt)
    return [WebhookOut.from_model(wh) for wh in result.scalars().all()]


@router.get("/{webhook_id}", response_model=WebhookOut)
async def get_webhook(
    webhook_id: str,
    workspace_id: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
):
    return WebhookOut.from_model(await _get_owned(db, webhook_id, workspace_id))


@router.patch("/{webhook_id}", response_model=WebhookOut)
async def update_webhook(
    webhook_id: str,
    data: WebhookUpdate,
    workspace_id: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
):
    wh = await _get_owned(db, webhook_id, workspace_id)

    updates = data.model_dump(exclude_unset=True)
    if "events" in updates:
        _validate_events(updates["events"] or [])
        updates["events"] = json.dumps(updates["events"] or [])
    if "headers" in updates:
        updates["headers"] = json.dumps(updates["headers"] or {})
    if "url" in updates:
        _validate_url(updates["url"] or "")
    if "secret" in updates:
        updates["secret"] = updates["secret"] or None

    for key, val in updates.items():
        setattr(wh, key, val)

    await db.commit()
    await db.refresh(wh)
    return WebhookOut.from_model(wh)


@router.delete("/{webhook_id}", status_code=204)
async def delete_webhook(
    webhook_id: str,
    workspace_id: str = Query(..., min_length=1),
    db: AsyncSession = Depends(get_db),
):
    wh = await _get_owned(db, webhook_id, workspace_id)
    await db.delete(wh)
    await db.commit()


@router.get("/{webhook_id}/logs", response_model=list[WebhookLogOut])
async def list_logs(
    webhook_id: str,
    workspace_id: str = Query(..., min_length=1),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    """List delivery history for a webhook."""
    await _get_owned(db, webhook_id, workspace_id)
    stmt = (
        select(WebhookLog)
        .where(WebhookLog.webhook_id == webhook_id, WebhookLog.workspace_id == workspace_id)
        .order_by(WebhookLog.created_at.desc())
        .offset(skip)
        .limit(limit)
    )
    result = await db.execute(stmt)
    return [WebhookLogOut.from_model(log) for log in result.scalars().all()]
