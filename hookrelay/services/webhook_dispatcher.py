"""Webhook dispatch service — delivers workspace events to subscribed endpoints with HMAC signing.

Pipeline per trigger: validate → rate-limit → match subscriptions → one
delivery attempt per webhook (bounded fan-out) → record each outcome.
A failing subscriber only ever shows up in the ``failed`` count.
"""

import asyncio
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from hookrelay.config import Settings, get_settings
from hookrelay.models.webhook import Webhook
from hookrelay.services.delivery_recorder import DeliveryRecorder
from hookrelay.services.rate_limiter import RateLimiter
from hookrelay.services.subscription_matcher import SubscriptionMatcher
from hookrelay.services.url_guard import UrlGuard, url_host
from hookrelay.services.webhook_store import WebhookStore

logger = logging.getLogger(__name__)

EVENT_HEADER = "X-Webhook-Event"
SIGNATURE_HEADER = "X-Webhook-Signature"
TEST_EVENT = "test"

# Never taken from a webhook's custom headers (compared lower-cased)
RESERVED_HEADERS = {
    "content-type",
    EVENT_HEADER.lower(),
    SIGNATURE_HEADER.lower(),
    "content-length",
    "transfer-encoding",
    "host",
}


# ── Errors ───────────────────────────────────────────────
class WebhookError(Exception):
    """Base class for errors surfaced to the trigger caller."""


class InvalidTriggerRequest(WebhookError, ValueError):
    pass


class WebhookNotFound(WebhookError):
    pass


class RateLimitExceeded(WebhookError):
    code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, workspace_id: str, limit: int, retry_after: float):
        self.workspace_id = workspace_id
        self.limit = limit
        self.retry_after = retry_after
        super().__init__(f"Rate limit exceeded. Max {limit} webhooks/window.")


# ── Results ──────────────────────────────────────────────
@dataclass
class DeliveryOutcome:
    webhook_id: str
    workspace_id: str
    event_type: str
    payload: Any
    status: int = 0
    response_body: str = ""
    duration_ms: int = 0
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return 200 <= self.status < 300 and self.error is None


@dataclass
class TriggerResult:
    outcomes: list[DeliveryOutcome] = field(default_factory=list)

    @property
    def triggered(self) -> int:
        return len(self.outcomes)

    @property
    def success(self) -> int:
        return sum(1 for o in self.outcomes if o.success)

    @property
    def failed(self) -> int:
        return self.triggered - self.success

    def as_dict(self) -> dict:
        return {"triggered": self.triggered, "success": self.success, "failed": self.failed}


def sign_payload(payload: str, secret: str) -> str:
    """Generate HMAC-SHA256 signature for webhook payload."""
    return hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()


def build_body(event_type: str, data: Any) -> str:
    return json.dumps(
        {
            "event": event_type,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "data": data,
        },
        default=str,
    )


def build_headers(webhook: Webhook, event_type: str, body: str) -> dict[str, str]:
    headers = {k: v for k, v in webhook.header_map.items() if k.lower() not in RESERVED_HEADERS}
    headers["Content-Type"] = "application/json"
    headers[EVENT_HEADER] = event_type
    if webhook.secret:
        headers[SIGNATURE_HEADER] = sign_payload(body, webhook.secret)
    return headers


class WebhookDispatcher:
    def __init__(
        self,
        store: WebhookStore,
        http_client: httpx.AsyncClient,
        rate_limiter: Optional[RateLimiter] = None,
        url_guard: Optional[UrlGuard] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.settings = settings
        self.store = store
        self.http = http_client
        self.rate_limiter = rate_limiter or RateLimiter(
            limit=settings.rate_limit_max_events,
            window_ms=settings.rate_limit_window_ms,
        )
        self.matcher = SubscriptionMatcher(
            store,
            url_guard
            or UrlGuard(
                resolve_dns=settings.webhook_resolve_dns,
                resolve_timeout=settings.webhook_dns_timeout_seconds,
            ),
        )
        self.recorder = DeliveryRecorder(store, settings.response_body_max_chars)
        self._slots = asyncio.Semaphore(max(1, settings.webhook_max_concurrency))

    async def trigger(self, workspace_id: str, event_type: str, data: Any = None) -> TriggerResult:
        """Deliver ``event_type`` to every matching webhook of the workspace."""
        if not workspace_id:
            raise InvalidTriggerRequest("workspace_id is required")
        if not event_type:
            raise InvalidTriggerRequest("event_type is required")

        if not self.rate_limiter.admit(workspace_id):
            retry_after = self.rate_limiter.retry_after(workspace_id)
            logger.warning(f"Rate limit exceeded for workspace={workspace_id}")
            raise RateLimitExceeded(workspace_id, self.rate_limiter.limit, retry_after)

        webhooks = await self.matcher.match(workspace_id, event_type)
        if data is None:
            data = {}
        result = await self._fan_out(webhooks, workspace_id, event_type, data)
        logger.info(
            f"Triggered {result.triggered} webhooks for {event_type}: "
            f"{result.success} success, {result.failed} failed"
        )
        return result

    async def send_test(self, workspace_id: str, webhook_id: str) -> TriggerResult:
        """Send a synthetic ``test`` event to one webhook, skipping event matching."""
        if not workspace_id or not webhook_id:
            raise InvalidTriggerRequest("workspace_id and webhook_id are required")

        webhook = await self.store.find_one(webhook_id, workspace_id)
        if webhook is None:
            raise WebhookNotFound(webhook_id)

        data = {"test": True, "timestamp": datetime.now(timezone.utc).isoformat()}
        targets = [webhook] if await self.matcher.check(webhook) else []
        return await self._fan_out(targets, workspace_id, TEST_EVENT, data)

    async def _fan_out(
        self, webhooks: list[Webhook], workspace_id: str, event_type: str, data: Any
    ) -> TriggerResult:
        if not webhooks:
            return TriggerResult()
        outcomes = await asyncio.gather(
            *(self._deliver_and_record(wh, workspace_id, event_type, data) for wh in webhooks)
        )
        return TriggerResult(outcomes=list(outcomes))

    async def _deliver_and_record(
        self, webhook: Webhook, workspace_id: str, event_type: str, data: Any
    ) -> DeliveryOutcome:
        async with self._slots:
            outcome = await self.deliver(webhook, workspace_id, event_type, data)
        await self.recorder.record(outcome)
        return outcome

    async def deliver(
        self, webhook: Webhook, workspace_id: str, event_type: str, data: Any
    ) -> DeliveryOutcome:
        """Make a single delivery attempt. Never raises for subscriber errors."""
        outcome = DeliveryOutcome(
            webhook_id=webhook.id,
            workspace_id=workspace_id,
            event_type=event_type,
            payload=data,
        )
        error_max = self.settings.error_message_max_chars

        timeout = self.settings.webhook_timeout_seconds
        start = time.monotonic()
        try:
            body = build_body(event_type, data)
            headers = build_headers(webhook, event_type, body)
            status, text = await asyncio.wait_for(
                self._post(webhook.url, body, headers), timeout=timeout
            )
            outcome.status = status
            outcome.response_body = text
            if not 200 <= status < 300:
                outcome.error = f"HTTP {status}: {text[:error_max]}"
        except asyncio.TimeoutError:
            outcome.status = 0
            outcome.error = f"Timed out after {timeout}s"
            logger.error(f"Webhook {webhook.id} ({url_host(webhook.url)}) timed out after {timeout}s")
        except Exception as exc:
            outcome.status = 0
            outcome.error = (str(exc) or type(exc).__name__)[:error_max]
            logger.error(f"Failed to call webhook {webhook.id} ({url_host(webhook.url)}): {outcome.error}")
        outcome.duration_ms = int((time.monotonic() - start) * 1000)
        return outcome

    async def _post(self, url: str, body: str, headers: dict[str, str]) -> tuple[int, str]:
        """POST and read at most ``response_body_max_chars`` of the reply."""
        limit = self.settings.response_body_max_chars
        async with self.http.stream(
            "POST",
            url,
            content=body.encode("utf-8"),
            headers=headers,
            follow_redirects=False,
        ) as resp:
            chunks = []
            size = 0
            async for chunk in resp.aiter_text():
                chunks.append(chunk)
                size += len(chunk)
                if size >= limit:
                    break
            return resp.status_code, "".join(chunks)[:limit]
