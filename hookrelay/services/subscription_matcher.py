"""Select which of a workspace's webhooks receive an event."""

import asyncio
import logging

from hookrelay.models.webhook import Webhook
from hookrelay.services.url_guard import UrlGuard, url_host
from hookrelay.services.webhook_store import WebhookStore

logger = logging.getLogger(__name__)


class SubscriptionMatcher:
    def __init__(self, store: WebhookStore, url_guard: UrlGuard):
        self.store = store
        self.url_guard = url_guard

    async def check(self, webhook: Webhook) -> bool:
        """Active and URL-safe, regardless of event subscription."""
        if not webhook.is_active:
            return False
        if not await self.url_guard.is_safe(webhook.url):
            # Host only, never the path or query
            logger.warning(
                f"Blocked SSRF-vulnerable webhook URL: host={url_host(webhook.url)} (webhook={webhook.id})"
            )
            return False
        return True

    async def match(self, workspace_id: str, event_type: str) -> list[Webhook]:
        webhooks = await self.store.find_active(workspace_id)
        if not webhooks:
            logger.info(f"No active webhooks for workspace={workspace_id} event={event_type}")
            return []

        candidates = [
            wh for wh in webhooks if wh.workspace_id == workspace_id and wh.subscribes_to(event_type)
        ]
        # Checks may resolve DNS; run them concurrently
        safe = await asyncio.gather(*(self.check(wh) for wh in candidates))
        return [wh for wh, ok in zip(candidates, safe) if ok]
