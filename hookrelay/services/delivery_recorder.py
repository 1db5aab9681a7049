"""Persist delivery attempts and webhook health."""

import json
import logging

from hookrelay.models import utcnow
from hookrelay.models.webhook import WebhookLog
from hookrelay.services.webhook_store import WebhookStore

logger = logging.getLogger(__name__)


class DeliveryRecorder:
    """Write one log row per attempt, then refresh the webhook's health fields.

    The HTTP delivery has already happened by the time this runs, so storage
    failures are logged and swallowed instead of propagated.
    """

    def __init__(self, store: WebhookStore, response_body_max_chars: int = 5000):
        self.store = store
        self.response_body_max_chars = response_body_max_chars

    async def record(self, outcome) -> None:
        try:
            entry = WebhookLog(
                webhook_id=outcome.webhook_id,
                workspace_id=outcome.workspace_id,
                event_type=outcome.event_type,
                payload=json.dumps(outcome.payload, default=str),
                response_status=outcome.status,
                response_body=(outcome.response_body or "")[: self.response_body_max_chars],
                duration_ms=outcome.duration_ms,
                error_message=outcome.error or None,
                created_at=utcnow(),
            )
            await self.store.insert_log(entry)
        except Exception:
            logger.exception(f"Failed to write delivery log for webhook {outcome.webhook_id}")

        try:
            await self.store.update_health(outcome.webhook_id, utcnow(), outcome.status)
        except Exception:
            logger.exception(f"Failed to update health for webhook {outcome.webhook_id}")
