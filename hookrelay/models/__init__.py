"""SQLAlchemy models — portable across SQLite and PostgreSQL."""

import uuid
from datetime import datetime, timezone


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


from hookrelay.models.webhook import Webhook, WebhookLog  # noqa: E402

__all__ = ["Webhook", "WebhookLog", "new_uuid", "utcnow"]
