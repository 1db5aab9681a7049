"""Webhook subscriptions and their delivery log."""

import json

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text

from hookrelay.database import Base
from hookrelay.models import new_uuid, utcnow

WILDCARD_EVENT = "*"


class Webhook(Base):
    """Workspace-owned HTTP callback subscribed to one or more event types."""

    __tablename__ = "webhooks"

    id = Column(String(36), primary_key=True, default=new_uuid)
    workspace_id = Column(String(36), nullable=False, index=True)
    name = Column(String(200), default="")
    url = Column(String(2048), nullable=False)
    secret = Column(String(200), nullable=True)  # HMAC signing secret
    events = Column(Text, default="[]")  # JSON list of event types, "*" matches all
    headers = Column(Text, default="{}")  # JSON object of extra static headers
    is_active = Column(Boolean, default=True)
    retry_count = Column(Integer, default=3)  # stored only, delivery is single-attempt
    # Health, updated after every delivery attempt
    last_triggered_at = Column(DateTime(timezone=True), nullable=True)
    last_status = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @property
    def event_list(self) -> list[str]:
        events = self.events
        if isinstance(events, str):
            try:
                events = json.loads(events)
            except (json.JSONDecodeError, TypeError):
                events = []
        return [e for e in events or [] if isinstance(e, str)]

    @property
    def header_map(self) -> dict[str, str]:
        headers = self.headers
        if isinstance(headers, str):
            try:
                headers = json.loads(headers)
            except (json.JSONDecodeError, TypeError):
                headers = {}
        if not isinstance(headers, dict):
            return {}
        return {str(k): str(v) for k, v in headers.items()}

    def subscribes_to(self, event_type: str) -> bool:
        events = self.event_list
        return WILDCARD_EVENT in events or event_type in events


class WebhookLog(Base):
    """Append-only record of a single delivery attempt."""

    __tablename__ = "webhook_logs"

    id = Column(String(36), primary_key=True, default=new_uuid)
    webhook_id = Column(String(36), nullable=False, index=True)
    workspace_id = Column(String(36), nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    payload = Column(Text, default="{}")
    response_status = Column(Integer, default=0)  # 0 = call never completed
    response_body = Column(Text, default="")
    duration_ms = Column(Integer, default=0)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
