"""Persistence collaborator for webhook delivery.

The dispatcher only needs four operations, so it depends on the
``WebhookStore`` protocol rather than on a session. ``SqlWebhookStore`` opens
a short-lived session per call, which keeps concurrent deliveries from
sharing one ``AsyncSession``.
"""

from datetime import datetime
from typing import Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hookrelay.models.webhook import Webhook, WebhookLog


class WebhookStore(Protocol):
    async def find_active(self, workspace_id: str) -> list[Webhook]: ...

    async def find_one(self, webhook_id: str, workspace_id: str) -> Optional[Webhook]: ...

    async def insert_log(self, entry: WebhookLog) -> None: ...

    async def update_health(
        self, webhook_id: str, last_triggered_at: datetime, last_status: int
    ) -> None: ...


class SqlWebhookStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def find_active(self, workspace_id: str) -> list[Webhook]:
        stmt = select(Webhook).where(
            Webhook.workspace_id == workspace_id,
            Webhook.is_active.is_(True),
        )
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def find_one(self, webhook_id: str, workspace_id: str) -> Optional[Webhook]:
        stmt = select(Webhook).where(
            Webhook.id == webhook_id,
            Webhook.workspace_id == workspace_id,
        )
        async with self._session_factory() as db:
            result = await db.execute(stmt)
            return result.scalar_one_or_none()

    async def insert_log(self, entry: WebhookLog) -> None:
        async with self._session_factory() as db:
            db.add(entry)
            await db.commit()

    async def update_health(
        self, webhook_id: str, last_triggered_at: datetime, last_status: int
    ) -> None:
        stmt = (
            update(Webhook)
            .where(Webhook.id == webhook_id)
            .values(last_triggered_at=last_triggered_at, last_status=last_status)
        )
        async with self._session_factory() as db:
            await db.execute(stmt)
            await db.commit()
