"""
WebhookEventRepository - ledger of Stripe events already applied
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database_models import ProcessedWebhookEvent


class WebhookEventRepository:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def is_processed(self, event_id: str) -> bool:
        result = await self.db.execute(
            select(ProcessedWebhookEvent.event_id).where(ProcessedWebhookEvent.event_id == event_id)
        )
        return result.scalar_one_or_none() is not None

    async def mark_processed(self, event_id: str, event_type: str) -> None:
        """
        Record the event id. Flushes immediately so a concurrent duplicate
        delivery fails on the primary key before any side effect is applied.
        """
        self.db.add(ProcessedWebhookEvent(event_id=event_id, event_type=event_type))
        await self.db.flush()
