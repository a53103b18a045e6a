"""
TakeoverRepository - operator ownership records per (user, persona) pair
"""

from datetime import datetime
from typing import Optional
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from database_models import TakeoverRecord


class TakeoverRepository:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_active(self, user_id: int, persona_id: str) -> Optional[TakeoverRecord]:
        result = await self.db.execute(
            select(TakeoverRecord).where(
                TakeoverRecord.user_id == user_id,
                TakeoverRecord.persona_id == persona_id,
                TakeoverRecord.is_active.is_(True),
            )
        )
        return result.scalar_one_or_none()

    async def deactivate(self, user_id: int, persona_id: str) -> int:
        """Close every active record for the pair. Returns how many were closed."""
        result = await self.db.execute(
            update(TakeoverRecord)
            .where(
                TakeoverRecord.user_id == user_id,
                TakeoverRecord.persona_id == persona_id,
                TakeoverRecord.is_active.is_(True),
            )
            .values(is_active=False, ended_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def create_active(self, user_id: int, persona_id: str, operator_name: str) -> TakeoverRecord:
        record = TakeoverRecord(
            user_id=user_id,
            persona_id=persona_id,
            operator_name=operator_name,
            is_active=True,
        )
        self.db.add(record)
        await self.db.flush()
        await self.db.refresh(record)
        return record
