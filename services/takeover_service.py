"""
Takeover Service - tracks which conversations a human operator currently owns
"""
import logging
from typing import Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from crud.takeover import TakeoverRepository
from database_models import TakeoverRecord

logger = logging.getLogger(__name__)


class TakeoverService:
    """
    While a takeover is active for a (user, persona) pair, the chat flow stores
    the user's messages and leaves replies to the operator.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.repo = TakeoverRepository(db)

    async def is_active(self, user_id: int, persona_id: str) -> Tuple[bool, Optional[str]]:
        """
        Returns:
            (active, operator_name) for the pair
        """
        record = await self.repo.get_active(user_id, persona_id)
        if record is None:
            return False, None
        return True, record.operator_name

    async def start(self, user_id: int, persona_id: str, operator_name: str) -> TakeoverRecord:
        """
        Hand the pair to an operator, replacing any operator already holding it.

        Deactivation and activation commit together, and the partial unique
        index rejects a second active row if a concurrent start slips in
        between; in that case the rotation is retried once.
        """
        for attempt in range(2):
            try:
                closed = await self.repo.deactivate(user_id, persona_id)
                record = await self.repo.create_active(user_id, persona_id, operator_name)
                await self.db.commit()
            except IntegrityError:
                await self.db.rollback()
                if attempt == 1:
                    raise
                logger.warning(f"Concurrent takeover start for user {user_id}/{persona_id}, retrying")
                continue
            logger.info(
                f"Takeover started: user={user_id} persona={persona_id} operator={operator_name} "
                f"(replaced {closed})"
            )
            return record

    async def stop(self, user_id: int, persona_id: str) -> bool:
        """End the active takeover if there is one. Returns whether one was ended."""
        closed = await self.repo.deactivate(user_id, persona_id)
        await self.db.commit()
        if closed:
            logger.info(f"Takeover stopped: user={user_id} persona={persona_id}")
        return closed > 0
