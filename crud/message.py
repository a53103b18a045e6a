"""
MessageRepository - append-only transcript storage per (user, persona) pair
"""

from typing import List, Optional
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from database_models import Message, SENDER_USER, SENDER_PERSONA

SENDERS = (SENDER_USER, SENDER_PERSONA)


class MessageRepository:
    """
    Repository for chat messages.

    Append-only: a message is immutable once written and its id is its
    position in the pair's order.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def append(self, user_id: int, persona_id: str, sender: str, body: str) -> Message:
        """
        Append a message to the (user, persona) transcript.

        Args:
            user_id: Owner of the conversation
            persona_id: Persona the conversation is with
            sender: "user" or "persona"
            body: Message text, possibly carrying a typed-payload prefix

        Returns:
            The flushed Message with its id assigned
        """
        if sender not in SENDERS:
            raise ValueError(f"Unknown sender kind: {sender}")

        message = Message(
            user_id=user_id,
            persona_id=persona_id,
            sender=sender,
            body=body,
        )
        self.db.add(message)
        await self.db.flush()
        await self.db.refresh(message)
        return message

    async def history(self, user_id: int, persona_id: str, limit: Optional[int] = None) -> List[Message]:
        """
        Messages for the pair, oldest first.

        With a limit, only the most recent `limit` messages are returned (still
        oldest first), which keeps completion context bounded.
        """
        stmt = select(Message).where(
            Message.user_id == user_id,
            Message.persona_id == persona_id,
        )
        if limit is None:
            result = await self.db.execute(stmt.order_by(Message.id.asc()))
            return list(result.scalars().all())

        if limit <= 0:
            return []
        result = await self.db.execute(stmt.order_by(Message.id.desc()).limit(limit))
        return list(reversed(result.scalars().all()))

    async def count_user_turns(self, user_id: int) -> int:
        """User-sent messages across every persona (the free quota is global per user)."""
        result = await self.db.execute(
            select(func.count(Message.id)).where(
                Message.user_id == user_id,
                Message.sender == SENDER_USER,
            )
        )
        return result.scalar_one()

    async def conversations(self, user_id: int) -> List[dict]:
        """Personas this user has talked to, most recent conversation first."""
        result = await self.db.execute(
            select(
                Message.persona_id,
                func.count(Message.id),
                func.max(Message.id),
                func.max(Message.created_at),
            )
            .where(Message.user_id == user_id)
            .group_by(Message.persona_id)
            .order_by(func.max(Message.id).desc())
        )
        return [
            {
                "persona_id": persona_id,
                "message_count": count,
                "last_message_at": last_at.isoformat() if last_at else None,
            }
            for persona_id, count, _last_id, last_at in result.all()
        ]
