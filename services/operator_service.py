"""
Operator Service - persona turns written by a human operator
"""
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from crud.message import MessageRepository
from crud.user import UserRepository
from database_models import Message, SENDER_PERSONA
from personas import get_persona
from services.errors import InvalidPersonaError, UserNotFoundError
from utils.message_payload import encode_body, KIND_TEXT, KIND_IMAGE

logger = logging.getLogger(__name__)


class OperatorService:

    def __init__(self, db: AsyncSession):
        self.db = db
        self.users = UserRepository(db)
        self.messages = MessageRepository(db)

    async def send(
        self,
        user_id: int,
        persona_id: str,
        operator_name: str,
        text: Optional[str] = None,
        image_ref: Optional[str] = None,
    ) -> Message:
        """
        Store a persona-sender message on behalf of an operator.
        Entitlements and the completion API are not involved.

        Raises:
            InvalidPersonaError: Unknown persona id
            UserNotFoundError: Unknown user id
            ValueError: Neither or both of text and image_ref given
        """
        if (text is None) == (image_ref is None):
            raise ValueError("Exactly one of text or image_ref is required")
        if get_persona(persona_id) is None:
            raise InvalidPersonaError(f"Unknown persona: {persona_id}")
        if await self.users.get_user_by_id(user_id) is None:
            raise UserNotFoundError(f"User {user_id} not found")

        body = encode_body(KIND_TEXT, text) if text is not None else encode_body(KIND_IMAGE, image_ref)
        message = await self.messages.append(user_id, persona_id, SENDER_PERSONA, body)
        await self.db.commit()
        logger.info(f"Operator {operator_name} sent message {message.id} to user {user_id} as {persona_id}")
        return message
