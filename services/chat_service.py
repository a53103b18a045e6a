"""
Chat Service - per-message orchestration of takeover, entitlement, storage and completion
"""
import enum
import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from crud.message import MessageRepository
from crud.user import UserRepository
from database_models import SENDER_USER, SENDER_PERSONA
from personas import get_persona
from services.completion_service import CompletionService
from services.conversation_service import ConversationAssembler, build_logs
from services.entitlement_service import EntitlementService, EntitlementDecision
from services.errors import InvalidPersonaError, UserNotFoundError, CompletionServiceError
from services.takeover_service import TakeoverService
from utils.message_payload import encode_body, KIND_TEXT

logger = logging.getLogger(__name__)

EMPTY_REPLY_PLACEHOLDER = "(no response)"


class ChatState(str, enum.Enum):
    RECEIVED = "received"
    TAKEOVER_CHECK = "takeover-check"
    ENTITLEMENT_CHECK = "entitlement-check"
    PERSISTED_USER_TURN = "persisted-user-turn"
    COMPLETION_PENDING = "completion-pending"
    PERSISTED_REPLY = "persisted-reply"
    RESPONDED = "responded"
    HANDED_OFF = "handed-off-to-human"
    BLOCKED = "blocked"
    COMPLETION_FAILED = "completion-failed"


@dataclass
class ChatResult:
    state: ChatState
    reply: Optional[str] = None
    decision: Optional[EntitlementDecision] = None
    operator_name: Optional[str] = None
    logs: dict = field(default_factory=dict)

    @property
    def error_kind(self) -> Optional[str]:
        if self.state is ChatState.BLOCKED and self.decision is not None:
            return self.decision.error_kind
        return None


class ChatOrchestrator:
    """
    Handles one inbound chat message.

    received -> takeover-check -> entitlement-check -> persisted-user-turn
    -> completion-pending -> persisted-reply -> responded

    Terminal side exits: handed-off-to-human, blocked (nothing persisted, no
    debit) and completion-failed (user turn kept, no reply).
    """

    def __init__(
        self,
        db: AsyncSession,
        completion: CompletionService,
        assembler: Optional[ConversationAssembler] = None,
        history_limit: Optional[int] = None,
        free_quota: Optional[int] = None,
    ):
        self.db = db
        self.completion = completion
        self.assembler = assembler or ConversationAssembler()
        self.history_limit = settings.history_limit if history_limit is None else history_limit
        self.users = UserRepository(db)
        self.messages = MessageRepository(db)
        self.takeovers = TakeoverService(db)
        self.entitlements = EntitlementService(db, free_quota=free_quota)

    def _transition(self, user_id: int, persona_id: str, state: ChatState) -> ChatState:
        logger.debug(f"chat user={user_id} persona={persona_id} -> {state.value}")
        return state

    async def _refund(self, user_id: int) -> None:
        """Return the credit debited for a failed completion. Failures are logged, not raised."""
        try:
            await self.users.add_credits(user_id, 1)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Failed to refund credit to user {user_id}: {e}", exc_info=True)
            return
        logger.info(f"Refunded credit to user {user_id} after failed completion")

    async def handle_message(
        self,
        user_id: int,
        persona_id: str,
        text: str,
        conversation_id: Optional[str] = None,
    ) -> ChatResult:
        """
        Process one user message and return the outcome.

        Raises:
            InvalidPersonaError: persona id not in the catalog (nothing written)
            UserNotFoundError: user id unknown (nothing written)
            CompletionServiceError: completion call failed; the user turn stays stored
        """
        self._transition(user_id, persona_id, ChatState.RECEIVED)
        persona = get_persona(persona_id)
        if persona is None:
            raise InvalidPersonaError(f"Unknown persona: {persona_id}")

        user = await self.users.get_user_by_id(user_id)
        if user is None:
            raise UserNotFoundError(f"User {user_id} not found")

        body = encode_body(KIND_TEXT, text)

        self._transition(user_id, persona_id, ChatState.TAKEOVER_CHECK)
        taken_over, operator_name = await self.takeovers.is_active(user_id, persona_id)
        if taken_over:
            await self.messages.append(user_id, persona_id, SENDER_USER, body)
            await self.db.commit()
            logger.info(f"Message from user {user_id} to {persona_id} routed to operator {operator_name}")
            return ChatResult(
                state=self._transition(user_id, persona_id, ChatState.HANDED_OFF),
                operator_name=operator_name,
            )

        self._transition(user_id, persona_id, ChatState.ENTITLEMENT_CHECK)
        decision = await self.entitlements.resolve(user)
        if not decision.allowed:
            logger.info(f"Chat blocked for user {user_id}: {decision.value}")
            return ChatResult(
                state=self._transition(user_id, persona_id, ChatState.BLOCKED),
                decision=decision,
            )

        debited = False
        if decision.consumes_credit:
            debited = await self.users.debit_credit(user_id)
            if not debited:
                # Another request spent the last credit between resolve and debit
                await self.db.rollback()
                await self.db.refresh(user)
                decision = await self.entitlements.resolve_exhausted(user)
                logger.info(f"Credit race lost for user {user_id}: {decision.value}")
                return ChatResult(
                    state=self._transition(user_id, persona_id, ChatState.BLOCKED),
                    decision=decision,
                )

        # History is read before the new turn is written so the prompt holds it exactly once
        history = await self.messages.history(user_id, persona_id, limit=self.history_limit)
        await self.messages.append(user_id, persona_id, SENDER_USER, body)
        await self.db.commit()
        self._transition(user_id, persona_id, ChatState.PERSISTED_USER_TURN)

        prompt = self.assembler.build(persona, history, body)
        self._transition(user_id, persona_id, ChatState.COMPLETION_PENDING)
        try:
            raw_reply = await self.completion.complete(prompt)
        except CompletionServiceError:
            self._transition(user_id, persona_id, ChatState.COMPLETION_FAILED)
            if debited:
                await self._refund(user_id)
            raise

        reply = raw_reply.strip() or EMPTY_REPLY_PLACEHOLDER
        await self.messages.append(user_id, persona_id, SENDER_PERSONA, encode_body(KIND_TEXT, reply))
        await self.db.commit()
        self._transition(user_id, persona_id, ChatState.PERSISTED_REPLY)

        logger.info(
            f"Chat reply for user {user_id} persona {persona_id} via {decision.value}"
            + (f" conversation={conversation_id}" if conversation_id else "")
        )
        return ChatResult(
            state=self._transition(user_id, persona_id, ChatState.RESPONDED),
            reply=reply,
            decision=decision,
            logs=build_logs(prompt, reply),
        )
