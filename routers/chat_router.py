"""
Chat Router - persona chat, transcript and catalog endpoints
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user
from backend.utils.responses import success_response, error_response, chat_error_response
from crud.message import MessageRepository
from database import get_db
from personas import PERSONAS, get_persona
from services.chat_service import ChatOrchestrator, ChatState
from services.completion_service import CompletionService, get_completion_service
from services.errors import ChatError
from utils.message_payload import decode_body
from utils.security_utils import sanitize_message_text
from utils.shared_utils import log_endpoint_event

logger = logging.getLogger(__name__)

chat_router = APIRouter(prefix="/api", tags=["chat"])

MAX_HISTORY_PAGE = 500


class ChatRequest(BaseModel):
    persona_id: str = Field(..., description="Catalog id of the persona")
    message: str = Field(..., description="User message text")
    conversation_id: Optional[str] = Field(default=None, description="Client-side conversation handle")


def serialize_message(message) -> dict:
    kind, value = decode_body(message.body)
    return {
        "id": message.id,
        "sender": message.sender,
        "kind": kind,
        "text": value,
        "timestamp": message.created_at.isoformat(),
    }


@chat_router.post("/chat")
async def chat(
    request: ChatRequest,
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    completion: CompletionService = Depends(get_completion_service),
):
    """Send a message to a persona and get its reply"""
    user_id = current_user["user_id"]
    try:
        text = sanitize_message_text(request.message)
    except ValueError as e:
        return error_response("validation-error", status=400, message=str(e))

    orchestrator = ChatOrchestrator(db, completion)
    try:
        result = await orchestrator.handle_message(
            user_id, request.persona_id, text, conversation_id=request.conversation_id
        )
    except ChatError as e:
        log_endpoint_event("/api/chat", user_id, e.error_kind, {"persona_id": request.persona_id})
        return chat_error_response(e)

    if result.state is ChatState.HANDED_OFF:
        log_endpoint_event("/api/chat", user_id, "handed-off", {"persona_id": request.persona_id})
        return success_response(
            data={"status": "handed-off-to-human", "reply": None, "operator": result.operator_name},
            message="A team member will reply shortly",
            status=202,
        )

    if result.state is ChatState.BLOCKED:
        log_endpoint_event("/api/chat", user_id, result.error_kind, {"persona_id": request.persona_id})
        return error_response(
            result.error_kind,
            status=402,
            message="Upgrade required to keep chatting",
            data={"decision": result.decision.value},
        )

    log_endpoint_event("/api/chat", user_id, "success", {
        "persona_id": request.persona_id,
        "decision": result.decision.value,
    })
    return success_response(
        data={
            "reply": result.reply,
            "decision": result.decision.value,
            "logs": result.logs,
        },
        message="Reply generated",
    )


@chat_router.get("/messages/{persona_id}")
async def get_messages(
    persona_id: str,
    limit: Optional[int] = Query(default=None, ge=1, le=MAX_HISTORY_PAGE),
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Transcript with one persona, oldest first"""
    if get_persona(persona_id) is None:
        return error_response("invalid-persona", status=400, message="Unknown persona")

    messages = await MessageRepository(db).history(current_user["user_id"], persona_id, limit=limit)
    return success_response(data={
        "persona_id": persona_id,
        "messages": [serialize_message(m) for m in messages],
    })


@chat_router.get("/chats")
async def list_chats(
    current_user: dict = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Conversations the user has started, most recent first"""
    conversations = await MessageRepository(db).conversations(current_user["user_id"])
    for conversation in conversations:
        persona = get_persona(conversation["persona_id"])
        conversation["persona_name"] = persona.name if persona else None
    return success_response(data={"chats": conversations})


@chat_router.get("/personas")
async def list_personas():
    """Public persona catalog"""
    return success_response(data={"personas": [p.public_view() for p in PERSONAS.values()]})
