"""
Operator Router - human takeover and operator-authored persona messages
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from auth import require_operator
from backend.utils.responses import success_response, error_response, chat_error_response
from crud.message import MessageRepository
from crud.user import UserRepository
from database import get_db
from personas import get_persona
from routers.chat_router import serialize_message, MAX_HISTORY_PAGE
from services.errors import ChatError
from services.operator_service import OperatorService
from services.takeover_service import TakeoverService
from utils.security_utils import sanitize_message_text
from utils.shared_utils import log_endpoint_event

logger = logging.getLogger(__name__)

operator_router = APIRouter(prefix="/api/operator", tags=["operator"])


class OperatorMessageRequest(BaseModel):
    user_id: int
    persona_id: str
    text: Optional[str] = None
    image_ref: Optional[str] = Field(default=None, description="Reference to an uploaded image")


class TakeoverStartRequest(BaseModel):
    user_id: int
    persona_id: str
    operator_name: Optional[str] = None


class TakeoverStopRequest(BaseModel):
    user_id: int
    persona_id: str


async def _check_pair(db: AsyncSession, user_id: int, persona_id: str):
    if get_persona(persona_id) is None:
        return error_response("invalid-persona", status=400, message="Unknown persona")
    if await UserRepository(db).get_user_by_id(user_id) is None:
        return error_response("not-found", status=404, message="User not found")
    return None


@operator_router.post("/messages")
async def send_operator_message(
    request: OperatorMessageRequest,
    operator: dict = Depends(require_operator),
    db: AsyncSession = Depends(get_db),
):
    """Write a persona turn as the operator, bypassing entitlements and the model"""
    text = request.text
    if text is not None:
        try:
            text = sanitize_message_text(text)
        except ValueError as e:
            return error_response("validation-error", status=400, message=str(e))
    if (text is None) == (request.image_ref is None):
        return error_response("validation-error", status=400, message="Provide either text or image_ref")

    try:
        message = await OperatorService(db).send(
            request.user_id,
            request.persona_id,
            operator["operator_name"],
            text=text,
            image_ref=request.image_ref,
        )
    except ChatError as e:
        return chat_error_response(e)

    log_endpoint_event("/api/operator/messages", request.user_id, "success", {
        "persona_id": request.persona_id,
        "operator": operator["operator_name"],
    })
    return success_response(data={"message": serialize_message(message)}, message="Message sent")


@operator_router.post("/takeover/start")
async def start_takeover(
    request: TakeoverStartRequest,
    operator: dict = Depends(require_operator),
    db: AsyncSession = Depends(get_db),
):
    """Give a conversation to a human operator"""
    invalid = await _check_pair(db, request.user_id, request.persona_id)
    if invalid is not None:
        return invalid

    operator_name = request.operator_name or operator["operator_name"]
    record = await TakeoverService(db).start(request.user_id, request.persona_id, operator_name)
    log_endpoint_event("/api/operator/takeover/start", request.user_id, "success", {
        "persona_id": request.persona_id,
        "operator": operator_name,
    })
    return success_response(
        data={
            "active": True,
            "operator_name": record.operator_name,
            "started_at": record.started_at.isoformat(),
        },
        message="Takeover started",
    )


@operator_router.post("/takeover/stop")
async def stop_takeover(
    request: TakeoverStopRequest,
    operator: dict = Depends(require_operator),
    db: AsyncSession = Depends(get_db),
):
    """Return a conversation to the automated persona"""
    stopped = await TakeoverService(db).stop(request.user_id, request.persona_id)
    log_endpoint_event("/api/operator/takeover/stop", request.user_id, "success", {
        "persona_id": request.persona_id,
        "stopped": stopped,
    })
    return success_response(data={"active": False, "stopped": stopped}, message="Takeover stopped")


@operator_router.get("/takeover/{user_id}/{persona_id}")
async def get_takeover(
    user_id: int,
    persona_id: str,
    operator: dict = Depends(require_operator),
    db: AsyncSession = Depends(get_db),
):
    active, operator_name = await TakeoverService(db).is_active(user_id, persona_id)
    return success_response(data={"active": active, "operator_name": operator_name})


@operator_router.get("/customers")
async def list_customers(
    operator: dict = Depends(require_operator),
    db: AsyncSession = Depends(get_db),
):
    """Customers with their balances"""
    users = await UserRepository(db).list_users()
    return success_response(data={"customers": [
        {
            "id": user.id,
            "email": user.email,
            "credits": user.credits,
            "lifetime_access": user.lifetime_access,
        }
        for user in users
    ]})


@operator_router.get("/conversations/{user_id}/{persona_id}")
async def get_conversation(
    user_id: int,
    persona_id: str,
    limit: Optional[int] = Query(default=None, ge=1, le=MAX_HISTORY_PAGE),
    operator: dict = Depends(require_operator),
    db: AsyncSession = Depends(get_db),
):
    """Transcript of a customer's conversation, for operators replying by hand"""
    invalid = await _check_pair(db, user_id, persona_id)
    if invalid is not None:
        return invalid

    messages = await MessageRepository(db).history(user_id, persona_id, limit=limit)
    active, operator_name = await TakeoverService(db).is_active(user_id, persona_id)
    return success_response(data={
        "user_id": user_id,
        "persona_id": persona_id,
        "takeover": {"active": active, "operator_name": operator_name},
        "messages": [serialize_message(m) for m in messages],
    })
