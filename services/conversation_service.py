"""
Conversation Service - assembles the role-tagged prompt sent to the completion API
"""
from datetime import datetime, timezone
from typing import Iterable, List, Dict

from database_models import Message, SENDER_PERSONA
from personas import Persona
from utils.message_payload import render_for_prompt

ROLE_SYSTEM = "system"
ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"


class ConversationAssembler:
    """
    Builds [system, *history, new user message].

    History arrives already bounded by the message store; nothing is dropped here.
    The new message is the stored body and renders the same way it will once
    it is part of history.
    """

    def build(self, persona: Persona, history: Iterable[Message], new_message: str) -> List[Dict[str, str]]:
        turns = [{"role": ROLE_SYSTEM, "content": persona.system_prompt()}]
        for message in history:
            role = ROLE_ASSISTANT if message.sender == SENDER_PERSONA else ROLE_USER
            turns.append({"role": role, "content": render_for_prompt(message.body)})
        turns.append({"role": ROLE_USER, "content": render_for_prompt(new_message)})
        return turns


def build_logs(messages: List[Dict[str, str]], reply: str) -> dict:
    """Basic request diagnostics returned alongside a reply."""
    return {
        "totalMessages": len(messages),
        "aiPreview": reply[:120],
        "time": datetime.now(timezone.utc).isoformat(),
    }
