"""
Tests for ChatOrchestrator: the per-message flow through takeover, entitlement,
storage and completion.
"""
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from crud.message import MessageRepository
from crud.user import UserRepository
from database_models import SENDER_USER, SENDER_PERSONA
from services.chat_service import ChatOrchestrator, ChatState, EMPTY_REPLY_PLACEHOLDER
from services.entitlement_service import EntitlementDecision
from services.errors import CompletionServiceError, InvalidPersonaError, UserNotFoundError
from services.takeover_service import TakeoverService
from utils.message_payload import decode_body, KIND_TEXT


async def _send(session_factory, completion, user_id, persona_id, text, **kwargs):
    async with session_factory() as session:
        orchestrator = ChatOrchestrator(session, completion, **kwargs)
        return await orchestrator.handle_message(user_id, persona_id, text)


async def _credits(session_factory, user_id):
    async with session_factory() as session:
        return await UserRepository(session).get_credits(user_id)


async def _history(session_factory, user_id, persona_id):
    async with session_factory() as session:
        return await MessageRepository(session).history(user_id, persona_id)


@pytest.mark.asyncio
async def test_first_message_gets_persona_reply(session_factory, make_user, fake_completion):
    """
    A new user with credits says hello to Moses: the reply comes back, both
    turns are stored in order, and the free turn leaves credits untouched.
    """
    user_id = await make_user(credits=10)

    result = await _send(session_factory, fake_completion, user_id, "moses", "Hello")

    assert result.state is ChatState.RESPONDED
    assert result.reply == fake_completion.reply
    assert result.decision is EntitlementDecision.ALLOWED_FREE
    assert result.logs["totalMessages"] == 2

    history = await _history(session_factory, user_id, "moses")
    assert [(m.sender, m.body) for m in history] == [
        (SENDER_USER, "Hello"),
        (SENDER_PERSONA, fake_completion.reply),
    ]
    assert await _credits(session_factory, user_id) == 10

    prompt = fake_completion.calls[0]
    assert prompt[0]["role"] == "system"
    assert "Moses" in prompt[0]["content"]
    assert prompt[1:] == [{"role": "user", "content": "Hello"}]


@pytest.mark.asyncio
async def test_quota_exhausted_blocks_without_side_effects(
    session_factory, make_user, seed_turns, fake_completion
):
    """A blocked message is not stored, not debited and never reaches the model."""
    user_id = await make_user(credits=0)
    await seed_turns(user_id, "moses", 5)

    result = await _send(session_factory, fake_completion, user_id, "moses", "One more?")

    assert result.state is ChatState.BLOCKED
    assert result.decision is EntitlementDecision.BLOCKED_FREE_QUOTA_EXCEEDED
    assert result.error_kind == "free-quota-exceeded"
    assert fake_completion.calls == []
    assert len(await _history(session_factory, user_id, "moses")) == 5


@pytest.mark.asyncio
async def test_paid_user_out_of_credits_gets_no_credits(
    session_factory, make_user, seed_turns, fake_completion
):
    user_id = await make_user(credits=0, stripe_customer_id="cus_paid")
    await seed_turns(user_id, "elijah", 5)

    result = await _send(session_factory, fake_completion, user_id, "elijah", "Hello?")

    assert result.state is ChatState.BLOCKED
    assert result.error_kind == "no-credits"


@pytest.mark.asyncio
async def test_message_past_free_quota_debits_one_credit(
    session_factory, make_user, seed_turns, fake_completion
):
    user_id = await make_user(credits=3)
    await seed_turns(user_id, "solomon", 5)

    result = await _send(session_factory, fake_completion, user_id, "solomon", "Teach me wisdom")

    assert result.state is ChatState.RESPONDED
    assert result.decision is EntitlementDecision.ALLOWED_VIA_CREDIT
    assert await _credits(session_factory, user_id) == 2


@pytest.mark.asyncio
async def test_lifetime_user_is_never_debited(session_factory, make_user, seed_turns, fake_completion):
    user_id = await make_user(credits=3, lifetime_access=True)
    await seed_turns(user_id, "paul", 12)

    result = await _send(session_factory, fake_completion, user_id, "paul", "Grace and peace")

    assert result.decision is EntitlementDecision.ALLOWED_VIA_LIFETIME
    assert await _credits(session_factory, user_id) == 3


@pytest.mark.asyncio
async def test_completion_failure_keeps_user_turn_and_refunds_credit(
    session_factory, make_user, seed_turns, fake_completion
):
    """
    When the model call fails the user's message stays in the transcript, no
    reply is stored, and the credit taken for the attempt is given back.
    """
    user_id = await make_user(credits=3)
    await seed_turns(user_id, "david", 5)
    fake_completion.error = CompletionServiceError("upstream timeout")

    with pytest.raises(CompletionServiceError):
        await _send(session_factory, fake_completion, user_id, "david", "Are you there?")

    history = await _history(session_factory, user_id, "david")
    assert len(history) == 6
    assert history[-1].sender == SENDER_USER
    assert history[-1].body == "Are you there?"
    assert await _credits(session_factory, user_id) == 3


@pytest.mark.asyncio
async def test_empty_reply_is_stored_as_placeholder(session_factory, make_user, fake_completion):
    user_id = await make_user()
    fake_completion.reply = "   "

    result = await _send(session_factory, fake_completion, user_id, "ruth", "Hello")

    assert result.reply == EMPTY_REPLY_PLACEHOLDER
    history = await _history(session_factory, user_id, "ruth")
    assert history[-1].body == EMPTY_REPLY_PLACEHOLDER


@pytest.mark.asyncio
async def test_takeover_hands_message_to_operator(
    session_factory, make_user, seed_turns, fake_completion
):
    """
    During a takeover the message is stored for the operator even when the
    user has no entitlement, and the model is not called.
    """
    user_id = await make_user(credits=0)
    await seed_turns(user_id, "esther", 5)
    async with session_factory() as session:
        await TakeoverService(session).start(user_id, "esther", "Grace")

    result = await _send(session_factory, fake_completion, user_id, "esther", "Is anyone there?")

    assert result.state is ChatState.HANDED_OFF
    assert result.operator_name == "Grace"
    assert result.reply is None
    assert fake_completion.calls == []
    history = await _history(session_factory, user_id, "esther")
    assert history[-1].body == "Is anyone there?"
    assert await _credits(session_factory, user_id) == 0


@pytest.mark.asyncio
async def test_unknown_persona_is_rejected_before_any_write(session_factory, make_user, fake_completion):
    user_id = await make_user(credits=5)

    with pytest.raises(InvalidPersonaError):
        await _send(session_factory, fake_completion, user_id, "goliath", "Hello")

    assert await _history(session_factory, user_id, "goliath") == []
    assert fake_completion.calls == []


@pytest.mark.asyncio
async def test_unknown_user_is_rejected(session_factory, fake_completion):
    with pytest.raises(UserNotFoundError):
        await _send(session_factory, fake_completion, 999, "moses", "Hello")


@pytest.mark.asyncio
async def test_prompt_history_is_bounded_and_excludes_new_turn(
    session_factory, make_user, seed_turns, fake_completion
):
    user_id = await make_user(lifetime_access=True)
    await seed_turns(user_id, "john", 10)

    await _send(session_factory, fake_completion, user_id, "john", "Newest", history_limit=4)

    prompt = fake_completion.calls[0]
    assert len(prompt) == 1 + 4 + 1
    assert [turn["content"] for turn in prompt[1:5]] == [f"user message {i}" for i in range(6, 10)]
    assert prompt[-1] == {"role": "user", "content": "Newest"}
    assert sum(1 for turn in prompt if turn["content"] == "Newest") == 1


@pytest.mark.asyncio
async def test_typed_payloads_are_rendered_for_the_model(session_factory, make_user, fake_completion):
    user_id = await make_user()
    async with session_factory() as session:
        repo = MessageRepository(session)
        await repo.append(user_id, "mary", SENDER_PERSONA, "IMG::uploads/lilies.png")
        await repo.append(user_id, "mary", SENDER_USER, "GIFT::rose")
        await session.commit()

    await _send(session_factory, fake_completion, user_id, "mary", "Thank you")

    prompt = fake_completion.calls[0]
    assert prompt[1] == {"role": "assistant", "content": "[Image shared]"}
    assert prompt[2] == {"role": "user", "content": "[Gift sent: rose]"}


@pytest.mark.asyncio
async def test_text_with_payload_prefix_stays_text(session_factory, make_user, fake_completion):
    """
    A user who types something that looks like an image payload sends plain
    text: it is stored as text and the model sees the same words on this turn
    and on every later one.
    """
    user_id = await make_user()
    typed = "IMG::https://evil.example/x.png"

    await _send(session_factory, fake_completion, user_id, "moses", typed)
    await _send(session_factory, fake_completion, user_id, "moses", "And another thing")

    first_prompt, second_prompt = fake_completion.calls
    assert first_prompt[-1] == {"role": "user", "content": typed}
    assert second_prompt[1] == first_prompt[-1]

    history = await _history(session_factory, user_id, "moses")
    assert decode_body(history[0].body) == (KIND_TEXT, typed)


@pytest.mark.asyncio
async def test_reply_with_payload_prefix_is_stored_as_text(session_factory, make_user, fake_completion):
    user_id = await make_user()
    fake_completion.reply = "GIFT::a blessing"

    result = await _send(session_factory, fake_completion, user_id, "ruth", "Hello")

    assert result.reply == "GIFT::a blessing"
    history = await _history(session_factory, user_id, "ruth")
    assert decode_body(history[-1].body) == (KIND_TEXT, "GIFT::a blessing")


@pytest.mark.asyncio
async def test_lost_credit_race_without_paid_history_reports_free_quota(
    session_factory, make_user, seed_turns, fake_completion
):
    """
    When a concurrent request spends the last credit first, the blocked kind
    follows the same paid-history rule as a normal entitlement check.
    """
    user_id = await make_user(credits=1)
    await seed_turns(user_id, "moses", 5)

    with patch("crud.user.UserRepository.debit_credit", AsyncMock(return_value=False)):
        result = await _send(session_factory, fake_completion, user_id, "moses", "Hello")

    assert result.state is ChatState.BLOCKED
    assert result.decision is EntitlementDecision.BLOCKED_FREE_QUOTA_EXCEEDED
    assert result.error_kind == "free-quota-exceeded"
    assert fake_completion.calls == []
    assert len(await _history(session_factory, user_id, "moses")) == 5


@pytest.mark.asyncio
async def test_lost_credit_race_with_paid_history_reports_no_credits(
    session_factory, make_user, seed_turns, fake_completion
):
    user_id = await make_user(credits=1, stripe_customer_id="cus_paid")
    await seed_turns(user_id, "moses", 5)

    with patch("crud.user.UserRepository.debit_credit", AsyncMock(return_value=False)):
        result = await _send(session_factory, fake_completion, user_id, "moses", "Hello")

    assert result.decision is EntitlementDecision.BLOCKED_NO_CREDITS
    assert result.error_kind == "no-credits"


@pytest.mark.asyncio
async def test_failed_refund_still_raises_completion_error(
    session_factory, make_user, seed_turns, fake_completion
):
    """A storage error during the refund is logged; the caller still sees the completion failure."""
    user_id = await make_user(credits=3)
    await seed_turns(user_id, "david", 5)
    fake_completion.error = CompletionServiceError("upstream timeout")
    storage_down = OperationalError("UPDATE users", {}, Exception("database is locked"))

    with patch("crud.user.UserRepository.add_credits", AsyncMock(side_effect=storage_down)):
        with pytest.raises(CompletionServiceError):
            await _send(session_factory, fake_completion, user_id, "david", "Are you there?")

    assert await _credits(session_factory, user_id) == 2
    history = await _history(session_factory, user_id, "david")
    assert history[-1].body == "Are you there?"
