"""
Concurrency tests for credit debits.

Each task uses its own session, and therefore its own database connection,
so the conditional UPDATE is what keeps the balance from going negative.
"""
import asyncio

import pytest

from crud.message import MessageRepository
from crud.user import UserRepository
from services.chat_service import ChatOrchestrator, ChatState


async def _debit(session_factory, user_id):
    async with session_factory() as session:
        debited = await UserRepository(session).debit_credit(user_id)
        await session.commit()
        return debited


@pytest.mark.asyncio
async def test_concurrent_debits_take_the_last_credit_once(session_factory, make_user):
    user_id = await make_user(credits=1)

    results = await asyncio.gather(*[_debit(session_factory, user_id) for _ in range(5)])

    assert results.count(True) == 1
    async with session_factory() as session:
        assert await UserRepository(session).get_credits(user_id) == 0


@pytest.mark.asyncio
async def test_debit_on_empty_balance_leaves_it_at_zero(session_factory, make_user):
    user_id = await make_user(credits=0)

    assert await _debit(session_factory, user_id) is False
    async with session_factory() as session:
        assert await UserRepository(session).get_credits(user_id) == 0


@pytest.mark.asyncio
async def test_concurrent_chat_messages_with_one_credit(
    session_factory, make_user, seed_turns, fake_completion
):
    """
    Several messages race for a single credit: exactly one gets a reply and
    the rest are blocked without storing anything.
    """
    user_id = await make_user(credits=1)
    await seed_turns(user_id, "moses", 5)

    async def send(i):
        async with session_factory() as session:
            return await ChatOrchestrator(session, fake_completion).handle_message(
                user_id, "moses", f"Concurrent {i}"
            )

    results = await asyncio.gather(*[send(i) for i in range(4)])

    states = [r.state for r in results]
    assert states.count(ChatState.RESPONDED) == 1
    assert states.count(ChatState.BLOCKED) == 3
    assert len(fake_completion.calls) == 1

    async with session_factory() as session:
        assert await UserRepository(session).get_credits(user_id) == 0
        # 5 seeded turns plus one user turn and one reply
        assert len(await MessageRepository(session).history(user_id, "moses")) == 7
