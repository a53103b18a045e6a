"""
Pytest configuration and fixtures for testing
"""
import asyncio
import itertools
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

import database_models  # noqa: F401
from auth_utils import create_jwt
from config.settings import settings
from crud.message import MessageRepository
from crud.user import UserRepository
from database import Base, get_db
from database_models import SENDER_USER

_emails = itertools.count(1)


class FakeCompletion:
    """Stands in for CompletionService; records every prompt it receives."""

    def __init__(self, reply="Peace be with you, my child."):
        self.reply = reply
        self.error = None
        self.calls = []

    async def complete(self, messages):
        self.calls.append(messages)
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return self.reply


def _database_url(tmp_path):
    # File-backed so that separate sessions really use separate connections
    return f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"


async def _create_tables(engine):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def _session_factory(engine):
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest.fixture(autouse=True)
def test_settings(monkeypatch):
    monkeypatch.setattr(settings, "jwt_secret_key", "test-jwt-secret")
    monkeypatch.setattr(settings, "operator_api_key", "test-operator-key")
    monkeypatch.setattr(settings, "rate_limit_per_minute", 0)
    monkeypatch.setattr(settings, "free_quota", 5)
    monkeypatch.setattr(settings, "history_limit", 20)
    monkeypatch.setattr(settings, "credits_per_pack", 10)
    monkeypatch.setattr(settings, "stripe_webhook_secret", "whsec_test")
    # Identity lookups must hit the per-test database, never a shared cache
    monkeypatch.setattr("utils.shared_utils._redis_cache_available", False)
    return settings


@pytest.fixture
async def test_engine(tmp_path):
    engine = create_async_engine(_database_url(tmp_path), poolclass=NullPool)
    await _create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return _session_factory(test_engine)


@pytest.fixture
async def test_db(session_factory):
    """
    Fixture that provides an isolated SQLite database session for each test.
    Tables are created fresh in a per-test temporary file.
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def create_user_row(session_factory, **fields) -> int:
    data = {
        "email": f"user{next(_emails)}@example.com",
        "hashed_password": "not-a-real-hash",
        **fields,
    }
    async with session_factory() as session:
        user = await UserRepository(session).create_user(data)
        await session.commit()
        return user.id


async def add_turns(session_factory, user_id, persona_id, count, sender=SENDER_USER):
    async with session_factory() as session:
        repo = MessageRepository(session)
        for i in range(count):
            await repo.append(user_id, persona_id, sender, f"{sender} message {i}")
        await session.commit()


@pytest.fixture
def make_user(session_factory):
    async def _make(**fields):
        return await create_user_row(session_factory, **fields)
    return _make


@pytest.fixture
def seed_turns(session_factory):
    async def _seed(user_id, persona_id, count, sender=SENDER_USER):
        await add_turns(session_factory, user_id, persona_id, count, sender)
    return _seed


@pytest.fixture
def fake_completion():
    return FakeCompletion()


@pytest.fixture
def api(tmp_path, fake_completion):
    """
    FastAPI TestClient wired to a temporary database and a fake completion client.

    Returns a namespace with the client, the fake, a session factory and
    helpers for seeding data and building auth headers from sync tests.
    """
    from main import app
    from services.completion_service import get_completion_service

    engine = create_async_engine(_database_url(tmp_path), poolclass=NullPool)
    asyncio.run(_create_tables(engine))
    factory = _session_factory(engine)

    async def override_get_db():
        async with factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_completion_service] = lambda: fake_completion

    def make_user(**fields):
        return asyncio.run(create_user_row(factory, **fields))

    def seed_turns(user_id, persona_id, count, sender=SENDER_USER):
        asyncio.run(add_turns(factory, user_id, persona_id, count, sender))

    def auth_headers(user_id):
        return {"Authorization": f"Bearer {create_jwt(str(user_id))}"}

    yield SimpleNamespace(
        client=TestClient(app),
        completion=fake_completion,
        factory=factory,
        make_user=make_user,
        seed_turns=seed_turns,
        auth_headers=auth_headers,
        operator_headers={"X-Operator-Key": "test-operator-key", "X-Operator-Name": "Grace"},
    )

    app.dependency_overrides.clear()
    asyncio.run(engine.dispose())

