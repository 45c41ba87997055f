"""Shared pytest fixtures for backend tests."""

from __future__ import annotations

from typing import AsyncIterator, Awaitable, Callable

import httpx
import pytest
from passlib.context import CryptContext
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.api.deps import get_chat_runtime, get_verifier
from app.core import security
from app.core.crypto import MessageCipher
from app.database import build_session_factory, get_db
from app.main import app
from app.models import Base, Channel, User, UserRole
from app.services.cache import ChannelCache, InMemoryCacheBackend
from app.services.human import HumanVerifier
from app.services.runtime import ChatRuntime
from app.services.sessions import SessionRegistry
from huddle.realtime import EventBus

security.pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

TEST_PASSWORD = "password123"


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture()
async def test_engine() -> AsyncIterator[AsyncEngine]:
    """Provide an in-memory SQLite engine for isolated tests."""

    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        async with engine.begin() as connection:
            await connection.run_sync(Base.metadata.drop_all)
        await engine.dispose()


@pytest.fixture()
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    """Return a session factory bound to the test engine."""

    return build_session_factory(test_engine)


@pytest.fixture()
async def db_session(session_factory) -> AsyncIterator[AsyncSession]:
    """Yield a SQLAlchemy session for unit tests."""

    async with session_factory() as session:
        yield session


@pytest.fixture()
def runtime() -> ChatRuntime:
    """Runtime with an in-process cache, a local-only bus and a private session registry."""

    return ChatRuntime(
        cache=ChannelCache(InMemoryCacheBackend()),
        bus=EventBus(node_id="test-node"),
        sessions=SessionRegistry(),
        cipher=MessageCipher("test-message-key"),
    )


@pytest.fixture()
def make_user(db_session) -> Callable[..., Awaitable[User]]:
    async def _make(username: str, *, role: UserRole = UserRole.USER) -> User:
        user = User(
            username=username,
            email=f"{username}@example.com",
            name=username.title(),
            hashed_password=security.get_password_hash(TEST_PASSWORD),
            role=role,
        )
        db_session.add(user)
        await db_session.commit()
        return user

    return _make


@pytest.fixture()
def make_channel(db_session) -> Callable[..., Awaitable[Channel]]:
    async def _make(name: str, description: str = "") -> Channel:
        channel = Channel(name=name, description=description)
        db_session.add(channel)
        await db_session.commit()
        return channel

    return _make


@pytest.fixture()
async def client(session_factory, runtime) -> AsyncIterator[httpx.AsyncClient]:
    """Yield an HTTP client bound to the app with store, runtime and captcha overridden."""

    async def override_get_db() -> AsyncIterator[AsyncSession]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_chat_runtime] = lambda: runtime
    app.dependency_overrides[get_verifier] = lambda: HumanVerifier(None, "http://captcha.invalid")
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as test_client:
        yield test_client
    app.dependency_overrides.clear()
