from __future__ import annotations

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import create_async_engine

from app.core.errors import ConflictError, StorageError, ValidationError
from app.database import atomic, connect_with_retry
from app.models import Channel

pytestmark = pytest.mark.anyio


async def test_atomic_commits_all_statements(db_session):
    async with atomic(db_session):
        db_session.add(Channel(name="general"))
        db_session.add(Channel(name="random"))

    assert await db_session.scalar(select(func.count()).select_from(Channel)) == 2


async def test_atomic_rolls_back_on_domain_error(db_session):
    with pytest.raises(ValidationError):
        async with atomic(db_session):
            db_session.add(Channel(name="general"))
            await db_session.flush()
            raise ValidationError("nope")

    assert await db_session.scalar(select(func.count()).select_from(Channel)) == 0


async def test_unique_violation_becomes_conflict(db_session, make_channel):
    await make_channel("general")

    with pytest.raises(ConflictError):
        async with atomic(db_session):
            db_session.add(Channel(name="general"))
            db_session.add(Channel(name="random"))

    names = (await db_session.scalars(select(Channel.name))).all()
    assert names == ["general"]


async def test_connect_with_retry_gives_up_after_fixed_attempts(caplog):
    engine = create_async_engine("sqlite+aiosqlite:////nonexistent-dir/huddle.db")
    try:
        with pytest.raises(StorageError):
            await connect_with_retry(engine, attempts=2, delay_seconds=0)
    finally:
        await engine.dispose()

    attempts = [record for record in caplog.records if "connection attempt failed" in record.getMessage()]
    assert len(attempts) == 2


async def test_connect_with_retry_succeeds(test_engine):
    await connect_with_retry(test_engine, attempts=1, delay_seconds=0)
