"""Durable store wiring: async engine, sessions and the transaction manager."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import AsyncIterator

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.config import get_settings
from app.core.errors import ConflictError, StorageError

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_engine() -> AsyncEngine:
    settings = get_settings()
    options: dict[str, object] = {"echo": settings.debug, "pool_pre_ping": True}
    if not settings.database_url.startswith("sqlite"):
        # Persistent pool plus on-demand overflow for bursts of websocket traffic
        options.update(pool_size=10, max_overflow=20)
    return create_async_engine(settings.database_url, **options)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@lru_cache(maxsize=1)
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return build_session_factory(get_engine())


async def get_db() -> AsyncIterator[AsyncSession]:
    async with get_session_factory()() as db:
        yield db


@asynccontextmanager
async def atomic(db: AsyncSession) -> AsyncIterator[AsyncSession]:
    """Run the enclosed block as one store transaction.

    Either every statement commits or none does. Uniqueness violations surface
    as :class:`ConflictError`, other store failures as :class:`StorageError`;
    domain errors raised inside the block roll back and propagate unchanged.
    """

    if db.in_transaction():
        # Close the read transaction opened implicitly by earlier lookups so the
        # mutation reads its preconditions inside its own transaction.
        await db.commit()
    try:
        async with db.begin():
            yield db
    except IntegrityError as exc:
        logger.info("Store rejected write on a uniqueness constraint", extra={"error": str(exc.orig)})
        raise ConflictError() from exc
    except SQLAlchemyError as exc:
        logger.exception("Store transaction failed")
        raise StorageError() from exc


async def connect_with_retry(engine: AsyncEngine, *, attempts: int, delay_seconds: float) -> None:
    """Ping the store until it answers, giving up after ``attempts`` tries."""

    for attempt in range(1, attempts + 1):
        try:
            async with engine.connect() as connection:
                await connection.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError) as exc:
            logger.warning(
                "Store connection attempt failed",
                extra={"attempt": attempt, "remaining": attempts - attempt, "error": str(exc)},
            )
            if attempt < attempts:
                await asyncio.sleep(delay_seconds)
            continue
        logger.info("Store connection established", extra={"attempt": attempt})
        return
    raise StorageError("Could not connect to the store")
