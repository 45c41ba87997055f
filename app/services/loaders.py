"""Request-scoped batched loaders for users, channels and messages.

Every ``load`` issued during the same event-loop tick is collected and
resolved with one ``SELECT ... WHERE id IN (...)`` per entity type. Results are
memoized for the lifetime of the loader only; a new set of loaders is built
for every request and dropped with it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Generic, Hashable, Iterable, Mapping, Sequence, TypeVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.crypto import MessageCipher
from app.core.errors import NotFoundError
from app.models import Message, User
from app.schemas import ChannelRead, MessageRead, UserRead
from app.services import store
from app.services.messages import reveal

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

BatchFunction = Callable[[list[K]], Awaitable[Mapping[K, V]]]


class BatchLoader(Generic[K, V]):
    """Deduplicating, order-preserving loader backed by one batch function.

    ``load_many`` returns a list of the same length and order as the requested
    keys. A key the batch function does not return resolves to a
    :class:`NotFoundError` instance at its position; duplicate keys resolve to
    the same object.
    """

    def __init__(
        self,
        batch_fn: BatchFunction[K, V],
        *,
        name: str,
        lock: asyncio.Lock | None = None,
    ) -> None:
        self._batch_fn = batch_fn
        self._name = name
        self._lock = lock or asyncio.Lock()
        self._futures: dict[K, asyncio.Future[V | NotFoundError]] = {}
        self._pending: list[K] = []
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def name(self) -> str:
        return self._name

    def _enqueue(self, key: K) -> asyncio.Future[V | NotFoundError]:
        future = self._futures.get(key)
        if future is not None:
            return future
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self._futures[key] = future
        self._pending.append(key)
        if len(self._pending) == 1:
            loop.call_soon(self._dispatch)
        return future

    def _dispatch(self) -> None:
        keys, self._pending = self._pending, []
        if not keys:
            return
        task = asyncio.get_running_loop().create_task(self._resolve(keys))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _resolve(self, keys: list[K]) -> None:
        try:
            async with self._lock:
                found = await self._batch_fn(keys)
        except Exception as exc:
            logger.exception("Batch load failed", extra={"loader": self._name, "size": len(keys)})
            for key in keys:
                future = self._futures.pop(key, None)
                if future is not None and not future.done():
                    future.set_exception(exc)
            return

        logger.debug("Batch loaded", extra={"loader": self._name, "size": len(keys), "found": len(found)})
        for key in keys:
            future = self._futures[key]
            if future.done():
                continue
            if key in found:
                future.set_result(found[key])
            else:
                future.set_result(NotFoundError(f"{self._name} {key} does not exist"))

    async def load(self, key: K) -> V:
        """Resolve one key, raising :class:`NotFoundError` when it is missing."""

        result = await self._enqueue(key)
        if isinstance(result, NotFoundError):
            raise result
        return result

    async def load_many(self, keys: Iterable[K]) -> list[V | NotFoundError]:
        futures = [self._enqueue(key) for key in keys]
        if not futures:
            return []
        return list(await asyncio.gather(*futures))

    def prime(self, key: K, value: V) -> None:
        """Seed the memo with an already known value."""

        if key in self._futures:
            return
        future = asyncio.get_running_loop().create_future()
        future.set_result(value)
        self._futures[key] = future


class RequestLoaders:
    """Loaders sharing one request's database session.

    The session does not allow concurrent statements, so every loader batch
    runs under the same lock.
    """

    def __init__(self, db: AsyncSession, cipher: MessageCipher) -> None:
        self._db = db
        self._cipher = cipher
        lock = asyncio.Lock()
        self.users: BatchLoader[int, UserRead] = BatchLoader(self._load_users, name="User", lock=lock)
        self.channels: BatchLoader[int, ChannelRead] = BatchLoader(
            self._load_channels, name="Channel", lock=lock
        )
        self.messages: BatchLoader[int, MessageRead] = BatchLoader(
            self._load_messages, name="Message", lock=lock
        )

    async def _load_users(self, ids: Sequence[int]) -> dict[int, UserRead]:
        result = await self._db.execute(select(User).where(User.id.in_(ids)))
        return {user.id: UserRead.model_validate(user) for user in result.scalars().all()}

    async def _load_channels(self, ids: Sequence[int]) -> dict[int, ChannelRead]:
        return {channel.id: channel for channel in await store.load_channel_snapshots(self._db, ids)}

    async def _load_messages(self, ids: Sequence[int]) -> dict[int, MessageRead]:
        result = await self._db.execute(select(Message).where(Message.id.in_(ids)).order_by(Message.id))
        return {
            message.id: reveal(self._cipher, store.stored_message(message))
            for message in result.scalars().all()
        }
