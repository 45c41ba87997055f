"""Channel cache: read-through snapshots kept fresh by invalidate-then-repopulate.

Every key carries a generation counter stored next to it (``<key>:gen``).
Invalidating a key bumps the counter and deletes the value; a snapshot is only
written back when the generation observed before reading the store is still
current. A writer holding an older generation is discarded, so two interleaved
mutations cannot leave an older snapshot behind the newer one.
"""

from __future__ import annotations

import asyncio
import logging
from functools import lru_cache
from typing import Awaitable, Callable, Iterable, Mapping, Protocol, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as SchemaValidationError
from redis import asyncio as redis_asyncio
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.monitoring.metrics import cache_errors_total, cache_requests_total, cache_writes_total
from app.schemas import ChannelList, ChannelRead, CurrentChannel, StoredMessage, StoredMessageList
from app.services import store

logger = logging.getLogger(__name__)

_CACHE_ERRORS: tuple[type[BaseException], ...] = (
    RedisError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)

ModelT = TypeVar("ModelT", bound=BaseModel)

CHANNEL_LIST_KEY = "channels:list"


def channel_key(channel_id: int) -> str:
    return f"channel:{channel_id}"


def channel_messages_key(channel_id: int) -> str:
    return f"channel:{channel_id}:messages"


def current_channel_key(user_id: int) -> str:
    return f"session:{user_id}:current-channel"


def _generation_key(key: str) -> str:
    return f"{key}:gen"


def _key_kind(key: str) -> str:
    if key == CHANNEL_LIST_KEY:
        return "channels"
    if key.startswith("session:"):
        return "session"
    if key.endswith(":messages"):
        return "messages"
    return "channel"


class CacheBackend(Protocol):
    """Protocol describing cache operations we rely on."""

    async def get(self, key: str) -> str | None:
        """Retrieve a cached value if present."""

    async def generation(self, key: str) -> int:
        """Return the current generation of ``key`` (0 when never invalidated)."""

    async def invalidate(self, key: str) -> int:
        """Bump the generation of ``key``, drop its value, return the new generation."""

    async def set_if_generation(self, key: str, value: str, generation: int) -> bool:
        """Store ``value`` only if ``generation`` is still current."""

    async def close(self) -> None:
        """Release backend resources."""


class InMemoryCacheBackend:
    """Process-local backend used when no Redis URL is configured."""

    def __init__(self) -> None:
        self._values: dict[str, str] = {}
        self._generations: dict[str, int] = {}

    async def get(self, key: str) -> str | None:
        return self._values.get(key)

    async def generation(self, key: str) -> int:
        return self._generations.get(key, 0)

    async def invalidate(self, key: str) -> int:
        generation = self._generations.get(key, 0) + 1
        self._generations[key] = generation
        self._values.pop(key, None)
        return generation

    async def set_if_generation(self, key: str, value: str, generation: int) -> bool:
        if self._generations.get(key, 0) != generation:
            return False
        self._values[key] = value
        return True

    async def close(self) -> None:
        self._values.clear()
        self._generations.clear()


_INVALIDATE_SCRIPT = """
local generation = redis.call('INCR', KEYS[2])
redis.call('DEL', KEYS[1])
return generation
"""

_SET_IF_GENERATION_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[2]) or '0')
if current == tonumber(ARGV[2]) then
    redis.call('SET', KEYS[1], ARGV[1])
    return 1
end
return 0
"""


class RedisCacheBackend:
    """Redis backend; compare-and-set runs server side in Lua scripts."""

    def __init__(self, url: str) -> None:
        self._client = redis_asyncio.from_url(url, encoding="utf-8", decode_responses=True)
        self._invalidate = self._client.register_script(_INVALIDATE_SCRIPT)
        self._set_if_generation = self._client.register_script(_SET_IF_GENERATION_SCRIPT)

    async def get(self, key: str) -> str | None:
        return await self._client.get(key)

    async def generation(self, key: str) -> int:
        raw = await self._client.get(_generation_key(key))
        return int(raw) if raw is not None else 0

    async def invalidate(self, key: str) -> int:
        return int(await self._invalidate(keys=[key, _generation_key(key)]))

    async def set_if_generation(self, key: str, value: str, generation: int) -> bool:
        stored = await self._set_if_generation(
            keys=[key, _generation_key(key)], args=[value, generation]
        )
        return bool(stored)

    async def close(self) -> None:
        await self._client.aclose()


class ChannelCache:
    """Derived snapshot store for channels, channel messages and current-channel pointers.

    The durable store stays authoritative: backend failures are logged and
    reads fall back to the store.
    """

    def __init__(self, backend: CacheBackend) -> None:
        self._backend = backend

    @property
    def backend(self) -> CacheBackend:
        return self._backend

    async def close(self) -> None:
        await self._backend.close()

    # ------------------------------------------------------------------
    # Read-through
    # ------------------------------------------------------------------
    async def get_channel_list(self, db: AsyncSession) -> list[ChannelRead]:
        async def load() -> ChannelList:
            return ChannelList(items=await store.load_channel_list(db))

        snapshot = await self._read_through(CHANNEL_LIST_KEY, ChannelList, load)
        return snapshot.items if snapshot is not None else []

    async def get_channel(self, db: AsyncSession, channel_id: int) -> ChannelRead | None:
        return await self._read_through(
            channel_key(channel_id),
            ChannelRead,
            lambda: store.load_channel_snapshot(db, channel_id),
        )

    async def get_channel_messages(self, db: AsyncSession, channel_id: int) -> list[StoredMessage]:
        async def load() -> StoredMessageList:
            return StoredMessageList(items=await store.load_channel_messages(db, channel_id))

        snapshot = await self._read_through(channel_messages_key(channel_id), StoredMessageList, load)
        return snapshot.items if snapshot is not None else []

    async def get_current_channel(self, db: AsyncSession, user_id: int) -> int | None:
        async def load() -> CurrentChannel:
            return CurrentChannel(channel_id=await store.load_user_channel_id(db, user_id))

        pointer = await self._read_through(current_channel_key(user_id), CurrentChannel, load)
        return pointer.channel_id if pointer is not None else None

    async def _read_through(
        self,
        key: str,
        model: type[ModelT],
        loader: Callable[[], Awaitable[ModelT | None]],
    ) -> ModelT | None:
        kind = _key_kind(key)
        try:
            generation = await self._backend.generation(key)
            cached = await self._backend.get(key)
        except _CACHE_ERRORS:
            logger.warning("Cache read failed; falling back to the store", exc_info=True, extra={"key": key})
            cache_errors_total.labels("read").inc()
            return await loader()

        if cached is not None:
            try:
                value = model.model_validate_json(cached)
            except SchemaValidationError:
                logger.warning("Discarded malformed cache entry", extra={"key": key})
                generation = (await self._invalidate_keys([key])).get(key, generation)
            else:
                cache_requests_total.labels(kind, "hit").inc()
                return value

        cache_requests_total.labels(kind, "miss").inc()
        value = await loader()
        if value is not None:
            await self._write(key, value, generation)
        return value

    # ------------------------------------------------------------------
    # Invalidate-then-repopulate
    # ------------------------------------------------------------------
    async def refresh(
        self,
        db: AsyncSession,
        *,
        channel_ids: Iterable[int] = (),
        message_channel_ids: Iterable[int] = (),
        removed_channel_ids: Iterable[int] = (),
        current_channels: Mapping[int, int | None] | None = None,
    ) -> None:
        """Invalidate every key a committed mutation could have made stale, then repopulate.

        ``channel_ids`` had their membership change, ``message_channel_ids`` their
        message sequence, ``removed_channel_ids`` no longer exist and
        ``current_channels`` maps user ids to their new channel pointer.
        """

        removed = set(removed_channel_ids)
        message_channels = set(message_channel_ids) | removed
        channels = set(channel_ids) | message_channels
        current_channels = dict(current_channels or {})

        keys: list[str] = []
        if channels:
            keys.append(CHANNEL_LIST_KEY)
        keys.extend(channel_key(channel_id) for channel_id in sorted(channels))
        keys.extend(channel_messages_key(channel_id) for channel_id in sorted(message_channels))
        keys.extend(current_channel_key(user_id) for user_id in sorted(current_channels))

        generations = await self._invalidate_keys(keys)

        for user_id, channel_id in current_channels.items():
            key = current_channel_key(user_id)
            if key in generations:
                await self._write(key, CurrentChannel(channel_id=channel_id), generations[key])

        try:
            if CHANNEL_LIST_KEY in generations:
                snapshot = ChannelList(items=await store.load_channel_list(db))
                await self._write(CHANNEL_LIST_KEY, snapshot, generations[CHANNEL_LIST_KEY])
            for channel_id in sorted(channels - removed):
                key = channel_key(channel_id)
                if key not in generations:
                    continue
                channel = await store.load_channel_snapshot(db, channel_id)
                if channel is not None:
                    await self._write(key, channel, generations[key])
            for channel_id in sorted(message_channels - removed):
                key = channel_messages_key(channel_id)
                if key not in generations:
                    continue
                messages = StoredMessageList(items=await store.load_channel_messages(db, channel_id))
                await self._write(key, messages, generations[key])
        except SQLAlchemyError:
            # Keys are already invalidated; the next read repopulates them lazily.
            logger.warning("Cache repopulation skipped after store failure", exc_info=True)
            cache_errors_total.labels("repopulate").inc()

    async def warm_up(self, db: AsyncSession) -> None:
        """Populate the channel list once after startup."""

        await self.get_channel_list(db)

    async def _invalidate_keys(self, keys: Iterable[str]) -> dict[str, int]:
        generations: dict[str, int] = {}
        for key in keys:
            try:
                generations[key] = await self._backend.invalidate(key)
            except _CACHE_ERRORS:
                logger.error("Cache invalidation failed; entry may be stale", exc_info=True, extra={"key": key})
                cache_errors_total.labels("invalidate").inc()
        return generations

    async def _write(self, key: str, value: BaseModel, generation: int) -> None:
        kind = _key_kind(key)
        try:
            stored = await self._backend.set_if_generation(key, value.model_dump_json(), generation)
        except _CACHE_ERRORS:
            logger.warning("Cache write failed", exc_info=True, extra={"key": key})
            cache_errors_total.labels("write").inc()
            return
        if stored:
            cache_writes_total.labels(kind, "stored").inc()
        else:
            logger.debug("Discarded cache write from a superseded generation", extra={"key": key})
            cache_writes_total.labels(kind, "discarded").inc()


@lru_cache(maxsize=1)
def get_cache() -> ChannelCache:
    """Return the configured channel cache, backed by Redis when a URL is set."""

    settings = get_settings()
    if settings.cache_redis_url:
        return ChannelCache(RedisCacheBackend(settings.cache_redis_url))
    return ChannelCache(InMemoryCacheBackend())
