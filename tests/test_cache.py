from __future__ import annotations

import logging

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from app.models import ChannelMember
from app.schemas import ChannelRead
from app.services.cache import (
    CHANNEL_LIST_KEY,
    ChannelCache,
    InMemoryCacheBackend,
    channel_key,
    current_channel_key,
)
from app.services.store import load_channel_list, load_channel_snapshot

pytestmark = pytest.mark.anyio


class FailingBackend:
    """Backend whose every operation fails like an unreachable Redis."""

    async def get(self, key: str) -> str | None:
        raise RedisConnectionError("offline")

    async def generation(self, key: str) -> int:
        raise RedisConnectionError("offline")

    async def invalidate(self, key: str) -> int:
        raise RedisConnectionError("offline")

    async def set_if_generation(self, key: str, value: str, generation: int) -> bool:
        raise RedisConnectionError("offline")

    async def close(self) -> None:
        return None


async def test_guarded_write_from_superseded_generation_is_discarded():
    backend = InMemoryCacheBackend()
    observed = await backend.generation("channel:1")

    assert await backend.invalidate("channel:1") == observed + 1
    assert await backend.set_if_generation("channel:1", "stale", observed) is False
    assert await backend.get("channel:1") is None
    assert await backend.set_if_generation("channel:1", "fresh", observed + 1) is True
    assert await backend.get("channel:1") == "fresh"


async def test_read_through_populates_on_miss(db_session, make_channel):
    backend = InMemoryCacheBackend()
    cache = ChannelCache(backend)
    channel = await make_channel("general")

    assert await backend.get(channel_key(channel.id)) is None
    snapshot = await cache.get_channel(db_session, channel.id)

    assert snapshot is not None and snapshot.name == "general"
    assert ChannelRead.model_validate_json(await backend.get(channel_key(channel.id))) == snapshot
    assert await cache.get_channel(db_session, 999) is None


async def test_read_through_does_not_overwrite_a_newer_invalidation(db_session, make_channel):
    backend = InMemoryCacheBackend()
    cache = ChannelCache(backend)
    channel = await make_channel("general")
    key = channel_key(channel.id)

    async def slow_loader() -> ChannelRead | None:
        snapshot = await load_channel_snapshot(db_session, channel.id)
        # A concurrent mutation commits and invalidates while this read is in flight.
        await backend.invalidate(key)
        return snapshot

    value = await cache._read_through(key, ChannelRead, slow_loader)

    assert value is not None
    assert await backend.get(key) is None


async def test_refresh_makes_cache_match_the_store(db_session, make_user, make_channel):
    cache = ChannelCache(InMemoryCacheBackend())
    user = await make_user("alice")
    channel = await make_channel("general")
    await cache.get_channel_list(db_session)
    await cache.get_channel(db_session, channel.id)

    db_session.add(ChannelMember(channel_id=channel.id, user_id=user.id))
    await db_session.commit()
    stale = await cache.get_channel(db_session, channel.id)
    assert stale is not None and stale.user_ids == []

    await cache.refresh(db_session, channel_ids={channel.id}, current_channels={user.id: channel.id})

    assert await cache.get_channel(db_session, channel.id) == await load_channel_snapshot(db_session, channel.id)
    assert await cache.get_channel_list(db_session) == await load_channel_list(db_session)
    assert await cache.get_current_channel(db_session, user.id) == channel.id


async def test_refresh_invalidates_list_and_channel_together(db_session, make_channel):
    backend = InMemoryCacheBackend()
    cache = ChannelCache(backend)
    channel = await make_channel("general")
    list_generation = await backend.generation(CHANNEL_LIST_KEY)
    channel_generation = await backend.generation(channel_key(channel.id))

    await cache.refresh(db_session, channel_ids={channel.id})

    assert await backend.generation(CHANNEL_LIST_KEY) == list_generation + 1
    assert await backend.generation(channel_key(channel.id)) == channel_generation + 1
    assert await backend.get(CHANNEL_LIST_KEY) is not None
    assert await backend.get(channel_key(channel.id)) is not None


async def test_removed_channel_is_not_repopulated(db_session, make_channel):
    backend = InMemoryCacheBackend()
    cache = ChannelCache(backend)
    channel = await make_channel("general")
    await cache.get_channel(db_session, channel.id)

    await db_session.delete(channel)
    await db_session.commit()
    await cache.refresh(db_session, removed_channel_ids={channel.id})

    assert await backend.get(channel_key(channel.id)) is None
    assert await cache.get_channel_list(db_session) == []


async def test_malformed_entry_is_replaced_from_the_store(db_session, make_channel):
    backend = InMemoryCacheBackend()
    cache = ChannelCache(backend)
    channel = await make_channel("general")
    backend._values[channel_key(channel.id)] = "{not json"

    snapshot = await cache.get_channel(db_session, channel.id)

    assert snapshot is not None and snapshot.id == channel.id
    assert ChannelRead.model_validate_json(await backend.get(channel_key(channel.id))) == snapshot


async def test_backend_failures_fall_back_to_the_store(db_session, make_user, make_channel, caplog):
    cache = ChannelCache(FailingBackend())
    user = await make_user("alice")
    channel = await make_channel("general")

    with caplog.at_level(logging.WARNING):
        snapshot = await cache.get_channel(db_session, channel.id)
        await cache.refresh(db_session, channel_ids={channel.id}, current_channels={user.id: None})

    assert snapshot is not None and snapshot.name == "general"
    assert await cache.get_current_channel(db_session, user.id) is None
    assert any("falling back to the store" in record.getMessage() for record in caplog.records)
    assert any("invalidation failed" in record.getMessage() for record in caplog.records)


def test_current_channel_key_namespace():
    assert current_channel_key(7) == "session:7:current-channel"
    assert channel_key(7) == "channel:7"
