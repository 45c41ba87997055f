from __future__ import annotations

import asyncio
from typing import Sequence

import pytest

from app.core.errors import NotFoundError
from app.services import membership, messages
from app.services.loaders import BatchLoader, RequestLoaders

pytestmark = pytest.mark.anyio


class RecordingSource:
    def __init__(self, existing: Sequence[int]) -> None:
        self.rows = {key: {"id": key} for key in existing}
        self.calls: list[list[int]] = []

    async def fetch(self, keys: list[int]) -> dict[int, dict[str, int]]:
        self.calls.append(list(keys))
        return {key: self.rows[key] for key in keys if key in self.rows}


async def test_load_many_preserves_order_and_duplicates():
    source = RecordingSource([3, 5])
    loader = BatchLoader(source.fetch, name="Item")

    results = await loader.load_many([5, 3, 5, 9])

    assert len(results) == 4
    assert results[0] == {"id": 5}
    assert results[1] == {"id": 3}
    assert results[2] is results[0]
    assert isinstance(results[3], NotFoundError)
    assert source.calls == [[5, 3, 9]]


async def test_loads_in_the_same_tick_share_one_batch():
    source = RecordingSource([1, 2, 3])
    loader = BatchLoader(source.fetch, name="Item")

    first, second, third = await asyncio.gather(loader.load(1), loader.load(2), loader.load(3))

    assert [first["id"], second["id"], third["id"]] == [1, 2, 3]
    assert source.calls == [[1, 2, 3]]


async def test_results_are_memoized_for_the_loader_lifetime():
    source = RecordingSource([1, 2])
    loader = BatchLoader(source.fetch, name="Item")

    await loader.load(1)
    await loader.load_many([1, 2])

    assert source.calls == [[1], [2]]
    assert await BatchLoader(source.fetch, name="Item").load(1) == {"id": 1}
    assert source.calls[-1] == [1]


async def test_load_of_missing_key_raises_not_found():
    loader = BatchLoader(RecordingSource([]).fetch, name="Item")

    with pytest.raises(NotFoundError, match="Item 7 does not exist"):
        await loader.load(7)


async def test_batch_failure_is_propagated_to_every_waiter():
    async def broken(keys: list[int]) -> dict[int, int]:
        raise RuntimeError("store down")

    loader = BatchLoader(broken, name="Item")

    results = await asyncio.gather(loader.load(1), loader.load(2), return_exceptions=True)

    assert all(isinstance(result, RuntimeError) for result in results)


async def test_empty_request_resolves_without_a_batch():
    source = RecordingSource([1])
    loader = BatchLoader(source.fetch, name="Item")

    assert await loader.load_many([]) == []
    assert source.calls == []


async def test_request_loaders_resolve_entities_from_the_store(
    db_session, runtime, make_user, make_channel
):
    alice = await make_user("alice")
    bob = await make_user("bob")
    channel = await make_channel("general")
    await membership.join(db_session, runtime, alice.id, channel.id)
    posted = await messages.post_message(db_session, runtime, alice.id, channel.id, "hi")
    loaders = RequestLoaders(db_session, runtime.cipher)

    users, channels, found = await asyncio.gather(
        loaders.users.load_many([bob.id, alice.id, 999]),
        loaders.channels.load_many([channel.id]),
        loaders.messages.load_many([posted.id]),
    )

    assert [user.username for user in users[:2]] == ["bob", "alice"]
    assert isinstance(users[2], NotFoundError)
    assert channels[0].user_ids == [alice.id]
    assert channels[0].message_ids == [posted.id]
    assert found[0].content == "hi"
