from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import func, select, update

from app.core.crypto import MessageCipher
from app.core.errors import AuthorizationError, NotFoundError, ValidationError
from app.models import Message, UserRole
from app.services import membership, messages
from huddle.realtime import Topic

pytestmark = pytest.mark.anyio


async def test_posted_message_reaches_only_subscribers_of_its_channel(
    db_session, runtime, make_user, make_channel
):
    user = await make_user("alice")
    first = await make_channel("general")
    second = await make_channel("random")
    await membership.join(db_session, runtime, user.id, first.id)
    listening = runtime.bus.subscribe(Topic.NEW_MESSAGE, first.id)
    elsewhere = runtime.bus.subscribe(Topic.NEW_MESSAGE, second.id)

    posted = await messages.post_message(db_session, runtime, user.id, first.id, "hello")

    event = await asyncio.wait_for(listening.__anext__(), timeout=1.0)
    assert event.channel_id == first.id
    assert event.payload["content"] == "hello"
    assert event.payload["id"] == posted.id
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(elsewhere.__anext__(), timeout=0.05)

    listening.close()
    elsewhere.close()


async def test_message_is_stored_encrypted_and_listed_in_order(
    db_session, runtime, make_user, make_channel
):
    user = await make_user("alice")
    channel = await make_channel("general")
    await membership.join(db_session, runtime, user.id, channel.id)

    first = await messages.post_message(db_session, runtime, user.id, channel.id, "first")
    second = await messages.post_message(db_session, runtime, user.id, channel.id, "    indented code\n")

    stored = await db_session.get(Message, first.id)
    assert stored is not None
    assert b"first" not in stored.ciphertext
    assert len(stored.nonce) == 12

    history = await messages.get_channel_messages(db_session, runtime, user.id, channel.id)
    assert [item.id for item in history] == [first.id, second.id]
    assert [item.content for item in history] == ["first", "    indented code\n"]
    assert second.content == "    indented code\n"

    snapshot = await runtime.cache.get_channel(db_session, channel.id)
    assert snapshot is not None
    assert snapshot.message_ids == [first.id, second.id]


async def test_undecryptable_message_does_not_fail_the_list(db_session, runtime, make_user, make_channel):
    user = await make_user("alice")
    channel = await make_channel("general")
    await membership.join(db_session, runtime, user.id, channel.id)
    foreign = MessageCipher("another-key")
    good = await messages.post_message(db_session, runtime, user.id, channel.id, "readable")
    bad = await messages.post_message(db_session, runtime, user.id, channel.id, "replaced")

    nonce = foreign.new_nonce()
    await db_session.execute(
        update(Message)
        .where(Message.id == bad.id)
        .values(ciphertext=foreign.encrypt("other", nonce), nonce=nonce)
    )
    await db_session.commit()
    await runtime.cache.refresh(db_session, message_channel_ids={channel.id})

    history = await messages.get_channel_messages(db_session, runtime, user.id, channel.id)

    assert [item.id for item in history] == [good.id, bad.id]
    assert history[0].content == "readable"
    assert history[0].error is None
    assert history[1].content is None
    assert history[1].error == "Message could not be decrypted"


async def test_post_requires_membership_and_content(db_session, runtime, make_user, make_channel):
    user_id = (await make_user("alice")).id
    channel_id = (await make_channel("general")).id

    with pytest.raises(ValidationError, match="Join first"):
        await messages.post_message(db_session, runtime, user_id, channel_id, "hello")
    with pytest.raises(NotFoundError):
        await messages.post_message(db_session, runtime, user_id, 999, "hello")

    await membership.join(db_session, runtime, user_id, channel_id)
    with pytest.raises(ValidationError, match="must not be empty"):
        await messages.post_message(db_session, runtime, user_id, channel_id, " \n\t ")
    with pytest.raises(ValidationError, match="exceeds"):
        await messages.post_message(db_session, runtime, user_id, channel_id, "x" * 5000)

    assert await db_session.scalar(select(func.count()).select_from(Message)) == 0


async def test_reading_messages_requires_membership(db_session, runtime, make_user, make_channel):
    user_id = (await make_user("alice")).id
    channel_id = (await make_channel("general")).id

    with pytest.raises(ValidationError, match="Join first"):
        await messages.get_channel_messages(db_session, runtime, user_id, channel_id)
    with pytest.raises(NotFoundError):
        await messages.get_channel_messages(db_session, runtime, user_id, 999)


async def test_delete_message_by_poster_or_admin_only(db_session, runtime, make_user, make_channel):
    author_id = (await make_user("alice")).id
    other_id = (await make_user("bob")).id
    admin_id = (await make_user("root", role=UserRole.ADMIN)).id
    channel_id = (await make_channel("general")).id
    await membership.join(db_session, runtime, author_id, channel_id)
    first = await messages.post_message(db_session, runtime, author_id, channel_id, "one")
    second = await messages.post_message(db_session, runtime, author_id, channel_id, "two")
    removed = runtime.bus.subscribe(Topic.REMOVED_MESSAGE, channel_id)

    with pytest.raises(AuthorizationError):
        await messages.delete_message(db_session, runtime, other_id, first.id)

    assert await messages.delete_message(db_session, runtime, author_id, first.id) is True
    assert await messages.delete_message(db_session, runtime, admin_id, second.id, is_admin=True) is True
    with pytest.raises(NotFoundError):
        await messages.delete_message(db_session, runtime, author_id, first.id)

    events = [await asyncio.wait_for(removed.__anext__(), timeout=1.0) for _ in range(2)]
    assert [event.payload["id"] for event in events] == [first.id, second.id]
    snapshot = await runtime.cache.get_channel(db_session, channel_id)
    assert snapshot is not None and snapshot.message_ids == []
    assert await messages.get_channel_messages(db_session, runtime, author_id, channel_id) == []
    removed.close()
