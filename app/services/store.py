"""Read helpers building serialized snapshots from the durable store."""

from __future__ import annotations

from collections import defaultdict
from typing import Iterable, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import Channel, ChannelMember, Message, User
from app.schemas import ChannelRead, StoredMessage, UserRead


async def fetch_member_ids(db: AsyncSession, channel_ids: Sequence[int]) -> dict[int, list[int]]:
    if not channel_ids:
        return {}
    rows = await db.execute(
        select(ChannelMember.channel_id, ChannelMember.user_id)
        .where(ChannelMember.channel_id.in_(channel_ids))
        .order_by(ChannelMember.joined_at, ChannelMember.user_id)
    )
    members: dict[int, list[int]] = defaultdict(list)
    for channel_id, user_id in rows:
        members[channel_id].append(user_id)
    return members


async def fetch_message_ids(db: AsyncSession, channel_ids: Sequence[int]) -> dict[int, list[int]]:
    if not channel_ids:
        return {}
    rows = await db.execute(
        select(Message.channel_id, Message.id)
        .where(Message.channel_id.in_(channel_ids))
        .order_by(Message.channel_id, Message.id)
    )
    messages: dict[int, list[int]] = defaultdict(list)
    for channel_id, message_id in rows:
        messages[channel_id].append(message_id)
    return messages


async def _snapshot_channels(db: AsyncSession, channels: Iterable[Channel]) -> list[ChannelRead]:
    channels = list(channels)
    ids = [channel.id for channel in channels]
    members = await fetch_member_ids(db, ids)
    messages = await fetch_message_ids(db, ids)
    return [
        ChannelRead(
            id=channel.id,
            name=channel.name,
            description=channel.description,
            user_ids=members.get(channel.id, []),
            message_ids=messages.get(channel.id, []),
            created_at=channel.created_at,
        )
        for channel in channels
    ]


async def load_channel_snapshot(db: AsyncSession, channel_id: int) -> ChannelRead | None:
    channel = await db.get(Channel, channel_id, populate_existing=True)
    if channel is None:
        return None
    snapshots = await _snapshot_channels(db, [channel])
    return snapshots[0]


async def load_channel_snapshots(db: AsyncSession, channel_ids: Sequence[int]) -> list[ChannelRead]:
    result = await db.execute(
        select(Channel)
        .where(Channel.id.in_(channel_ids))
        .order_by(Channel.id)
        .execution_options(populate_existing=True)
    )
    return await _snapshot_channels(db, result.scalars().all())


async def load_channel_list(db: AsyncSession) -> list[ChannelRead]:
    result = await db.execute(select(Channel).order_by(Channel.id).execution_options(populate_existing=True))
    return await _snapshot_channels(db, result.scalars().all())


async def load_channel_messages(db: AsyncSession, channel_id: int) -> list[StoredMessage]:
    result = await db.execute(
        select(Message)
        .where(Message.channel_id == channel_id)
        .order_by(Message.id)
        .execution_options(populate_existing=True)
    )
    return [stored_message(message) for message in result.scalars().all()]


def stored_message(message: Message) -> StoredMessage:
    return StoredMessage(
        id=message.id,
        channel_id=message.channel_id,
        poster_id=message.poster_id,
        ciphertext=message.ciphertext,
        nonce=message.nonce,
        created_at=message.created_at,
    )


async def load_user_channel_id(db: AsyncSession, user_id: int) -> int | None:
    return await db.scalar(select(User.channel_id).where(User.id == user_id))


async def load_users(db: AsyncSession) -> list[UserRead]:
    result = await db.execute(select(User).order_by(User.id))
    return [UserRead.model_validate(user) for user in result.scalars().all()]
