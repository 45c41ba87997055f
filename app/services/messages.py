"""Posting, reading and deleting encrypted channel messages."""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.core.crypto import MessageCipher
from app.core.errors import AuthorizationError, DecryptionError, NotFoundError, ValidationError
from app.database import atomic
from app.models import Channel, Message
from app.schemas import MessageRead, StoredMessage
from app.services.effects import SideEffects
from app.services.membership import is_member, load_user
from app.services.runtime import ChatRuntime
from app.services.store import stored_message
from huddle.realtime import Topic

logger = logging.getLogger(__name__)


def reveal(cipher: MessageCipher, stored: StoredMessage) -> MessageRead:
    """Decrypt one stored message; an unreadable body yields a marked placeholder."""

    try:
        content = cipher.decrypt(stored.ciphertext, stored.nonce)
    except DecryptionError as exc:
        logger.warning(
            "Failed to decrypt message",
            extra={"message_id": stored.id, "channel_id": stored.channel_id},
        )
        return MessageRead(
            id=stored.id,
            channel_id=stored.channel_id,
            poster_id=stored.poster_id,
            content=None,
            created_at=stored.created_at,
            error=exc.detail,
        )
    return MessageRead(
        id=stored.id,
        channel_id=stored.channel_id,
        poster_id=stored.poster_id,
        content=content,
        created_at=stored.created_at,
    )


def _check_content(content: str) -> str:
    """Reject blank or oversized bodies; the body itself is stored as posted."""

    if not content.strip():
        raise ValidationError("Message must not be empty")
    limit = get_settings().message_max_length
    if len(content) > limit:
        raise ValidationError(f"Message exceeds {limit} characters")
    return content


async def post_message(
    db: AsyncSession,
    runtime: ChatRuntime,
    user_id: int,
    channel_id: int,
    content: str,
) -> MessageRead:
    """Encrypt and store ``content`` in ``channel_id``; only members may post."""

    text = _check_content(content)
    async with atomic(db):
        await load_user(db, user_id)
        if await db.get(Channel, channel_id) is None:
            raise NotFoundError("Channel does not exist")
        if not await is_member(db, channel_id, user_id):
            raise ValidationError("Join first")

        nonce = runtime.cipher.new_nonce()
        message = Message(
            channel_id=channel_id,
            poster_id=user_id,
            ciphertext=runtime.cipher.encrypt(text, nonce),
            nonce=nonce,
        )
        db.add(message)
        await db.flush()
        view = reveal(runtime.cipher, stored_message(message))

    effects = SideEffects(message_channel_ids={channel_id})
    effects.publish(Topic.NEW_MESSAGE, channel_id, view.model_dump(mode="json"))
    await runtime.apply(db, effects)
    logger.info("Message posted", extra={"message_id": view.id, "channel_id": channel_id})
    return view


async def delete_message(
    db: AsyncSession,
    runtime: ChatRuntime,
    user_id: int,
    message_id: int,
    *,
    is_admin: bool = False,
) -> bool:
    """Delete a message; only its poster or an administrator may do so."""

    async with atomic(db):
        message = await db.get(Message, message_id)
        if message is None:
            raise NotFoundError("Message does not exist")
        if message.poster_id != user_id and not is_admin:
            raise AuthorizationError("Only the poster can delete this message")
        channel_id = message.channel_id
        payload = {"id": message.id, "channel_id": channel_id, "poster_id": message.poster_id}
        await db.delete(message)

    effects = SideEffects(message_channel_ids={channel_id})
    effects.publish(Topic.REMOVED_MESSAGE, channel_id, payload)
    await runtime.apply(db, effects)
    logger.info("Message deleted", extra={"message_id": message_id, "channel_id": channel_id})
    return True


async def get_channel_messages(
    db: AsyncSession,
    runtime: ChatRuntime,
    user_id: int,
    channel_id: int,
) -> list[MessageRead]:
    """Return the decrypted messages of ``channel_id`` in posting order.

    Membership is checked against the cached channel snapshot. Each message is
    decrypted on its own; one unreadable body does not fail the list.
    """

    channel = await runtime.cache.get_channel(db, channel_id)
    if channel is None:
        raise NotFoundError("Channel does not exist")
    if user_id not in channel.user_ids:
        raise ValidationError("Join first")
    stored = await runtime.cache.get_channel_messages(db, channel_id)
    return [reveal(runtime.cipher, item) for item in stored]
