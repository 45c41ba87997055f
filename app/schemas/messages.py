"""Schemas related to chat messages."""

from __future__ import annotations

import base64
from datetime import datetime

from pydantic import BaseModel, Field, field_serializer, field_validator

from app.schemas.auth import UserRead
from app.schemas.channels import ChannelRead


class StoredMessage(BaseModel):
    """Encrypted message exactly as persisted; the only form that is cached."""

    id: int
    channel_id: int
    poster_id: int
    ciphertext: bytes
    nonce: bytes
    created_at: datetime

    @field_serializer("ciphertext", "nonce")
    def encode_bytes(self, value: bytes) -> str:
        return base64.b64encode(value).decode("ascii")

    @field_validator("ciphertext", "nonce", mode="before")
    @classmethod
    def decode_bytes(cls, value: object) -> object:
        if isinstance(value, str):
            return base64.b64decode(value)
        return value


class StoredMessageList(BaseModel):
    """Cached message list of one channel, in insertion order."""

    items: list[StoredMessage] = Field(default_factory=list)


class MessageRead(BaseModel):
    """Decrypted view of a message.

    ``content`` is ``None`` and ``error`` is set when the body could not be
    decrypted with the current key.
    """

    id: int
    channel_id: int
    poster_id: int
    content: str | None
    created_at: datetime
    error: str | None = None
    poster: UserRead | None = None
    channel: ChannelRead | None = None


class MessageCreate(BaseModel):
    """Payload for posting a message."""

    content: str = Field(..., min_length=1)
