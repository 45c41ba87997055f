"""Schemas describing channels and their cached snapshots."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, constr


class ChannelRead(BaseModel):
    """Channel snapshot as stored in the cache and returned to clients."""

    id: int
    name: str
    description: str = ""
    user_ids: list[int] = Field(default_factory=list)
    message_ids: list[int] = Field(default_factory=list)
    created_at: datetime


class ChannelList(BaseModel):
    """Ordered channel list snapshot."""

    items: list[ChannelRead] = Field(default_factory=list)


class ChannelCreate(BaseModel):
    """Payload used by administrators to create a channel."""

    name: constr(strip_whitespace=True, min_length=1, max_length=128)
    description: constr(strip_whitespace=True, max_length=2000) = ""


class CurrentChannel(BaseModel):
    """Cached pointer to the channel a user has joined."""

    channel_id: int | None = None
