"""Payload shapes carried by realtime events."""

from __future__ import annotations

from pydantic import BaseModel


class NotificationPayload(BaseModel):
    """Human readable notice broadcast on a channel."""

    message: str
