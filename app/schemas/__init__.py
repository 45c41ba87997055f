"""Pydantic schemas for API payloads and cache snapshots."""

from .auth import LoginRequest, Token, UserCreate, UserDetail, UserRead
from .channels import ChannelCreate, ChannelList, ChannelRead, CurrentChannel
from .events import NotificationPayload
from .messages import MessageCreate, MessageRead, StoredMessage, StoredMessageList

__all__ = [
    "LoginRequest",
    "Token",
    "UserCreate",
    "UserDetail",
    "UserRead",
    "ChannelCreate",
    "ChannelList",
    "ChannelRead",
    "CurrentChannel",
    "NotificationPayload",
    "MessageCreate",
    "MessageRead",
    "StoredMessage",
    "StoredMessageList",
]
