"""Database models package."""

from .base import Base
from .chat import Channel, ChannelMember, Message, User
from .enums import UserRole

__all__ = [
    "Base",
    "User",
    "Channel",
    "ChannelMember",
    "Message",
    "UserRole",
]
