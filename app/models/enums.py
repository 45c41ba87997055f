from __future__ import annotations

from enum import Enum


class UserRole(str, Enum):
    """Service-wide roles assigned at registration."""

    USER = "user"
    ADMIN = "admin"
