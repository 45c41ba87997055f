"""Schemas for authentication endpoints."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, EmailStr, Field, constr

from app.models.enums import UserRole
from app.schemas.channels import ChannelRead


class UserRead(BaseModel):
    """Public representation of a user."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    name: str | None = None
    role: UserRole = UserRole.USER
    channel_id: int | None = None
    created_at: datetime


class UserCreate(BaseModel):
    """Payload for creating a new user via registration."""

    username: constr(strip_whitespace=True, min_length=3, max_length=64) = Field(
        ..., description="Unique username consisting of 3-64 characters"
    )
    name: constr(strip_whitespace=True, min_length=1, max_length=128) | None = Field(
        default=None, description="Optional display name"
    )
    email: EmailStr
    password: constr(min_length=8, max_length=128) = Field(
        ..., description="Plain text password that will be hashed before storing"
    )
    captcha_token: str | None = Field(
        default=None, description="reCAPTCHA response token, required when verification is enabled"
    )


class LoginRequest(BaseModel):
    """Payload for user login."""

    username: constr(min_length=3, max_length=64) = Field(..., description="Username")
    password: constr(min_length=8, max_length=128) = Field(..., description="User password")


class Token(BaseModel):
    """Access token returned after successful authentication."""

    access_token: str = Field(..., description="JWT access token")
    token_type: str = Field(default="bearer", description="Token type, always 'bearer'")
    user: UserRead


class UserDetail(UserRead):
    """User with the joined channel resolved."""

    channel: ChannelRead | None = None
