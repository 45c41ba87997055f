"""Typed failures raised by the chat core."""

from __future__ import annotations


class HuddleError(Exception):
    """Base class for failures surfaced to API callers."""

    code = "error"
    status_code = 500
    default_detail = "Something went wrong"

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.__class__.default_detail
        super().__init__(self.detail)


class ValidationError(HuddleError):
    """A precondition of the requested operation does not hold."""

    code = "validation_error"
    status_code = 400
    default_detail = "Invalid request"


class NotFoundError(HuddleError):
    """A referenced user, channel or message does not exist."""

    code = "not_found"
    status_code = 404
    default_detail = "Resource does not exist"


class AuthenticationError(HuddleError):
    """The caller could not be identified."""

    code = "not_authenticated"
    status_code = 401
    default_detail = "Not authenticated"


class AuthorizationError(HuddleError):
    """The caller lacks the identity or role required by the operation."""

    code = "not_authorized"
    status_code = 403
    default_detail = "Not authorized"


class ConflictError(HuddleError):
    """A uniqueness constraint rejected a create."""

    code = "conflict"
    status_code = 409
    default_detail = "Resource already exists"


class DecryptionError(HuddleError):
    """A single message body could not be decrypted with the current key."""

    code = "decryption_failed"
    status_code = 500
    default_detail = "Message could not be decrypted"


class StorageError(HuddleError):
    """The durable store is unavailable or a transaction failed; safe to retry."""

    code = "storage_unavailable"
    status_code = 503
    default_detail = "Storage is temporarily unavailable"
