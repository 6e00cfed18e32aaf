"""
Chat error taxonomy.

Services raise these; the REST routes translate them to HTTP errors and the
realtime handlers translate them to error acknowledgements.
"""

from __future__ import annotations


class ChatError(Exception):
    """Base exception for chat errors."""

    code: str = "internal_error"
    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(ChatError):
    """Malformed or missing input."""

    code = "validation_error"
    status_code = 422


class RoleMismatchError(ValidationError):
    """A participant does not hold the role the conversation expects."""


class AccessDeniedError(ChatError):
    """Caller is not allowed to perform the operation."""

    code = "access_denied"
    status_code = 403


class NotFoundError(ChatError):
    """Conversation, message, project or participant does not exist."""

    code = "not_found"
    status_code = 404


class UnauthorizedError(ChatError):
    """Credential missing, invalid or expired."""

    code = "unauthorized"
    status_code = 401


class ConflictError(ChatError):
    code = "conflict"
    status_code = 409


GENERIC_ERROR_MESSAGE = "Something went wrong, please try again later."
