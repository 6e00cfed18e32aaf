"""
Typed Socket.IO event payloads
==============================

Inbound payloads on the ``/chat`` namespace are validated against these
models before a handler touches the database.  Field names arrive in
camelCase (``chatId``, ``messageType`` ...); snake_case is accepted too.

Room naming and outbound event names also live here so handlers, REST
broadcasts and tests agree on them.
"""

from __future__ import annotations

import uuid
from typing import Any, Optional, TypeVar

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from tradiechat.core.exceptions import ValidationError
from tradiechat.models.chat import MessageType

E = TypeVar("E", bound="InboundEvent")


# ---------------------------------------------------------------------------
# Rooms
# ---------------------------------------------------------------------------

def chat_room(chat_id: uuid.UUID | str) -> str:
    return f"chat_{chat_id}"


def user_room(user_id: uuid.UUID | str) -> str:
    return f"user_{user_id}"


# ---------------------------------------------------------------------------
# Outbound event names
# ---------------------------------------------------------------------------

JOINED_CHAT = "joined_chat"
LEFT_CHAT = "left_chat"
NEW_MESSAGE = "new_message"
MESSAGE_SENT = "message_sent"
USER_TYPING = "user_typing"
MESSAGE_STATUS_UPDATE = "message_status_update"
MESSAGES_READ = "messages_read"
MESSAGES_MARKED_READ = "messages_marked_read"
MESSAGE_EDITED = "message_edited"
MESSAGE_DELETED = "message_deleted"
USER_STATUS_UPDATE = "user_status_update"
ONLINE_USERS = "online_users"
ERROR = "error"


# ---------------------------------------------------------------------------
# Inbound payloads
# ---------------------------------------------------------------------------

def _to_camel(snake: str) -> str:
    parts = snake.split("_")
    return parts[0] + "".join(word.capitalize() for word in parts[1:])


class InboundEvent(BaseModel):
    model_config = ConfigDict(
        populate_by_name=True,
        alias_generator=_to_camel,
        extra="ignore",
    )


class ChatEvent(InboundEvent):
    """Payload addressing one conversation: ``{chatId}``."""

    chat_id: uuid.UUID


class MessageEvent(ChatEvent):
    """``{chatId, messageId}`` for delivery and read receipts."""

    message_id: uuid.UUID


class SendMessageEvent(ChatEvent):
    message_type: MessageType = MessageType.TEXT
    content: Optional[str] = None
    document_url: Optional[str] = None
    document_name: Optional[str] = None
    document_size: Optional[int] = None

    def payload(self) -> dict[str, Any]:
        return self.model_dump(include={"content", "document_url", "document_name", "document_size"})


class UpdateStatusEvent(InboundEvent):
    status: str


class EditMessageEvent(InboundEvent):
    message_id: uuid.UUID
    content: str


class DeleteMessageEvent(InboundEvent):
    message_id: uuid.UUID


def _describe(exc: PydanticValidationError) -> str:
    error = exc.errors()[0]
    location = ".".join(str(part) for part in error.get("loc", ()))
    return f"{location}: {error['msg']}" if location else error["msg"]


def parse_event(model: type[E], data: Any) -> E:
    """Validate a raw Socket.IO payload.

    Raises:
        ValidationError: If the payload is not an object or fails the model.
    """
    if not isinstance(data, dict):
        raise ValidationError("Payload must be an object")
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(_describe(exc)) from exc
