"""
Pydantic v2 schemas for the Chat API
====================================

Request/response schemas for the REST chat endpoints.  The same output
models serialize the payloads pushed over Socket.IO so both surfaces emit
identical shapes.

All JSON uses camelCase field names via Pydantic's alias generator to match
the mobile client convention.  Every REST response is wrapped in the
``Envelope``: ``{status, message, heading, data}``.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from tradiechat.models.chat import MAX_MESSAGE_LENGTH, ConversationStatus, MessageType
from tradiechat.models.user import UserRole

T = TypeVar("T")

ENVELOPE_HEADING = "Chat"


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def _to_camel(snake: str) -> str:
    """Convert a snake_case string to camelCase."""
    parts = snake.split("_")
    return parts[0] + "".join(word.capitalize() for word in parts[1:])


class CamelModel(BaseModel):
    """Base model that serializes field names to camelCase in JSON."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        alias_generator=_to_camel,
    )


def serialize(schema: type[CamelModel], obj: Any) -> dict[str, Any]:
    """Render ``obj`` through ``schema`` as a JSON-ready camelCase dict."""
    return schema.model_validate(obj).model_dump(mode="json", by_alias=True)


class Envelope(BaseModel, Generic[T]):
    """Uniform response wrapper for every chat endpoint."""

    status: bool = True
    message: str = ""
    heading: str = ENVELOPE_HEADING
    data: Optional[T] = None


# ---------------------------------------------------------------------------
# Pagination
# ---------------------------------------------------------------------------

class PaginationMeta(CamelModel):
    """Pagination metadata returned with list responses."""

    page: int = Field(ge=1, description="Current page number (1-indexed)")
    page_size: int = Field(ge=1, description="Items per page")
    total_items: int = Field(ge=0, description="Total matching items")
    total_pages: int = Field(ge=0, description="Total pages")
    has_more: bool = False


# ---------------------------------------------------------------------------
# Participants & projects
# ---------------------------------------------------------------------------

class ParticipantOut(CamelModel):
    id: uuid.UUID
    full_name: str
    avatar_url: Optional[str] = None
    company_name: Optional[str] = None
    email: Optional[str] = None
    role: UserRole


class ProjectOut(CamelModel):
    id: uuid.UUID
    title: str
    description: Optional[str] = None
    status: str


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

class MessageOut(CamelModel):
    """Single chat message in a list, creation response or socket event."""

    id: uuid.UUID
    chat_id: uuid.UUID
    sender_id: uuid.UUID
    message_type: MessageType
    content: Optional[str] = None
    document_url: Optional[str] = None
    document_name: Optional[str] = None
    document_size: Optional[int] = None
    is_read: bool = False
    read_at: Optional[datetime] = None
    is_edited: bool = False
    edited_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    sender: Optional[ParticipantOut] = None
    receiver: Optional[ParticipantOut] = None


class MessageListData(CamelModel):
    items: list[MessageOut]
    meta: PaginationMeta


class SendMessageRequest(CamelModel):
    """Request body for sending a message.

    Cross-field rules (content vs. document fields) are enforced by the
    message service so REST and Socket.IO reject the same payloads.
    """

    message_type: MessageType = MessageType.TEXT
    content: Optional[str] = None
    document_url: Optional[str] = None
    document_name: Optional[str] = None
    document_size: Optional[int] = None

    def payload(self) -> dict[str, Any]:
        return self.model_dump(exclude={"message_type"})


class EditMessageRequest(CamelModel):
    content: str = Field(description=f"New text (max {MAX_MESSAGE_LENGTH} characters)")


class MarkReadData(CamelModel):
    chat_id: uuid.UUID
    message_ids: list[uuid.UUID]
    count: int = Field(ge=0)
    read_at: datetime


class DeletedMessageData(CamelModel):
    chat_id: uuid.UUID
    message_id: uuid.UUID
    deleted_at: datetime


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

class ConversationOut(CamelModel):
    """A conversation as seen by the requesting participant."""

    id: uuid.UUID
    project_id: uuid.UUID
    tradie_id: uuid.UUID
    builder_id: uuid.UUID
    status: ConversationStatus
    last_message: Optional[str] = None
    last_message_at: datetime
    unread_count: int = Field(ge=0)
    created_at: datetime
    updated_at: datetime
    project: Optional[ProjectOut] = None
    tradie: Optional[ParticipantOut] = None
    builder: Optional[ParticipantOut] = None
    other_participant: Optional[ParticipantOut] = None


class ConversationListData(CamelModel):
    items: list[ConversationOut]
    meta: PaginationMeta


class CreateChatRequest(CamelModel):
    project_id: uuid.UUID
    tradie_id: uuid.UUID
    builder_id: uuid.UUID


class UpdateChatStatusRequest(CamelModel):
    status: ConversationStatus


class ChatStatsOut(CamelModel):
    total_chats: int = Field(ge=0)
    active_chats: int = Field(ge=0)
    total_unread_messages: int = Field(ge=0)
