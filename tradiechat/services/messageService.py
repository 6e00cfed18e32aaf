"""
Message Service
===============

Persistence and retrieval of chat messages: payload validation, append,
paginated history, read receipts, edits and soft deletes.

Rules:
  - Text messages carry ``content`` (max 2000 characters); document and
    image messages carry url + name + size instead.
  - Only the sender may edit or delete a message.  Only text messages can
    be edited, and deleted messages can be neither edited nor deleted again.
  - Deleted messages never appear in listings or unread counts.
  - A sender never marks their own messages as read.
"""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Mapping, Optional, Sequence

from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tradiechat.core.exceptions import AccessDeniedError, NotFoundError, ValidationError
from tradiechat.models.base import utcnow
from tradiechat.models.chat import MAX_MESSAGE_LENGTH, Conversation, Message, MessageType

from . import directoryService
from .directoryService import ParticipantProfile

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data transfer objects
# ---------------------------------------------------------------------------

@dataclass
class MessagePayload:
    """Validated message body.  Exactly one attribute set is populated."""

    content: Optional[str] = None
    document_url: Optional[str] = None
    document_name: Optional[str] = None
    document_size: Optional[int] = None


@dataclass
class MessageView:
    """A stored message with sender and receiver identity resolved."""

    id: uuid.UUID
    chat_id: uuid.UUID
    sender_id: uuid.UUID
    message_type: str
    content: Optional[str]
    document_url: Optional[str]
    document_name: Optional[str]
    document_size: Optional[int]
    is_read: bool
    read_at: Optional[datetime]
    is_edited: bool
    edited_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime
    sender: Optional[ParticipantProfile] = None
    receiver: Optional[ParticipantProfile] = None


@dataclass
class PaginatedMessages:
    items: List[MessageView]
    page: int
    page_size: int
    total_items: int
    total_pages: int
    has_more: bool = False
    before: Optional[datetime] = field(default=None)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _parse_type(message_type: MessageType | str | None) -> MessageType:
    if isinstance(message_type, MessageType):
        return message_type
    try:
        return MessageType((message_type or "text").lower())
    except ValueError:
        valid = ", ".join(t.value for t in MessageType)
        raise ValidationError(f"Invalid messageType. Must be one of: {valid}")


def _validate_text(content: Any) -> str:
    if not isinstance(content, str) or not content.strip():
        raise ValidationError("Message content is required for text messages")
    content = content.strip()
    if len(content) > MAX_MESSAGE_LENGTH:
        raise ValidationError(
            f"Message exceeds maximum length of {MAX_MESSAGE_LENGTH} characters"
        )
    return content


def validate_payload(
    message_type: MessageType | str | None,
    payload: Mapping[str, Any],
) -> tuple[MessageType, MessagePayload]:
    """Check a message body against its type.

    ``payload`` uses snake_case keys: ``content`` for text, or
    ``document_url``, ``document_name`` and ``document_size``.

    Raises:
        ValidationError: On an unknown type, missing fields, oversize text,
            or a negative / non-integer document size.
    """
    parsed = _parse_type(message_type)

    if parsed == MessageType.TEXT:
        return parsed, MessagePayload(content=_validate_text(payload.get("content")))

    url = payload.get("document_url")
    name = payload.get("document_name")
    size = payload.get("document_size")
    if not isinstance(url, str) or not url.strip():
        raise ValidationError(f"documentUrl is required for {parsed.value} messages")
    if not isinstance(name, str) or not name.strip():
        raise ValidationError(f"documentName is required for {parsed.value} messages")
    if size is None:
        raise ValidationError(f"documentSize is required for {parsed.value} messages")
    if isinstance(size, bool) or not isinstance(size, int) or size < 0:
        raise ValidationError("documentSize must be a non-negative integer")

    return parsed, MessagePayload(
        document_url=url.strip(),
        document_name=name.strip(),
        document_size=size,
    )


# ---------------------------------------------------------------------------
# View building
# ---------------------------------------------------------------------------

def _to_view(
    msg: Message,
    conversation: Conversation,
    profiles: Mapping[uuid.UUID, ParticipantProfile],
) -> MessageView:
    receiver_id = (
        conversation.builder_id if msg.sender_id == conversation.tradie_id else conversation.tradie_id
    )
    return MessageView(
        id=msg.id,
        chat_id=msg.conversation_id,
        sender_id=msg.sender_id,
        message_type=msg.message_type.value,
        content=msg.content,
        document_url=msg.document_url,
        document_name=msg.document_name,
        document_size=msg.document_size,
        is_read=msg.is_read,
        read_at=msg.read_at,
        is_edited=msg.is_edited,
        edited_at=msg.edited_at,
        created_at=msg.created_at,
        updated_at=msg.updated_at,
        sender=profiles.get(msg.sender_id),
        receiver=profiles.get(receiver_id),
    )


async def build_message_views(
    db: AsyncSession,
    conversation: Conversation,
    messages: Sequence[Message],
) -> list[MessageView]:
    profiles = await directoryService.get_participants(
        db, [conversation.tradie_id, conversation.builder_id],
    )
    return [_to_view(msg, conversation, profiles) for msg in messages]


async def _get_message(db: AsyncSession, message_id: uuid.UUID) -> Message:
    stmt = select(Message).where(Message.id == message_id).execution_options(populate_existing=True)
    msg = (await db.execute(stmt)).scalar_one_or_none()
    if msg is None:
        raise NotFoundError("Message not found")
    return msg


async def build_message_view(db: AsyncSession, msg: Message) -> MessageView:
    """Resolve the conversation of ``msg`` and build its view."""
    conversation = (
        await db.execute(select(Conversation).where(Conversation.id == msg.conversation_id))
    ).scalar_one()
    views = await build_message_views(db, conversation, [msg])
    return views[0]


# ---------------------------------------------------------------------------
# Public service functions
# ---------------------------------------------------------------------------

async def append(
    db: AsyncSession,
    conversation: Conversation,
    sender_id: uuid.UUID,
    message_type: MessageType | str | None,
    payload: Mapping[str, Any],
) -> MessageView:
    """Validate and persist a new message from ``sender_id``.

    The caller is responsible for the participant check (see
    ``conversationService.get_for_participant``) and for committing.
    """
    parsed_type, body = validate_payload(message_type, payload)
    if not conversation.is_participant(sender_id):
        raise NotFoundError("Chat not found")

    msg = Message(
        conversation_id=conversation.id,
        sender_id=sender_id,
        message_type=parsed_type,
        content=body.content,
        document_url=body.document_url,
        document_name=body.document_name,
        document_size=body.document_size,
        is_read=False,
        read_at=None,
        is_edited=False,
        edited_at=None,
        is_deleted=False,
        deleted_at=None,
    )
    db.add(msg)
    await db.flush()

    logger.info(
        "Message created: id=%s chat=%s sender=%s type=%s",
        msg.id, conversation.id, sender_id, parsed_type.value,
    )
    views = await build_message_views(db, conversation, [msg])
    return views[0]


async def list_page(
    db: AsyncSession,
    conversation: Conversation,
    *,
    page: int = 1,
    page_size: int = 50,
    before: Optional[datetime] = None,
) -> PaginatedMessages:
    """Return one page of history.

    Page 1 holds the newest ``page_size`` messages; each page is returned
    oldest first so the client can render it directly.  Passing the
    ``before`` timestamp seen on the first fetch keeps later pages stable
    while new messages arrive.
    """
    conditions = [
        Message.conversation_id == conversation.id,
        Message.is_deleted.is_(False),
    ]
    if before is not None:
        conditions.append(Message.created_at < before)
    where_clause = and_(*conditions)

    count_stmt = select(func.count()).select_from(Message).where(where_clause)
    total_items = (await db.execute(count_stmt)).scalar() or 0
    total_pages = math.ceil(total_items / page_size) if total_items else 0

    offset = (page - 1) * page_size
    stmt = (
        select(Message)
        .where(where_clause)
        .order_by(Message.created_at.desc(), Message.id.desc())
        .offset(offset)
        .limit(page_size)
        .execution_options(populate_existing=True)
    )
    newest_first = (await db.execute(stmt)).scalars().all()
    items = await build_message_views(db, conversation, list(reversed(newest_first)))

    return PaginatedMessages(
        items=items,
        page=page,
        page_size=page_size,
        total_items=total_items,
        total_pages=total_pages,
        has_more=offset + len(items) < total_items,
        before=before,
    )


async def mark_all_read_except_sender(
    db: AsyncSession,
    conversation_id: uuid.UUID,
    reader_id: uuid.UUID,
    *,
    read_at: Optional[datetime] = None,
) -> list[uuid.UUID]:
    """Mark every unread message from the other participant as read.

    Returns:
        Ids of the messages that changed state (empty if none).
    """
    unread_stmt = select(Message.id).where(
        Message.conversation_id == conversation_id,
        Message.sender_id != reader_id,
        Message.is_read.is_(False),
        Message.is_deleted.is_(False),
    )
    ids = list((await db.execute(unread_stmt)).scalars().all())
    if not ids:
        return []

    stmt = (
        update(Message)
        .where(Message.id.in_(ids), Message.is_read.is_(False))
        .values(is_read=True, read_at=read_at or utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.execute(stmt)

    logger.info(
        "Marked %d messages as read: chat=%s reader=%s",
        len(ids), conversation_id, reader_id,
    )
    return ids


async def mark_one_read(
    db: AsyncSession,
    conversation_id: uuid.UUID,
    message_id: uuid.UUID,
    reader_id: uuid.UUID,
    *,
    read_at: Optional[datetime] = None,
) -> bool:
    """Mark a single message read.

    Returns:
        True if the message changed state; False when it was already read,
        deleted, sent by the reader, or not in the conversation.
    """
    stmt = (
        update(Message)
        .where(
            Message.id == message_id,
            Message.conversation_id == conversation_id,
            Message.sender_id != reader_id,
            Message.is_read.is_(False),
            Message.is_deleted.is_(False),
        )
        .values(is_read=True, read_at=read_at or utcnow())
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return result.rowcount == 1


async def soft_delete(
    db: AsyncSession,
    message_id: uuid.UUID,
    requester_id: uuid.UUID,
) -> Message:
    """Hide a message from listings.

    Raises:
        NotFoundError: If the message does not exist.
        AccessDeniedError: If the requester is not the sender or the message
            was already deleted.
    """
    msg = await _get_message(db, message_id)
    if msg.sender_id != requester_id:
        raise AccessDeniedError("You can only delete your own messages")
    if msg.is_deleted:
        raise AccessDeniedError("Message has already been deleted")

    msg.is_deleted = True
    msg.deleted_at = utcnow()
    await db.flush()

    logger.info("Message deleted: id=%s chat=%s by=%s", msg.id, msg.conversation_id, requester_id)
    return msg


async def edit(
    db: AsyncSession,
    message_id: uuid.UUID,
    requester_id: uuid.UUID,
    new_content: Any,
) -> Message:
    """Replace the content of a text message.

    Raises:
        NotFoundError: If the message does not exist.
        AccessDeniedError: If the requester is not the sender, the message is
            not text, or it has been deleted.
        ValidationError: If the new content is empty or too long.
    """
    msg = await _get_message(db, message_id)
    if msg.sender_id != requester_id:
        raise AccessDeniedError("You can only edit your own messages")
    if msg.is_deleted:
        raise AccessDeniedError("Deleted messages cannot be edited")
    if msg.message_type != MessageType.TEXT:
        raise AccessDeniedError("Only text messages can be edited")

    msg.content = _validate_text(new_content)
    msg.is_edited = True
    msg.edited_at = utcnow()
    await db.flush()

    logger.info("Message edited: id=%s chat=%s", msg.id, msg.conversation_id)
    return msg


async def count_unread(
    db: AsyncSession,
    conversation_id: uuid.UUID,
    user_id: uuid.UUID,
) -> int:
    """Count messages from the other participant that ``user_id`` has not read."""
    stmt = (
        select(func.count())
        .select_from(Message)
        .where(
            Message.conversation_id == conversation_id,
            Message.sender_id != user_id,
            Message.is_read.is_(False),
            Message.is_deleted.is_(False),
        )
    )
    return (await db.execute(stmt)).scalar() or 0
