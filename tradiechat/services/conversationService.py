"""
Conversation Service
====================

Business logic for chat conversations: lazy creation per (project, tradie,
builder) triple, participant-scoped lookup, per-participant unread counters,
and the last-message summary shown in chat lists.

Rules:
  - A conversation has exactly two participants: one tradie and one builder.
  - Creation is idempotent; a concurrent duplicate resolves to the row that
    won the unique constraint.
  - A participant's unread counter moves only through
    ``record_outgoing_message`` (+1 for the other participant),
    ``consume_unread`` and ``retract_unread`` (down by the messages that
    stopped being unread, floored at zero) and ``reset_unread`` (zero).
  - Conversations are never hard-deleted; only their status changes.
"""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tradiechat.core.exceptions import ConflictError, NotFoundError, RoleMismatchError, ValidationError
from tradiechat.models.base import utcnow
from tradiechat.models.chat import (
    MAX_SUMMARY_LENGTH,
    Conversation,
    ConversationStatus,
    MessageType,
)
from tradiechat.models.user import UserRole

from . import directoryService
from .directoryService import ParticipantProfile, ProjectSummary

logger = logging.getLogger(__name__)

# Characters of text content copied into the conversation summary.
SUMMARY_PREVIEW_LENGTH: int = 100


# ---------------------------------------------------------------------------
# Data transfer objects
# ---------------------------------------------------------------------------

@dataclass
class ConversationView:
    """A conversation as seen by one of its participants."""

    id: uuid.UUID
    project_id: uuid.UUID
    tradie_id: uuid.UUID
    builder_id: uuid.UUID
    status: str
    last_message: Optional[str]
    last_message_at: datetime
    unread_count: int
    created_at: datetime
    updated_at: datetime
    project: Optional[ProjectSummary] = None
    tradie: Optional[ParticipantProfile] = None
    builder: Optional[ParticipantProfile] = None
    other_participant: Optional[ParticipantProfile] = None


@dataclass
class PaginatedConversations:
    items: List[ConversationView]
    page: int
    page_size: int
    total_items: int
    total_pages: int


@dataclass
class ChatStats:
    total_chats: int
    active_chats: int
    total_unread_messages: int


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def other_participant_id(conversation: Conversation, user_id: uuid.UUID) -> uuid.UUID:
    """Return the id of the participant who is not ``user_id``."""
    if conversation.tradie_id == user_id:
        return conversation.builder_id
    if conversation.builder_id == user_id:
        return conversation.tradie_id
    raise NotFoundError("Chat not found")


def unread_count_for(conversation: Conversation, user_id: uuid.UUID) -> int:
    if conversation.tradie_id == user_id:
        return conversation.tradie_unread_count
    if conversation.builder_id == user_id:
        return conversation.builder_unread_count
    return 0


def build_summary(message_type: MessageType | str, content: Optional[str]) -> str:
    """Derive the conversation summary for a newly appended message.

    Text messages contribute their first 100 characters; document and image
    messages read "Sent a document" / "Sent a image".
    """
    type_value = message_type.value if isinstance(message_type, MessageType) else str(message_type)
    if type_value == MessageType.TEXT.value:
        return (content or "")[:SUMMARY_PREVIEW_LENGTH]
    return f"Sent a {type_value}"


def _participant_filter(user_id: uuid.UUID):
    return or_(Conversation.tradie_id == user_id, Conversation.builder_id == user_id)


def _parse_status(status: ConversationStatus | str | None) -> Optional[ConversationStatus]:
    if status is None or isinstance(status, ConversationStatus):
        return status
    try:
        return ConversationStatus(status.lower())
    except ValueError:
        valid = ", ".join(s.value for s in ConversationStatus)
        raise ValidationError(f"Invalid status. Must be one of: {valid}")


async def _find_by_triple(
    db: AsyncSession,
    project_id: uuid.UUID,
    tradie_id: uuid.UUID,
    builder_id: uuid.UUID,
) -> Optional[Conversation]:
    stmt = select(Conversation).where(
        Conversation.project_id == project_id,
        Conversation.tradie_id == tradie_id,
        Conversation.builder_id == builder_id,
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def build_conversation_views(
    db: AsyncSession,
    conversations: Sequence[Conversation],
    viewer_id: uuid.UUID,
) -> list[ConversationView]:
    """Attach participant profiles and project summaries in bulk."""
    user_ids = {c.tradie_id for c in conversations} | {c.builder_id for c in conversations}
    profiles = await directoryService.get_participants(db, user_ids)
    projects = await directoryService.get_projects(db, {c.project_id for c in conversations})

    views = []
    for conv in conversations:
        other_id = conv.builder_id if conv.tradie_id == viewer_id else conv.tradie_id
        views.append(
            ConversationView(
                id=conv.id,
                project_id=conv.project_id,
                tradie_id=conv.tradie_id,
                builder_id=conv.builder_id,
                status=conv.status.value,
                last_message=conv.last_message,
                last_message_at=conv.last_message_at,
                unread_count=unread_count_for(conv, viewer_id),
                created_at=conv.created_at,
                updated_at=conv.updated_at,
                project=projects.get(conv.project_id),
                tradie=profiles.get(conv.tradie_id),
                builder=profiles.get(conv.builder_id),
                other_participant=profiles.get(other_id),
            )
        )
    return views


async def build_conversation_view(
    db: AsyncSession,
    conversation: Conversation,
    viewer_id: uuid.UUID,
) -> ConversationView:
    views = await build_conversation_views(db, [conversation], viewer_id)
    return views[0]


# ---------------------------------------------------------------------------
# Public service functions
# ---------------------------------------------------------------------------

async def create_or_get_conversation(
    db: AsyncSession,
    project_id: uuid.UUID,
    tradie_id: uuid.UUID,
    builder_id: uuid.UUID,
) -> tuple[Conversation, bool]:
    """Return the conversation for the triple, creating it if absent.

    Returns:
        ``(conversation, created)``.

    Raises:
        NotFoundError: If the project or either user does not exist.
        RoleMismatchError: If the users do not hold the tradie / builder roles.
    """
    project = await directoryService.get_project(db, project_id)
    if project is None:
        raise NotFoundError("Project not found")

    tradie = await directoryService.get_participant(db, tradie_id)
    if tradie is None:
        raise NotFoundError("Tradie not found")
    builder = await directoryService.get_participant(db, builder_id)
    if builder is None:
        raise NotFoundError("Builder not found")

    if tradie.role != UserRole.TRADIE:
        raise RoleMismatchError("tradieId must reference a user with the tradie role")
    if builder.role != UserRole.BUILDER:
        raise RoleMismatchError("builderId must reference a user with the builder role")

    existing = await _find_by_triple(db, project_id, tradie_id, builder_id)
    if existing is not None:
        return existing, False

    conversation = Conversation(
        project_id=project_id,
        tradie_id=tradie_id,
        builder_id=builder_id,
        status=ConversationStatus.ACTIVE,
        last_message_at=utcnow(),
        last_message=None,
        tradie_unread_count=0,
        builder_unread_count=0,
    )
    try:
        async with db.begin_nested():
            db.add(conversation)
            await db.flush()
    except IntegrityError:
        # Lost the race against a concurrent create for the same triple.
        existing = await _find_by_triple(db, project_id, tradie_id, builder_id)
        if existing is None:
            raise ConflictError("Chat could not be created")
        logger.info(
            "Conversation create race resolved to existing: id=%s project=%s",
            existing.id, project_id,
        )
        return existing, False

    logger.info(
        "Conversation created: id=%s project=%s tradie=%s builder=%s",
        conversation.id, project_id, tradie_id, builder_id,
    )
    return conversation, True


async def list_for_user(
    db: AsyncSession,
    user_id: uuid.UUID,
    *,
    status: ConversationStatus | str | None = ConversationStatus.ACTIVE,
    project_id: Optional[uuid.UUID] = None,
    page: int = 1,
    page_size: int = 20,
) -> PaginatedConversations:
    """List the user's conversations, most recently active first."""
    conditions = [_participant_filter(user_id)]
    parsed_status = _parse_status(status)
    if parsed_status is not None:
        conditions.append(Conversation.status == parsed_status)
    if project_id is not None:
        conditions.append(Conversation.project_id == project_id)

    return await _paginate(db, and_(*conditions), user_id, page, page_size)


async def list_for_project(
    db: AsyncSession,
    project_id: uuid.UUID,
    user_id: uuid.UUID,
    *,
    status: ConversationStatus | str | None = ConversationStatus.ACTIVE,
    tradie_id: Optional[uuid.UUID] = None,
    builder_id: Optional[uuid.UUID] = None,
    page: int = 1,
    page_size: int = 20,
) -> PaginatedConversations:
    """List a project's conversations visible to ``user_id``.

    The project owner sees every conversation on the project; anyone else
    sees only the conversations they participate in.  ``tradie_id`` and
    ``builder_id`` narrow the result further.
    """
    project = await directoryService.get_project(db, project_id)
    if project is None:
        raise NotFoundError("Project not found")

    conditions = [Conversation.project_id == project_id]
    if project.builder_id != user_id:
        conditions.append(_participant_filter(user_id))
    if tradie_id is not None:
        conditions.append(Conversation.tradie_id == tradie_id)
    if builder_id is not None:
        conditions.append(Conversation.builder_id == builder_id)
    parsed_status = _parse_status(status)
    if parsed_status is not None:
        conditions.append(Conversation.status == parsed_status)

    return await _paginate(db, and_(*conditions), user_id, page, page_size)


async def _paginate(
    db: AsyncSession,
    where_clause,
    viewer_id: uuid.UUID,
    page: int,
    page_size: int,
) -> PaginatedConversations:
    count_stmt = select(func.count()).select_from(Conversation).where(where_clause)
    total_items = (await db.execute(count_stmt)).scalar() or 0
    total_pages = math.ceil(total_items / page_size) if total_items else 0

    stmt = (
        select(Conversation)
        .where(where_clause)
        .order_by(Conversation.last_message_at.desc(), Conversation.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        # Counters are written by Core UPDATEs; reload them.
        .execution_options(populate_existing=True)
    )
    conversations = (await db.execute(stmt)).scalars().all()
    items = await build_conversation_views(db, conversations, viewer_id)

    return PaginatedConversations(
        items=items,
        page=page,
        page_size=page_size,
        total_items=total_items,
        total_pages=total_pages,
    )


async def get_for_participant(
    db: AsyncSession,
    conversation_id: uuid.UUID,
    user_id: uuid.UUID,
) -> Conversation:
    """Load a conversation the user participates in.

    Raises:
        NotFoundError: If the conversation does not exist or the user is not
            one of its participants.  Both cases carry the same message.
    """
    stmt = select(Conversation).where(
        Conversation.id == conversation_id,
        _participant_filter(user_id),
    ).execution_options(populate_existing=True)
    conversation = (await db.execute(stmt)).scalar_one_or_none()
    if conversation is None:
        raise NotFoundError("Chat not found")
    return conversation


async def record_outgoing_message(
    db: AsyncSession,
    conversation_id: uuid.UUID,
    sender_id: uuid.UUID,
    summary: str,
    *,
    sent_at: Optional[datetime] = None,
) -> None:
    """Update the summary and bump the recipient's unread counter.

    A single UPDATE statement so concurrent sends never lose an increment.
    ORM instances already loaded in ``db`` are not refreshed.
    """
    stmt = (
        update(Conversation)
        .where(Conversation.id == conversation_id)
        .values(
            last_message=summary[:MAX_SUMMARY_LENGTH],
            last_message_at=sent_at or utcnow(),
            tradie_unread_count=case(
                (Conversation.builder_id == sender_id, Conversation.tradie_unread_count + 1),
                else_=Conversation.tradie_unread_count,
            ),
            builder_unread_count=case(
                (Conversation.tradie_id == sender_id, Conversation.builder_unread_count + 1),
                else_=Conversation.builder_unread_count,
            ),
        )
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    if result.rowcount == 0:
        raise NotFoundError("Chat not found")


async def reset_unread(
    db: AsyncSession,
    conversation_id: uuid.UUID,
    user_id: uuid.UUID,
) -> None:
    """Zero the user's unread counter.  Idempotent."""
    stmt = (
        update(Conversation)
        .where(Conversation.id == conversation_id, _participant_filter(user_id))
        .values(
            tradie_unread_count=case(
                (Conversation.tradie_id == user_id, 0),
                else_=Conversation.tradie_unread_count,
            ),
            builder_unread_count=case(
                (Conversation.builder_id == user_id, 0),
                else_=Conversation.builder_unread_count,
            ),
        )
        .execution_options(synchronize_session=False)
    )
    await db.execute(stmt)


def _decremented(column, amount: int):
    return case((column > amount, column - amount), else_=0)


async def consume_unread(
    db: AsyncSession,
    conversation_id: uuid.UUID,
    user_id: uuid.UUID,
    count: int,
) -> None:
    """Take ``count`` read messages off the user's unread counter.

    Used after marking messages read: a message recorded between the read
    and this UPDATE stays counted, which a reset to zero would lose.
    """
    if count <= 0:
        return
    stmt = (
        update(Conversation)
        .where(Conversation.id == conversation_id, _participant_filter(user_id))
        .values(
            tradie_unread_count=case(
                (Conversation.tradie_id == user_id, _decremented(Conversation.tradie_unread_count, count)),
                else_=Conversation.tradie_unread_count,
            ),
            builder_unread_count=case(
                (Conversation.builder_id == user_id, _decremented(Conversation.builder_unread_count, count)),
                else_=Conversation.builder_unread_count,
            ),
        )
        .execution_options(synchronize_session=False)
    )
    await db.execute(stmt)


async def retract_unread(
    db: AsyncSession,
    conversation_id: uuid.UUID,
    sender_id: uuid.UUID,
) -> None:
    """Drop one unread message from ``sender_id`` off the recipient's counter."""
    stmt = (
        update(Conversation)
        .where(Conversation.id == conversation_id)
        .values(
            tradie_unread_count=case(
                (Conversation.builder_id == sender_id, _decremented(Conversation.tradie_unread_count, 1)),
                else_=Conversation.tradie_unread_count,
            ),
            builder_unread_count=case(
                (Conversation.tradie_id == sender_id, _decremented(Conversation.builder_unread_count, 1)),
                else_=Conversation.builder_unread_count,
            ),
        )
        .execution_options(synchronize_session=False)
    )
    await db.execute(stmt)


async def set_status(
    db: AsyncSession,
    conversation_id: uuid.UUID,
    user_id: uuid.UUID,
    status: ConversationStatus | str,
) -> Conversation:
    """Move a conversation to ``status``.  Either participant may do this."""
    new_status = _parse_status(status)
    if new_status is None:
        raise ValidationError("status is required")

    conversation = await get_for_participant(db, conversation_id, user_id)
    if conversation.status != new_status:
        old_status = conversation.status
        conversation.status = new_status
        await db.flush()
        logger.info(
            "Conversation status changed: id=%s %s -> %s by user=%s",
            conversation_id, old_status.value, new_status.value, user_id,
        )
    return conversation


async def list_active_conversation_ids(
    db: AsyncSession,
    user_id: uuid.UUID,
) -> list[uuid.UUID]:
    stmt = select(Conversation.id).where(
        _participant_filter(user_id),
        Conversation.status == ConversationStatus.ACTIVE,
    )
    return list((await db.execute(stmt)).scalars().all())


async def get_stats(db: AsyncSession, user_id: uuid.UUID) -> ChatStats:
    """Conversation totals for the user's dashboard.

    ``total_chats`` counts every status; ``active_chats`` and
    ``total_unread_messages`` only count active conversations.
    """
    is_active = Conversation.status == ConversationStatus.ACTIVE
    own_unread = case(
        (Conversation.tradie_id == user_id, Conversation.tradie_unread_count),
        else_=Conversation.builder_unread_count,
    )
    stmt = select(
        func.count(),
        func.coalesce(func.sum(case((is_active, 1), else_=0)), 0),
        func.coalesce(func.sum(case((is_active, own_unread), else_=0)), 0),
    ).where(_participant_filter(user_id))
    total, active, unread = (await db.execute(stmt)).one()
    return ChatStats(
        total_chats=int(total or 0),
        active_chats=int(active or 0),
        total_unread_messages=int(unread or 0),
    )
