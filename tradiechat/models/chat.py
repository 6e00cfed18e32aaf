"""
SQLAlchemy models for conversations and their messages.

A conversation is a two-party thread between one tradie and one builder,
scoped to a single project.  The conversation row carries the per-participant
unread counters and the last-message summary shown in chat lists; messages
are an append-mostly log that supports text edits and soft deletes.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, TimestampMixin, UUIDPrimaryKeyMixin, utcnow

MAX_SUMMARY_LENGTH: int = 500
MAX_MESSAGE_LENGTH: int = 2000


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class ConversationStatus(str, enum.Enum):
    ACTIVE = "active"
    CLOSED = "closed"
    ARCHIVED = "archived"


class MessageType(str, enum.Enum):
    TEXT = "text"
    DOCUMENT = "document"
    IMAGE = "image"


class Conversation(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Chat thread between a tradie and a builder on one project."""

    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint(
            "project_id", "tradie_id", "builder_id",
            name="uq_conversations_project_participants",
        ),
        Index("ix_conversations_tradie_status", "tradie_id", "status"),
        Index("ix_conversations_builder_status", "builder_id", "status"),
        Index("ix_conversations_project_status", "project_id", "status"),
        CheckConstraint("tradie_unread_count >= 0", name="ck_conversations_tradie_unread"),
        CheckConstraint("builder_unread_count >= 0", name="ck_conversations_builder_unread"),
    )

    project_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("projects.id", ondelete="RESTRICT"),
        nullable=False,
    )

    tradie_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
    )

    builder_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
    )

    status: Mapped[ConversationStatus] = mapped_column(
        Enum(
            ConversationStatus,
            name="conversation_status",
            native_enum=False,
            length=20,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=ConversationStatus.ACTIVE,
    )

    last_message_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        index=True,
    )

    last_message: Mapped[Optional[str]] = mapped_column(
        String(MAX_SUMMARY_LENGTH),
        nullable=True,
    )

    tradie_unread_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0",
    )
    builder_unread_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0",
    )

    # Relationships
    project: Mapped["Project"] = relationship("Project", lazy="raise")
    tradie: Mapped["User"] = relationship("User", foreign_keys=[tradie_id], lazy="raise")
    builder: Mapped["User"] = relationship("User", foreign_keys=[builder_id], lazy="raise")

    def is_participant(self, user_id: uuid.UUID) -> bool:
        return user_id in (self.tradie_id, self.builder_id)

    def __repr__(self) -> str:
        return (
            f"<Conversation(id={self.id}, project_id={self.project_id}, "
            f"tradie_id={self.tradie_id}, builder_id={self.builder_id}, "
            f"status={self.status})>"
        )


class Message(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """One message inside a conversation.

    ``content`` is populated for text messages; the ``document_*`` columns
    are populated for document and image messages.
    """

    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_conversation_created", "conversation_id", "created_at"),
        Index("ix_messages_sender_created", "sender_id", "created_at"),
        Index(
            "ix_messages_conversation_deleted_created",
            "conversation_id", "is_deleted", "created_at",
        ),
    )

    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
    )

    sender_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
    )

    message_type: Mapped[MessageType] = mapped_column(
        Enum(
            MessageType,
            name="message_type",
            native_enum=False,
            length=20,
            values_callable=_enum_values,
        ),
        nullable=False,
        default=MessageType.TEXT,
    )

    content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    document_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    document_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    document_size: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    is_read: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false",
    )
    read_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    is_edited: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false",
    )
    edited_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    is_deleted: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false",
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    # Relationships
    conversation: Mapped["Conversation"] = relationship("Conversation", lazy="raise")
    sender: Mapped["User"] = relationship("User", lazy="raise")

    def __repr__(self) -> str:
        return (
            f"<Message(id={self.id}, conversation_id={self.conversation_id}, "
            f"sender_id={self.sender_id}, type={self.message_type})>"
        )
