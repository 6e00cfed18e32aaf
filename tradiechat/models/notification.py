"""
SQLAlchemy model for device_tokens plus the chat notification types.

Device tokens are registered and pruned by the notification service that
owns them; the chat core only reads the active tokens of a recipient.
"""

from __future__ import annotations

import enum
import uuid
from typing import Optional

from sqlalchemy import Boolean, Enum, ForeignKey, Index, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, UUIDPrimaryKeyMixin


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class DevicePlatform(str, enum.Enum):
    """Supported mobile platforms for push notifications."""
    IOS = "ios"
    ANDROID = "android"


class NotificationType(str, enum.Enum):
    """Chat events that produce a push notification."""
    CHAT_CREATED = "chat_created"
    MESSAGE_SENT = "message_sent"


# ---------------------------------------------------------------------------
# DeviceToken
# ---------------------------------------------------------------------------

class DeviceToken(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """FCM device token for a user/device pair.

    A single user can have multiple active tokens (e.g. phone + tablet).
    """
    __tablename__ = "device_tokens"

    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    device_token: Mapped[str] = mapped_column(
        String(512),
        nullable=False,
    )
    platform: Mapped[DevicePlatform] = mapped_column(
        Enum(
            DevicePlatform,
            name="device_platform",
            native_enum=False,
            length=20,
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
    )
    app_version: Mapped[Optional[str]] = mapped_column(
        String(50),
        nullable=True,
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default="true",
    )

    __table_args__ = (
        Index(
            "uq_device_tokens_user_token",
            "user_id",
            "device_token",
            unique=True,
        ),
        Index("ix_device_tokens_active", "user_id", "is_active"),
    )

    def __repr__(self) -> str:
        return (
            f"<DeviceToken(id={self.id}, user_id={self.user_id}, "
            f"platform={self.platform}, active={self.is_active})>"
        )
