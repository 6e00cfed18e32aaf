"""
TradieChat SQLAlchemy Models
============================

Central import point for all ORM models. Import ``Base`` from here for
Alembic auto-generation and for the ``create_all`` convenience in tests.

Usage::

    from tradiechat.models import Base, Conversation, Message, User
"""

# -- Base & Mixins --
from .base import Base, TimestampMixin, UUIDPrimaryKeyMixin

# -- Collaborator tables (read-only for chat) --
from .user import User, UserRole
from .project import Project
from .notification import DevicePlatform, DeviceToken, NotificationType

# -- Chat --
from .chat import (
    Conversation,
    ConversationStatus,
    Message,
    MessageType,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "UUIDPrimaryKeyMixin",
    "User",
    "UserRole",
    "Project",
    "DevicePlatform",
    "DeviceToken",
    "NotificationType",
    "Conversation",
    "ConversationStatus",
    "Message",
    "MessageType",
]
