"""
Notification Service
====================

Orchestration layer between the chat core and the FCM push integration.
For each chat event that warrants a push it:

  1. Builds the title and body for the notification type.
  2. Resolves the recipient's active device tokens.
  3. Sends the push through ``integrations.fcm.pushService``.

Pushes are fire-and-forget from the caller's point of view: ``dispatch``
schedules ``notify`` on the running loop and any failure is logged, never
raised back into a chat operation.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tradiechat.integrations.fcm import pushService
from tradiechat.models.notification import DeviceToken, NotificationType

logger = logging.getLogger(__name__)

# Strong references to in-flight push tasks; the loop only keeps weak ones.
_pending_tasks: set[asyncio.Task] = set()


@dataclass
class NotifyRequest:
    """A push notification for one recipient."""

    type: NotificationType
    recipient_id: uuid.UUID
    sender_id: Optional[uuid.UUID] = None
    project_id: Optional[uuid.UUID] = None
    chat_id: Optional[uuid.UUID] = None
    meta: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Message building
# ---------------------------------------------------------------------------

def build_message_by_type(
    notification_type: NotificationType,
    meta: dict[str, Any] | None = None,
) -> tuple[str, str]:
    """Return ``(title, body)`` for a notification type."""
    meta = meta or {}
    if notification_type == NotificationType.CHAT_CREATED:
        return (
            "Chat Started",
            f"A new chat was started for '{meta.get('projectTitle') or 'project'}'",
        )
    if notification_type == NotificationType.MESSAGE_SENT:
        return (
            "New Message",
            f"{meta.get('senderName') or 'Someone'} sent you a message",
        )
    return "Notification", str(meta.get("message") or "")


def _build_data(request: NotifyRequest) -> dict[str, str]:
    """Deep-link payload delivered alongside the notification."""
    data = {
        "type": request.type.value,
        "screen": "ChatScreen" if request.chat_id else "ChatList",
    }
    if request.chat_id:
        data["chatId"] = str(request.chat_id)
    if request.project_id:
        data["projectId"] = str(request.project_id)
    if request.sender_id:
        data["senderId"] = str(request.sender_id)
    return data


async def _get_user_device_tokens(db: AsyncSession, user_id: uuid.UUID) -> list[str]:
    result = await db.execute(
        select(DeviceToken.device_token).where(
            DeviceToken.user_id == user_id,
            DeviceToken.is_active.is_(True),
        )
    )
    return [row[0] for row in result.all()]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

async def notify(db: AsyncSession, request: NotifyRequest) -> bool:
    """Send a push to every active device of the recipient.

    Returns:
        True if at least one device accepted the push, or if the recipient
        simply has no registered devices.  False on delivery failure.
    """
    title, body = build_message_by_type(request.type, request.meta)

    tokens = await _get_user_device_tokens(db, request.recipient_id)
    if not tokens:
        logger.info(
            "No device tokens for user %s; %s push skipped",
            request.recipient_id, request.type.value,
        )
        return True

    result = await pushService.send_to_multiple(
        device_tokens=tokens,
        title=title,
        body=body,
        data=_build_data(request),
    )
    if result.invalid_tokens:
        logger.warning(
            "User %s has %d invalid device tokens",
            request.recipient_id, len(result.invalid_tokens),
        )
    return result.success_count > 0


async def _notify_in_background(request: NotifyRequest) -> None:
    from tradiechat.api.deps import async_session_factory

    try:
        async with async_session_factory() as db:
            await notify(db, request)
    except Exception:
        logger.exception(
            "Push notification failed: type=%s recipient=%s chat=%s",
            request.type.value, request.recipient_id, request.chat_id,
        )


def dispatch(request: NotifyRequest) -> asyncio.Task:
    """Schedule ``notify`` without awaiting it.  Must run inside the loop."""
    task = asyncio.create_task(_notify_in_background(request))
    _pending_tasks.add(task)
    task.add_done_callback(_pending_tasks.discard)
    return task
