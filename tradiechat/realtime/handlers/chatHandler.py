"""
In-App Chat Handler
===================

Socket.IO handlers for real-time messaging between a tradie and a builder
on the ``/chat`` namespace.  All messages are persisted before they are
broadcast.

Events received FROM clients:
  join_chat            { chatId }
  leave_chat           { chatId }
  send_message         { chatId, messageType, content | documentUrl+documentName+documentSize }
  typing_start         { chatId }
  typing_stop          { chatId }
  message_delivered    { chatId, messageId }
  message_read         { chatId, messageId }
  mark_messages_read   { chatId }
  update_status        { status }
  edit_message         { messageId, content }
  delete_message       { messageId }

Events emitted TO clients:
  joined_chat / left_chat   { chatId }                        -> sender
  new_message               message incl. sender + receiver   -> chat room
  message_sent              { success, message }              -> sender
  user_typing               { chatId, userId, userName, isTyping } -> room minus sender
  message_status_update     { chatId, messageId, messageIds, status, ... } -> chat room
  messages_read             { chatId, messageIds, readByUserId, readAt, timestamp } -> room minus sender
  messages_marked_read      { chatId, messageIds, timestamp } -> sender
  message_edited            message                           -> chat room
  message_deleted           { chatId, messageId, deletedAt }  -> chat room
  user_status_update        { userId, status, timestamp }     -> user's active chat rooms
  error                     { message }                       -> sender

Every handler also returns an acknowledgement ``{"ok": bool, ...}``.
Validation, access and not-found failures are reported to the sender only
and change nothing; unexpected failures are logged and reported with a
generic message.
"""

from __future__ import annotations

import functools
import logging
import uuid
from typing import Any, Awaitable, Callable

from tradiechat.api.deps import async_session_factory
from tradiechat.api.schemas.chat import MessageOut, serialize
from tradiechat.core.exceptions import GENERIC_ERROR_MESSAGE, ChatError, UnauthorizedError
from tradiechat.models.base import utcnow
from tradiechat.models.notification import NotificationType
from tradiechat.services import conversationService, messageService, notificationService
from tradiechat.services.notificationService import NotifyRequest

from .. import events
from ..events import (
    ChatEvent,
    DeleteMessageEvent,
    EditMessageEvent,
    MessageEvent,
    SendMessageEvent,
    UpdateStatusEvent,
    chat_room,
    parse_event,
)
from ..presenceRegistry import presence
from ..socketServer import (
    NAMESPACE,
    broadcast_to_chat,
    broadcast_user_status,
    emit_to_sid,
    get_sid_meta,
    sio,
)

logger = logging.getLogger(__name__)

Handler = Callable[[str, Any], Awaitable[dict[str, Any]]]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _current_user(sid: str) -> tuple[uuid.UUID, str]:
    meta = get_sid_meta(sid)
    if not meta:
        raise UnauthorizedError("Not authenticated")
    return meta["user_id"], meta.get("user_name") or "Someone"


def _guarded(event_name: str) -> Callable[[Handler], Handler]:
    """Turn handler exceptions into an ``error`` event plus a failed ack.

    ``ChatError`` messages go back verbatim; anything else is logged with
    context and replaced by the generic message.
    """

    def decorator(func: Handler) -> Handler:
        @functools.wraps(func)
        async def wrapper(sid: str, data: Any = None) -> dict[str, Any]:
            try:
                return await func(sid, data)
            except ChatError as exc:
                logger.info("%s rejected for sid=%s: %s", event_name, sid, exc.message)
                message = exc.message
                code = exc.code
            except Exception:
                logger.exception("%s failed for sid=%s payload=%r", event_name, sid, data)
                message = GENERIC_ERROR_MESSAGE
                code = "internal_error"
            await emit_to_sid(sid, events.ERROR, {"message": message})
            return {"ok": False, "error": message, "code": code}

        return wrapper

    return decorator


def _on(event_name: str) -> Callable[[Handler], Handler]:
    """Register a guarded handler on the chat namespace."""

    def decorator(func: Handler) -> Handler:
        guarded = _guarded(event_name)(func)
        sio.on(event_name, namespace=NAMESPACE)(guarded)
        return guarded

    return decorator


# ---------------------------------------------------------------------------
# Room membership
# ---------------------------------------------------------------------------

@_on("join_chat")
async def handle_join_chat(sid: str, data: Any) -> dict[str, Any]:
    """Join the conversation room after a participant check."""
    user_id, _ = _current_user(sid)
    payload = parse_event(ChatEvent, data)

    async with async_session_factory() as db:
        await conversationService.get_for_participant(db, payload.chat_id, user_id)

    room = chat_room(payload.chat_id)
    await sio.enter_room(sid, room, namespace=NAMESPACE)
    await emit_to_sid(sid, events.JOINED_CHAT, {"chatId": str(payload.chat_id)})
    logger.info("sid=%s user=%s joined room %s", sid, user_id, room)
    return {"ok": True, "room": room}


@_on("leave_chat")
async def handle_leave_chat(sid: str, data: Any) -> dict[str, Any]:
    _current_user(sid)
    payload = parse_event(ChatEvent, data)

    room = chat_room(payload.chat_id)
    await sio.leave_room(sid, room, namespace=NAMESPACE)
    await emit_to_sid(sid, events.LEFT_CHAT, {"chatId": str(payload.chat_id)})
    logger.info("sid=%s left room %s", sid, room)
    return {"ok": True, "room": room}


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

@_on("send_message")
async def handle_send_message(sid: str, data: Any) -> dict[str, Any]:
    """Persist a message, update the conversation, then broadcast.

    The append and the conversation update commit together; nothing is
    broadcast if either fails.
    """
    sender_id, sender_name = _current_user(sid)
    payload = parse_event(SendMessageEvent, data)

    async with async_session_factory() as db:
        conversation = await conversationService.get_for_participant(db, payload.chat_id, sender_id)
        view = await messageService.append(
            db, conversation, sender_id, payload.message_type, payload.payload(),
        )
        await conversationService.record_outgoing_message(
            db,
            conversation.id,
            sender_id,
            conversationService.build_summary(view.message_type, view.content),
            sent_at=view.created_at,
        )
        await db.commit()
        receiver_id = conversationService.other_participant_id(conversation, sender_id)
        project_id = conversation.project_id

    message = serialize(MessageOut, view)
    await broadcast_to_chat(payload.chat_id, events.NEW_MESSAGE, message)
    await emit_to_sid(sid, events.MESSAGE_SENT, {"success": True, "message": message})

    notificationService.dispatch(
        NotifyRequest(
            type=NotificationType.MESSAGE_SENT,
            recipient_id=receiver_id,
            sender_id=sender_id,
            project_id=project_id,
            chat_id=payload.chat_id,
            meta={"senderName": sender_name},
        )
    )

    logger.info(
        "Chat message sent: chat=%s sender=%s type=%s",
        payload.chat_id, sender_id, view.message_type,
    )
    return {"ok": True, "message": message}


async def _typing(sid: str, data: Any, is_typing: bool) -> dict[str, Any]:
    user_id, user_name = _current_user(sid)
    payload = parse_event(ChatEvent, data)

    async with async_session_factory() as db:
        await conversationService.get_for_participant(db, payload.chat_id, user_id)

    await broadcast_to_chat(
        payload.chat_id,
        events.USER_TYPING,
        {
            "chatId": str(payload.chat_id),
            "userId": str(user_id),
            "userName": user_name,
            "isTyping": is_typing,
        },
        skip_sid=sid,
    )
    return {"ok": True}


@_on("typing_start")
async def handle_typing_start(sid: str, data: Any) -> dict[str, Any]:
    return await _typing(sid, data, True)


@_on("typing_stop")
async def handle_typing_stop(sid: str, data: Any) -> dict[str, Any]:
    return await _typing(sid, data, False)


@_on("message_delivered")
async def handle_message_delivered(sid: str, data: Any) -> dict[str, Any]:
    """Relay a delivery receipt.  Delivery is not persisted."""
    user_id, _ = _current_user(sid)
    payload = parse_event(MessageEvent, data)

    async with async_session_factory() as db:
        await conversationService.get_for_participant(db, payload.chat_id, user_id)

    now = utcnow().isoformat()
    await broadcast_to_chat(
        payload.chat_id,
        events.MESSAGE_STATUS_UPDATE,
        {
            "chatId": str(payload.chat_id),
            "messageId": str(payload.message_id),
            "messageIds": [str(payload.message_id)],
            "status": "delivered",
            "deliveredAt": now,
            "timestamp": now,
            "byUserId": str(user_id),
        },
    )
    return {"ok": True}


@_on("message_read")
async def handle_message_read(sid: str, data: Any) -> dict[str, Any]:
    """Mark one message read.  Broadcasts only if its state changed."""
    reader_id, _ = _current_user(sid)
    payload = parse_event(MessageEvent, data)
    read_at = utcnow()

    async with async_session_factory() as db:
        await conversationService.get_for_participant(db, payload.chat_id, reader_id)
        changed = await messageService.mark_one_read(
            db, payload.chat_id, payload.message_id, reader_id, read_at=read_at,
        )
        if changed:
            await conversationService.consume_unread(db, payload.chat_id, reader_id, 1)
        await db.commit()

    if not changed:
        return {"ok": True, "changed": False}

    await broadcast_to_chat(
        payload.chat_id,
        events.MESSAGE_STATUS_UPDATE,
        {
            "chatId": str(payload.chat_id),
            "messageId": str(payload.message_id),
            "messageIds": [str(payload.message_id)],
            "status": "read",
            "readAt": read_at.isoformat(),
            "timestamp": read_at.isoformat(),
            "byUserId": str(reader_id),
        },
    )
    logger.info("Read receipt: message=%s read_by=%s chat=%s", payload.message_id, reader_id, payload.chat_id)
    return {"ok": True, "changed": True}


@_on("mark_messages_read")
async def handle_mark_messages_read(sid: str, data: Any) -> dict[str, Any]:
    """Mark everything from the other participant read and take them off the counter."""
    reader_id, _ = _current_user(sid)
    payload = parse_event(ChatEvent, data)
    read_at = utcnow()

    async with async_session_factory() as db:
        await conversationService.get_for_participant(db, payload.chat_id, reader_id)
        message_ids = await messageService.mark_all_read_except_sender(
            db, payload.chat_id, reader_id, read_at=read_at,
        )
        await conversationService.consume_unread(db, payload.chat_id, reader_id, len(message_ids))
        await db.commit()

    ids = [str(message_id) for message_id in message_ids]
    timestamp = read_at.isoformat()
    await broadcast_to_chat(
        payload.chat_id,
        events.MESSAGES_READ,
        {
            "chatId": str(payload.chat_id),
            "messageIds": ids,
            "readByUserId": str(reader_id),
            "readAt": timestamp,
            "timestamp": timestamp,
        },
        skip_sid=sid,
    )
    await emit_to_sid(
        sid,
        events.MESSAGES_MARKED_READ,
        {"chatId": str(payload.chat_id), "messageIds": ids, "timestamp": timestamp},
    )
    return {"ok": True, "messageIds": ids}


@_on("edit_message")
async def handle_edit_message(sid: str, data: Any) -> dict[str, Any]:
    user_id, _ = _current_user(sid)
    payload = parse_event(EditMessageEvent, data)

    async with async_session_factory() as db:
        msg = await messageService.edit(db, payload.message_id, user_id, payload.content)
        view = await messageService.build_message_view(db, msg)
        await db.commit()

    message = serialize(MessageOut, view)
    await broadcast_to_chat(view.chat_id, events.MESSAGE_EDITED, message)
    return {"ok": True, "message": message}


@_on("delete_message")
async def handle_delete_message(sid: str, data: Any) -> dict[str, Any]:
    user_id, _ = _current_user(sid)
    payload = parse_event(DeleteMessageEvent, data)

    async with async_session_factory() as db:
        msg = await messageService.soft_delete(db, payload.message_id, user_id)
        if not msg.is_read:
            await conversationService.retract_unread(db, msg.conversation_id, msg.sender_id)
        await db.commit()

    body = {
        "chatId": str(msg.conversation_id),
        "messageId": str(msg.id),
        "deletedAt": msg.deleted_at.isoformat(),
    }
    await broadcast_to_chat(msg.conversation_id, events.MESSAGE_DELETED, body)
    return {"ok": True, **body}


# ---------------------------------------------------------------------------
# Presence
# ---------------------------------------------------------------------------

@_on("update_status")
async def handle_update_status(sid: str, data: Any) -> dict[str, Any]:
    """Set this connection's availability and tell the user's conversations."""
    user_id, _ = _current_user(sid)
    payload = parse_event(UpdateStatusEvent, data)

    change = presence.set_status(user_id, payload.status, connection_id=sid)

    async with async_session_factory() as db:
        chat_ids = await conversationService.list_active_conversation_ids(db, user_id)

    await broadcast_user_status(user_id, change.status, change.timestamp, chat_ids)
    return {"ok": True, "status": change.status.value}
