"""
WebSocket Server
================

Socket.IO server for TradieChat.  Carries real-time chat between a tradie
and a builder: new messages, typing indicators, delivery and read receipts,
and presence.

Architecture:
  - python-socketio AsyncServer mounted as an ASGI app on FastAPI
  - Optional Redis client manager for fan-out across several instances
    (``SOCKET_REDIS_URL``); presence stays process-local
  - JWT authentication during the handshake; a bad credential refuses the
    connection before any event is processed
  - Room-based routing: ``chat_<chat_id>`` per conversation and
    ``user_<user_id>`` per user

Connection lifecycle:
  1. Client connects with ``auth: { token: "<jwt>" }`` (or an
     ``Authorization: Bearer <jwt>`` header)
  2. Server verifies the token and resolves the user in the directory
  3. Server joins the connection to ``user_<id>``, marks the user online,
     sends ``online_users`` and tells the user's active conversations
  4. Client explicitly joins conversation rooms via ``join_chat``
  5. On disconnect, presence is updated and the new status broadcast
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Iterable

import socketio

from tradiechat.api.deps import async_session_factory
from tradiechat.core.config import settings
from tradiechat.core.exceptions import UnauthorizedError
from tradiechat.services import auth_service, conversationService, directoryService
from tradiechat.services.directoryService import ParticipantProfile

from .events import ONLINE_USERS, USER_STATUS_UPDATE, chat_room, user_room
from .presenceRegistry import PresenceStatus, presence

logger = logging.getLogger(__name__)

NAMESPACE: str = settings.ws_namespace


# ---------------------------------------------------------------------------
# Socket.IO server instance
# ---------------------------------------------------------------------------

def _build_client_manager() -> socketio.AsyncManager | None:
    """Redis pub/sub manager when configured, else the in-process default."""
    if not settings.socket_redis_url:
        return None
    logger.info("Using Redis client manager for Socket.IO fan-out")
    return socketio.AsyncRedisManager(settings.socket_redis_url, write_only=False)


def _cors_origins(raw: str) -> str | list[str]:
    if raw.strip() == "*":
        return "*"
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


sio = socketio.AsyncServer(
    async_mode="asgi",
    cors_allowed_origins=_cors_origins(settings.ws_cors_allowed_origins),
    client_manager=_build_client_manager(),
    logger=False,
    engineio_logger=False,
    ping_timeout=settings.ws_ping_timeout,
    ping_interval=settings.ws_ping_interval,
    max_http_buffer_size=1_000_000,  # 1 MB
    namespaces=[NAMESPACE],
)


# ---------------------------------------------------------------------------
# Connection registry: maps user_id -> set of sids (one user, many devices)
# Also maps sid -> user metadata for quick lookup.
# ---------------------------------------------------------------------------

_user_sids: dict[uuid.UUID, set[str]] = {}
_sid_meta: dict[str, dict[str, Any]] = {}


def get_user_sids(user_id: uuid.UUID) -> set[str]:
    """Return all session IDs for a given user (may span multiple devices)."""
    return _user_sids.get(user_id, set())


def get_sid_meta(sid: str) -> dict[str, Any] | None:
    """Return the metadata dict for a given session ID."""
    return _sid_meta.get(sid)


def _register_connection(sid: str, user: ParticipantProfile) -> None:
    _user_sids.setdefault(user.id, set()).add(sid)
    _sid_meta[sid] = {
        "user_id": user.id,
        "user_name": user.full_name,
        "role": user.role.value,
    }


def _unregister_connection(sid: str) -> uuid.UUID | None:
    """Remove a connection from the registry.  Returns the user_id or None."""
    meta = _sid_meta.pop(sid, None)
    if meta is None:
        return None
    user_id: uuid.UUID = meta["user_id"]
    user_set = _user_sids.get(user_id)
    if user_set:
        user_set.discard(sid)
        if not user_set:
            del _user_sids[user_id]
    return user_id


def reset_registry() -> None:
    """Forget every connection and presence entry."""
    _user_sids.clear()
    _sid_meta.clear()
    presence.clear()


# ---------------------------------------------------------------------------
# Handshake authentication
# ---------------------------------------------------------------------------

def _extract_token(environ: dict[str, Any], auth: dict[str, Any] | None) -> str | None:
    """Token from ``auth.token``, falling back to the Authorization header."""
    token = (auth or {}).get("token") if isinstance(auth, dict) else None
    if not token:
        token = environ.get("HTTP_AUTHORIZATION")
    return auth_service.strip_bearer(token)


def _online_users_payload() -> list[dict[str, Any]]:
    """Users whose aggregate status is ``online``; away and busy are left out."""
    return [
        {
            "userId": str(snapshot.user_id),
            "status": snapshot.status.value,
            "lastSeen": snapshot.last_seen.isoformat(),
        }
        for snapshot in presence.list_online()
        if snapshot.status is PresenceStatus.ONLINE
    ]


@sio.on("connect", namespace=NAMESPACE)
async def connect_chat(
    sid: str,
    environ: dict[str, Any],
    auth: dict[str, Any] | None = None,
) -> bool:
    """Authenticate on the chat namespace.

    Returns ``False`` to refuse the handshake when the credential is
    missing or invalid, or names an unknown user.
    """
    try:
        claims = auth_service.verify_access_token(_extract_token(environ, auth))
    except UnauthorizedError as exc:
        logger.info("Rejected %s connect for sid=%s: %s", NAMESPACE, sid, exc.message)
        return False

    async with async_session_factory() as db:
        user = await directoryService.get_participant(db, claims.user_id)
        if user is None:
            logger.info("Rejected %s connect for sid=%s: unknown user %s", NAMESPACE, sid, claims.user_id)
            return False
        chat_ids = await conversationService.list_active_conversation_ids(db, user.id)

    _register_connection(sid, user)
    change = presence.set_online(user.id, sid)
    await sio.enter_room(sid, user_room(user.id), namespace=NAMESPACE)

    # The client only sees events after the handshake completes.
    sio.start_background_task(announce_online, sid, user.id, chat_ids, change.timestamp)

    logger.info("Connected %s: sid=%s user_id=%s", NAMESPACE, sid, user.id)
    return True


async def announce_online(
    sid: str,
    user_id: uuid.UUID,
    chat_ids: Iterable[uuid.UUID],
    timestamp: datetime,
) -> None:
    """Send ``online_users`` to the new connection and its status to the
    user's active conversations."""
    try:
        await sio.emit(ONLINE_USERS, _online_users_payload(), to=sid, namespace=NAMESPACE)
        await broadcast_user_status(user_id, presence.get_status(user_id), timestamp, chat_ids)
    except Exception:
        logger.exception("Failed to announce presence for user=%s", user_id)


@sio.on("disconnect", namespace=NAMESPACE)
async def disconnect_chat(sid: str, reason: str | None = None) -> None:
    """Drop the connection and broadcast the user's new status."""
    user_id = _unregister_connection(sid)
    change = presence.set_offline(sid)
    logger.info("Disconnected %s: sid=%s user_id=%s reason=%s", NAMESPACE, sid, user_id, reason)

    if change is None:
        return
    try:
        async with async_session_factory() as db:
            chat_ids = await conversationService.list_active_conversation_ids(db, change.user_id)
        await broadcast_user_status(change.user_id, change.status, change.timestamp, chat_ids)
    except Exception:
        logger.exception("Failed to broadcast disconnect status for user=%s", change.user_id)


# ---------------------------------------------------------------------------
# High-level broadcast helpers (used by handlers and REST routes)
# ---------------------------------------------------------------------------

async def broadcast_to_chat(
    chat_id: uuid.UUID | str,
    event: str,
    data: Any,
    *,
    skip_sid: str | list[str] | None = None,
) -> None:
    """Send an event to every client in the conversation room.

    Args:
        chat_id: The conversation UUID.
        event: Socket.IO event name (e.g. ``new_message``).
        data: Event payload.
        skip_sid: Optional sid (or sids) to exclude, usually the sender.
    """
    room = chat_room(chat_id)
    await sio.emit(event, data, room=room, namespace=NAMESPACE, skip_sid=skip_sid)
    logger.debug("Broadcast %s to room=%s", event, room)


async def send_to_user(user_id: uuid.UUID | str, event: str, data: Any) -> None:
    """Send an event to every connection of a user via their personal room."""
    room = user_room(user_id)
    await sio.emit(event, data, room=room, namespace=NAMESPACE)
    logger.debug("Sent %s to room=%s", event, room)


async def emit_to_sid(sid: str, event: str, data: Any) -> None:
    await sio.emit(event, data, to=sid, namespace=NAMESPACE)


async def broadcast_user_status(
    user_id: uuid.UUID,
    status: PresenceStatus,
    timestamp: datetime,
    chat_ids: Iterable[uuid.UUID],
) -> None:
    """Emit ``user_status_update`` to each of the given conversation rooms."""
    payload = {
        "userId": str(user_id),
        "status": status.value,
        "timestamp": timestamp.isoformat(),
    }
    for chat_id in chat_ids:
        await broadcast_to_chat(chat_id, USER_STATUS_UPDATE, payload)


# ---------------------------------------------------------------------------
# ASGI app for mounting onto FastAPI
# ---------------------------------------------------------------------------

socket_app = socketio.ASGIApp(
    socketio_server=sio,
    socketio_path="/ws/socket.io",
)
