"""
TradieChat Real-time Module
===========================

WebSocket server, presence registry and event handlers for real-time chat.

Usage in FastAPI app startup::

    from tradiechat.realtime import socket_app
    app.mount("/ws", socket_app)

The ``handlers`` sub-package registers all Socket.IO event handlers as a
side-effect of import, so importing this package is sufficient to activate
real-time event processing.
"""

from __future__ import annotations

from .socketServer import (
    broadcast_to_chat,
    send_to_user,
    sio,
    socket_app,
)

# Importing handlers registers the Socket.IO event listeners
from . import handlers  # noqa: F401

__all__ = [
    "sio",
    "socket_app",
    "broadcast_to_chat",
    "send_to_user",
    "handlers",
]
