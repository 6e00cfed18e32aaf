"""
E2E test fixtures for TradieChat.

Provides:
- An in-process FastAPI test app with the chat routes and envelope error
  handlers registered
- httpx AsyncClient wired via ASGI transport (no network needed)
- The Socket.IO gateway wired to the test database, with the server's
  transport calls (emit, rooms, background tasks) mocked so handlers can be
  driven directly

Push notifications are mocked at ``notificationService.dispatch`` so the
full route -> service -> DB flow is exercised without a Firebase project.
"""

from __future__ import annotations

from typing import Any, AsyncGenerator
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tradiechat.realtime import socketServer
from tradiechat.services.auth_service import create_access_token


# ---------------------------------------------------------------------------
# FastAPI test application
# ---------------------------------------------------------------------------

def _create_test_app(session_factory: async_sessionmaker[AsyncSession]):
    """Build a FastAPI app with the chat routes registered and the DB
    dependency overridden to use the test database."""
    from fastapi import FastAPI

    from tradiechat.api.deps import get_db
    from tradiechat.api.errors import register_exception_handlers
    from tradiechat.api.routes.chat import router as chat_router

    app = FastAPI(title="TradieChat Test")
    register_exception_handlers(app)

    async def _override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _override_get_db
    app.include_router(chat_router, prefix="/api/v1")
    return app


@pytest_asyncio.fixture
async def client(seeded: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncClient, None]:
    """httpx AsyncClient connected to the test app via ASGI transport."""
    app = _create_test_app(seeded)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ---------------------------------------------------------------------------
# Transport and push mocks
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def sio_emit():
    """Record every Socket.IO emit instead of sending it."""
    with patch.object(socketServer.sio, "emit", new_callable=AsyncMock) as emit:
        yield emit


@pytest.fixture(autouse=True)
def mock_dispatch():
    """Capture push notifications scheduled by routes and handlers."""
    with patch("tradiechat.services.notificationService.dispatch") as dispatch:
        yield dispatch


@pytest.fixture
def sio_rooms():
    """Mock room membership and background tasks on the server."""
    with patch.object(socketServer.sio, "enter_room", new_callable=AsyncMock) as enter, \
            patch.object(socketServer.sio, "leave_room", new_callable=AsyncMock) as leave, \
            patch.object(socketServer.sio, "start_background_task", new_callable=MagicMock) as task:
        yield {"enter_room": enter, "leave_room": leave, "start_background_task": task}


@pytest.fixture
def gateway(seeded: async_sessionmaker[AsyncSession], sio_rooms):
    """Point the Socket.IO handlers at the test database.

    Clears the connection registry and presence before and after each test.
    """
    socketServer.reset_registry()
    with patch("tradiechat.realtime.socketServer.async_session_factory", seeded), \
            patch("tradiechat.realtime.handlers.chatHandler.async_session_factory", seeded):
        yield sio_rooms
    socketServer.reset_registry()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def emitted(emit: AsyncMock, event: str) -> list[tuple[Any, dict[str, Any]]]:
    """Return ``(data, kwargs)`` for every emit of ``event``."""
    return [
        (call.args[1], call.kwargs)
        for call in emit.await_args_list
        if call.args and call.args[0] == event
    ]


async def connect(sid: str, user_id) -> bool:
    """Run the namespace connect handler with a valid token for ``user_id``."""
    token = create_access_token(user_id)
    return await socketServer.connect_chat(sid, {}, {"token": token})
