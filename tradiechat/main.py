"""TradieChat API -- Main Application Entry Point

Creates the FastAPI application, configures logging and CORS, installs the
envelope error handlers, registers the chat routes under the /api/v1 prefix,
and mounts the Socket.IO ASGI application for real-time chat.

Run with::

    uvicorn tradiechat.main:app --host 0.0.0.0 --port 8000 --reload
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tradiechat.api.errors import register_exception_handlers
from tradiechat.core.config import settings
from tradiechat.core.logging_config import configure_logging

configure_logging()
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan: startup / shutdown hooks
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Startup:
      - Import realtime handlers to register Socket.IO event listeners.

    Shutdown:
      - Dispose of the database engine's connection pool.
    """
    # Importing handlers is sufficient to register all Socket.IO events
    from tradiechat.realtime import handlers  # noqa: F401

    logger.info("%s %s starting", settings.app_name, settings.app_version)
    yield

    from tradiechat.api.deps import engine

    await engine.dispose()
    logger.info("%s stopped", settings.app_name)


# ---------------------------------------------------------------------------
# Application instance
# ---------------------------------------------------------------------------

app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    debug=settings.debug,
    lifespan=lifespan,
)

register_exception_handlers(app)


# ---------------------------------------------------------------------------
# CORS middleware
# ---------------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@app.get("/health", tags=["Health"])
async def health():
    """Lightweight health check for load balancers and readiness probes."""
    return {"status": "ok", "version": settings.app_version}


# ---------------------------------------------------------------------------
# Register API route modules
# ---------------------------------------------------------------------------

from tradiechat.api.routes import chat  # noqa: E402

app.include_router(chat.router, prefix=settings.api_v1_prefix)


# ---------------------------------------------------------------------------
# Mount Socket.IO ASGI application
# ---------------------------------------------------------------------------

from tradiechat.realtime.socketServer import socket_app  # noqa: E402

app.mount("/ws", socket_app)
