"""
Shared FastAPI dependencies for the TradieChat service.

Provides the async database session dependency used by all route handlers
and the authentication dependency that resolves the calling participant
from a JWT Bearer token.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Annotated, Optional

from fastapi import Depends, HTTPException, Query, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from tradiechat.core.config import settings
from tradiechat.core.exceptions import UnauthorizedError
from tradiechat.services import auth_service, directoryService
from tradiechat.services.directoryService import ParticipantProfile

# ---------------------------------------------------------------------------
# Async engine & session factory
# ---------------------------------------------------------------------------
# The engine is created once at module import time.  REST requests get a
# session through ``get_db``; Socket.IO handlers and background push tasks
# open their own with ``async_session_factory()``.
# ---------------------------------------------------------------------------

engine = create_async_engine(
    settings.database_url,
    echo=settings.sql_echo,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
    pool_pre_ping=True,
)

async_session_factory = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session that commits when the request
    succeeds and rolls back when it raises.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


DBSession = Annotated[AsyncSession, Depends(get_db)]


# ---------------------------------------------------------------------------
# Pagination
# ---------------------------------------------------------------------------

class Pagination:
    """``page`` / ``limit`` query parameters clamped to ``max_page_size``."""

    def __init__(
        self,
        page: int = Query(1, ge=1, description="Page number (1-indexed)"),
        limit: Optional[int] = Query(None, ge=1, description="Items per page"),
    ):
        self.page = page
        self.limit = min(limit, settings.max_page_size) if limit else None

    def size(self, default: int) -> int:
        return self.limit or default


PageParams = Annotated[Pagination, Depends(Pagination)]


# ---------------------------------------------------------------------------
# Authentication dependencies
# ---------------------------------------------------------------------------

_bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(_bearer_scheme)],
    db: DBSession,
) -> ParticipantProfile:
    """Verify the Bearer token and resolve the caller in the directory.

    Raises 401 if the token is missing, invalid or expired, or if it names a
    user that does not exist or is inactive.
    """
    if credentials is None:
        raise _unauthorized("No authentication token provided")

    try:
        claims = auth_service.verify_access_token(credentials.credentials)
    except UnauthorizedError as exc:
        raise _unauthorized(exc.message)

    user = await directoryService.get_participant(db, claims.user_id)
    if user is None:
        raise _unauthorized("User not found")
    return user


CurrentUser = Annotated[ParticipantProfile, Depends(get_current_user)]
