"""
Shared pytest fixtures for TradieChat tests.

Provides:
- An async in-memory SQLite engine per test, with SAVEPOINT support so the
  nested transaction used by chat creation behaves as on PostgreSQL
- A session factory bound to that engine
- Seed data: tradies, builders, an admin, an inactive user and two projects
- Bearer token helpers
"""

from __future__ import annotations

import uuid
from typing import Any, AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from tradiechat.models import Base, Conversation, Project, User, UserRole
from tradiechat.services import conversationService
from tradiechat.services.auth_service import create_access_token

# ---------------------------------------------------------------------------
# Test IDs (stable across tests so cross-references work)
# ---------------------------------------------------------------------------

TRADIE_ID = uuid.UUID("aaaaaaaa-aaaa-aaaa-aaaa-aaaaaaaaaaaa")
BUILDER_ID = uuid.UUID("bbbbbbbb-bbbb-bbbb-bbbb-bbbbbbbbbbbb")
OTHER_TRADIE_ID = uuid.UUID("cccccccc-cccc-cccc-cccc-cccccccccccc")
ADMIN_ID = uuid.UUID("dddddddd-dddd-dddd-dddd-dddddddddddd")
OTHER_BUILDER_ID = uuid.UUID("eeeeeeee-eeee-eeee-eeee-eeeeeeeeeeee")
INACTIVE_TRADIE_ID = uuid.UUID("ffffffff-ffff-ffff-ffff-ffffffffffff")

PROJECT_ID = uuid.UUID("1111111a-1111-1111-1111-111111111111")
OTHER_PROJECT_ID = uuid.UUID("2222222b-2222-2222-2222-222222222222")

PROJECT_TITLE = "Kitchen Renovation"


# ---------------------------------------------------------------------------
# Async engine + session factory (in-memory SQLite)
# ---------------------------------------------------------------------------

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """A fresh in-memory database for each test."""
    engine = create_async_engine(
        TEST_DB_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; take it over.
    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_conn, _):
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------

async def _seed_data(db: AsyncSession) -> None:
    """Insert the users and projects every chat test relies on."""
    users = [
        User(
            id=TRADIE_ID,
            email="tom@sparks.test",
            full_name="Tom Tradie",
            avatar_url="https://cdn.test/avatars/tom.png",
            company_name="Sparks Electrical",
            role=UserRole.TRADIE,
            is_active=True,
        ),
        User(
            id=BUILDER_ID,
            email="bella@buildco.test",
            full_name="Bella Builder",
            avatar_url=None,
            company_name="BuildCo",
            role=UserRole.BUILDER,
            is_active=True,
        ),
        User(
            id=OTHER_TRADIE_ID,
            email="pete@pipes.test",
            full_name="Pete Plumber",
            avatar_url=None,
            company_name="Pete's Pipes",
            role=UserRole.TRADIE,
            is_active=True,
        ),
        User(
            id=OTHER_BUILDER_ID,
            email="oscar@homes.test",
            full_name="Oscar Owner",
            avatar_url=None,
            company_name="Oscar Homes",
            role=UserRole.BUILDER,
            is_active=True,
        ),
        User(
            id=ADMIN_ID,
            email="admin@tradiechat.test",
            full_name="Ada Admin",
            avatar_url=None,
            company_name=None,
            role=UserRole.ADMIN,
            is_active=True,
        ),
        User(
            id=INACTIVE_TRADIE_ID,
            email="gone@tradie.test",
            full_name="Gone Tradie",
            avatar_url=None,
            company_name=None,
            role=UserRole.TRADIE,
            is_active=False,
        ),
    ]
    db.add_all(users)
    await db.flush()

    db.add_all([
        Project(
            id=PROJECT_ID,
            title=PROJECT_TITLE,
            description="Full kitchen refit",
            status="open",
            builder_id=BUILDER_ID,
        ),
        Project(
            id=OTHER_PROJECT_ID,
            title="Bathroom Extension",
            description=None,
            status="open",
            builder_id=OTHER_BUILDER_ID,
        ),
    ])
    await db.flush()


@pytest_asyncio.fixture
async def seeded(session_factory: async_sessionmaker[AsyncSession]) -> async_sessionmaker[AsyncSession]:
    """Session factory over a database holding the seed data."""
    async with session_factory() as db:
        await _seed_data(db)
        await db.commit()
    return session_factory


@pytest_asyncio.fixture
async def db(seeded: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    """A session over the seeded database, closed after the test."""
    async with seeded() as session:
        yield session


@pytest_asyncio.fixture
async def conversation(seeded: async_sessionmaker[AsyncSession]) -> Conversation:
    """The chat between TRADIE_ID and BUILDER_ID on PROJECT_ID, committed."""
    async with seeded() as session:
        conv, _ = await conversationService.create_or_get_conversation(
            session, PROJECT_ID, TRADIE_ID, BUILDER_ID,
        )
        await session.commit()
    return conv


# ---------------------------------------------------------------------------
# Auth helpers
# ---------------------------------------------------------------------------

def bearer_token(user_id: uuid.UUID) -> str:
    return create_access_token(user_id)


def auth_headers(user_id: uuid.UUID) -> dict[str, Any]:
    return {"Authorization": f"Bearer {bearer_token(user_id)}"}


# ---------------------------------------------------------------------------
# Database session mock
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_db() -> AsyncMock:
    """Async mock of ``AsyncSession`` for tests that never touch SQL.

    Individual tests configure ``mock_db.execute.return_value``.
    """
    session = AsyncMock()
    session.add = MagicMock()
    session.flush = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    return session
