"""
Participant directory and project lookup.

Read-only views over the users and projects tables, shaped for display in
chat payloads.  The chat core never writes these tables.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tradiechat.models.project import Project
from tradiechat.models.user import User, UserRole


@dataclass(frozen=True)
class ParticipantProfile:
    """Public identity of a chat participant."""

    id: uuid.UUID
    full_name: str
    avatar_url: Optional[str]
    company_name: Optional[str]
    email: Optional[str]
    role: UserRole


@dataclass(frozen=True)
class ProjectSummary:
    id: uuid.UUID
    title: str
    description: Optional[str]
    status: str
    builder_id: uuid.UUID


def _to_profile(user: User) -> ParticipantProfile:
    return ParticipantProfile(
        id=user.id,
        full_name=user.full_name,
        avatar_url=user.avatar_url,
        company_name=user.company_name,
        email=user.email,
        role=user.role,
    )


def _to_summary(project: Project) -> ProjectSummary:
    return ProjectSummary(
        id=project.id,
        title=project.title,
        description=project.description,
        status=project.status,
        builder_id=project.builder_id,
    )


async def get_participant(
    db: AsyncSession,
    user_id: uuid.UUID,
) -> Optional[ParticipantProfile]:
    """Look up an active user by id."""
    stmt = select(User).where(User.id == user_id, User.is_active.is_(True))
    user = (await db.execute(stmt)).scalar_one_or_none()
    return _to_profile(user) if user is not None else None


async def get_participants(
    db: AsyncSession,
    user_ids: Iterable[uuid.UUID],
) -> dict[uuid.UUID, ParticipantProfile]:
    """Resolve several users in one query.  Missing ids are omitted."""
    ids = list(set(user_ids))
    if not ids:
        return {}
    stmt = select(User).where(User.id.in_(ids))
    users = (await db.execute(stmt)).scalars().all()
    return {user.id: _to_profile(user) for user in users}


async def get_project(
    db: AsyncSession,
    project_id: uuid.UUID,
) -> Optional[ProjectSummary]:
    stmt = select(Project).where(Project.id == project_id)
    project = (await db.execute(stmt)).scalar_one_or_none()
    return _to_summary(project) if project is not None else None


async def get_projects(
    db: AsyncSession,
    project_ids: Iterable[uuid.UUID],
) -> dict[uuid.UUID, ProjectSummary]:
    ids = list(set(project_ids))
    if not ids:
        return {}
    stmt = select(Project).where(Project.id.in_(ids))
    projects = (await db.execute(stmt)).scalars().all()
    return {project.id: _to_summary(project) for project in projects}
