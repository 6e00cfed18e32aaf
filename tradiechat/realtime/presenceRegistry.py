"""
Presence Registry
=================

In-memory, process-local record of who is connected and how available they
are.  Entries are kept per connection so a user with a phone and a tablet
stays online until the last device disconnects.  The status reported for a
user is the most active one across their live connections:

    online > busy > away > offline

All mutation happens on the event loop thread, so no locking is needed.
Nothing here is persisted; a restart starts everyone offline.
"""

from __future__ import annotations

import enum
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from tradiechat.core.exceptions import NotFoundError, ValidationError
from tradiechat.models.base import utcnow

logger = logging.getLogger(__name__)


class PresenceStatus(str, enum.Enum):
    ONLINE = "online"
    AWAY = "away"
    BUSY = "busy"
    OFFLINE = "offline"


_RANK: dict[PresenceStatus, int] = {
    PresenceStatus.OFFLINE: 0,
    PresenceStatus.AWAY: 1,
    PresenceStatus.BUSY: 2,
    PresenceStatus.ONLINE: 3,
}

# Statuses a client may choose explicitly.  Offline only follows a disconnect.
SELECTABLE_STATUSES: frozenset[PresenceStatus] = frozenset({
    PresenceStatus.ONLINE,
    PresenceStatus.AWAY,
    PresenceStatus.BUSY,
})


@dataclass
class PresenceEntry:
    """One live connection of a user."""

    user_id: uuid.UUID
    connection_id: str
    status: PresenceStatus
    last_seen: datetime


@dataclass(frozen=True)
class PresenceChange:
    """Aggregate status of a user after a registry mutation."""

    user_id: uuid.UUID
    status: PresenceStatus
    previous: PresenceStatus
    timestamp: datetime

    @property
    def changed(self) -> bool:
        return self.status != self.previous


@dataclass(frozen=True)
class PresenceSnapshot:
    user_id: uuid.UUID
    status: PresenceStatus
    last_seen: datetime


def parse_status(value: PresenceStatus | str) -> PresenceStatus:
    """Coerce a client-supplied status, rejecting offline and unknown values."""
    try:
        status = value if isinstance(value, PresenceStatus) else PresenceStatus(str(value).lower())
    except ValueError:
        status = None
    if status not in SELECTABLE_STATUSES:
        valid = ", ".join(sorted(s.value for s in SELECTABLE_STATUSES))
        raise ValidationError(f"Invalid status. Must be one of: {valid}")
    return status


class PresenceRegistry:
    """Connection-level presence with per-user aggregation."""

    def __init__(self) -> None:
        self._entries: dict[str, PresenceEntry] = {}
        self._user_connections: dict[uuid.UUID, set[str]] = {}
        self._last_seen: dict[uuid.UUID, datetime] = {}

    # -- Queries -------------------------------------------------------------

    def get_status(self, user_id: uuid.UUID) -> PresenceStatus:
        connections = self._user_connections.get(user_id)
        if not connections:
            return PresenceStatus.OFFLINE
        return max(
            (self._entries[cid].status for cid in connections),
            key=_RANK.__getitem__,
        )

    def user_for_connection(self, connection_id: str) -> Optional[uuid.UUID]:
        entry = self._entries.get(connection_id)
        return entry.user_id if entry is not None else None

    def list_online(self) -> list[PresenceSnapshot]:
        """Snapshot of every user with at least one live connection."""
        return [
            PresenceSnapshot(
                user_id=user_id,
                status=self.get_status(user_id),
                last_seen=self._last_seen[user_id],
            )
            for user_id in self._user_connections
        ]

    # -- Mutations -----------------------------------------------------------

    def set_online(self, user_id: uuid.UUID, connection_id: str) -> PresenceChange:
        """Register a new connection as online."""
        previous = self.get_status(user_id)
        now = utcnow()

        stale = self._entries.get(connection_id)
        if stale is not None and stale.user_id != user_id:
            self._detach(connection_id)

        self._entries[connection_id] = PresenceEntry(
            user_id=user_id,
            connection_id=connection_id,
            status=PresenceStatus.ONLINE,
            last_seen=now,
        )
        self._user_connections.setdefault(user_id, set()).add(connection_id)
        self._last_seen[user_id] = now

        logger.debug("Presence online: user=%s connection=%s", user_id, connection_id)
        return PresenceChange(user_id, PresenceStatus.ONLINE, previous, now)

    def set_status(
        self,
        user_id: uuid.UUID,
        status: PresenceStatus | str,
        connection_id: Optional[str] = None,
    ) -> PresenceChange:
        """Set a client-chosen status.

        With ``connection_id`` only that connection changes; otherwise every
        connection of the user does.

        Raises:
            ValidationError: If ``status`` is offline or unknown.
            NotFoundError: If the user (or that connection) is not connected.
        """
        new_status = parse_status(status)
        previous = self.get_status(user_id)
        now = utcnow()

        if connection_id is not None:
            entry = self._entries.get(connection_id)
            if entry is None or entry.user_id != user_id:
                raise NotFoundError("Connection not registered")
            targets = [entry]
        else:
            targets = [self._entries[cid] for cid in self._user_connections.get(user_id, ())]
            if not targets:
                raise NotFoundError("User is not connected")

        for entry in targets:
            entry.status = new_status
            entry.last_seen = now
        self._last_seen[user_id] = now

        return PresenceChange(user_id, self.get_status(user_id), previous, now)

    def set_offline(self, connection_id: str) -> Optional[PresenceChange]:
        """Drop a connection.

        Returns:
            The user's new aggregate status if it changed, else None.  An
            unknown connection id is a no-op.
        """
        entry = self._entries.get(connection_id)
        if entry is None:
            return None

        previous = self.get_status(entry.user_id)
        self._detach(connection_id)
        now = utcnow()
        self._last_seen[entry.user_id] = now

        current = self.get_status(entry.user_id)
        if current == previous:
            return None
        return PresenceChange(entry.user_id, current, previous, now)

    def clear(self) -> None:
        self._entries.clear()
        self._user_connections.clear()
        self._last_seen.clear()

    def _detach(self, connection_id: str) -> None:
        entry = self._entries.pop(connection_id)
        connections = self._user_connections.get(entry.user_id)
        if connections is not None:
            connections.discard(connection_id)
            if not connections:
                del self._user_connections[entry.user_id]


# Shared registry for the process.
presence = PresenceRegistry()
