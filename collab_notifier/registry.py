"""In-process registry of live connections and the rooms they belong to."""

import asyncio
import logging
import weakref
from collections import defaultdict
from typing import Dict, List, Optional, Set

from .models import Connection

logger = logging.getLogger(__name__)

USER_ROOM_PREFIX = "user:"
PROJECT_ROOM_PREFIX = "project:"


def user_room(user_id: str) -> str:
    return f"{USER_ROOM_PREFIX}{user_id}"


def project_room(project_id: str) -> str:
    return f"{PROJECT_ROOM_PREFIX}{project_id}"


def is_project_room(room_id: str) -> bool:
    return room_id.startswith(PROJECT_ROOM_PREFIX)


class ConnectionRegistry:
    """
    Tracks live connections per room.

    Mutations of a room's membership are serialized by a per-room asyncio.Lock.
    A connection removed by unregister() can never be added back to a room;
    add_to_room() re-checks liveness while holding the room lock.
    """

    def __init__(self) -> None:
        self._connections: Dict[str, Connection] = {}
        self._rooms: Dict[str, Set[str]] = {}
        self._memberships: Dict[str, Set[str]] = defaultdict(set)
        # A room's lock lives only while some coroutine holds or awaits it
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, room_id: str) -> asyncio.Lock:
        lock = self._locks.get(room_id)
        if lock is None:
            lock = self._locks[room_id] = asyncio.Lock()
        return lock

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    async def register(self, connection: Connection) -> None:
        """Track a new connection and put it in its own user room."""
        self._connections[connection.connection_id] = connection
        await self.add_to_room(connection.connection_id, user_room(connection.user_id))
        logger.debug(f"Registered connection {connection.connection_id} for user {connection.user_id}")

    async def add_to_room(self, connection_id: str, room_id: str) -> bool:
        """
        Add a live connection to a room.

        Returns:
            False if the connection is not (or no longer) registered.
        """
        async with self._lock_for(room_id):
            if connection_id not in self._connections:
                return False
            self._rooms.setdefault(room_id, set()).add(connection_id)
            self._memberships[connection_id].add(room_id)
            return True

    async def remove_from_room(self, connection_id: str, room_id: str) -> bool:
        """
        Remove a connection from a room.

        Returns:
            True if the connection was a member.
        """
        async with self._lock_for(room_id):
            members = self._rooms.get(room_id)
            if not members or connection_id not in members:
                return False
            members.discard(connection_id)
            if not members:
                del self._rooms[room_id]
            rooms = self._memberships.get(connection_id)
            if rooms is not None:
                rooms.discard(room_id)
            return True

    async def unregister(self, connection_id: str) -> List[str]:
        """
        Drop a connection from every room. Idempotent.

        Returns:
            The rooms the connection was in, sorted; empty if it was unknown.
        """
        # Liveness flips before any await so concurrent add_to_room calls refuse it
        connection = self._connections.pop(connection_id, None)
        rooms = self._memberships.pop(connection_id, set())
        if connection is None and not rooms:
            return []
        for room_id in sorted(rooms):
            async with self._lock_for(room_id):
                members = self._rooms.get(room_id)
                if members is not None:
                    members.discard(connection_id)
                    if not members:
                        del self._rooms[room_id]
        logger.debug(f"Unregistered connection {connection_id} from {len(rooms)} room(s)")
        return sorted(rooms)

    def reachable(self, room_id: str) -> Set[str]:
        """Snapshot of the connection ids currently in a room."""
        return set(self._rooms.get(room_id, ()))

    def connections_in(self, room_id: str) -> List[Connection]:
        """Live Connection objects in a room, in connection-id order."""
        return [
            self._connections[cid]
            for cid in sorted(self.reachable(room_id))
            if cid in self._connections
        ]

    def rooms_of(self, connection_id: str) -> Set[str]:
        return set(self._memberships.get(connection_id, ()))

    def is_member(self, connection_id: str, room_id: str) -> bool:
        return connection_id in self._rooms.get(room_id, ())

    def room_size(self, room_id: str) -> int:
        return len(self._rooms.get(room_id, ()))
