"""Connection registry and room fan-out.

Tracks every live connection handle and the workspace rooms it has joined.
All outbound delivery goes through here. Delivery is best effort: a failed
send is logged and dropped, never retried and never raised to the caller,
because the protocol's snapshot events let clients reconcile.
"""

import asyncio
import logging
from collections import defaultdict
from collections.abc import Iterable

from teamcall.transport.base import ConnectionHandle
from teamcall.transport.websocket_protocol import ServerEvent, encode_server_event

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """Owns the connection → room membership mapping."""

    def __init__(self) -> None:
        self._connections: dict[str, ConnectionHandle] = {}
        self._rooms: dict[str, set[str]] = defaultdict(set)
        self._memberships: dict[str, set[str]] = defaultdict(set)
        self.dropped_sends = 0

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    @property
    def room_count(self) -> int:
        return len(self._rooms)

    def register(self, connection: ConnectionHandle) -> None:
        """Make a connection addressable."""
        self._connections[connection.connection_id] = connection

    def is_registered(self, connection_id: str) -> bool:
        return connection_id in self._connections

    def join(self, connection_id: str, room_id: str) -> bool:
        """Add a connection to a room. Idempotent.

        Returns:
            True if the membership is new
        """
        members = self._rooms[room_id]
        if connection_id in members:
            return False
        members.add(connection_id)
        self._memberships[connection_id].add(room_id)

        logger.debug(
            "Joined room",
            extra={"connection_id": connection_id, "room": room_id, "members": len(members)},
        )
        return True

    def leave(self, connection_id: str, room_id: str) -> bool:
        """Remove a connection from a room. No-op if it is not a member."""
        members = self._rooms.get(room_id)
        if not members or connection_id not in members:
            return False
        members.discard(connection_id)
        if not members:
            del self._rooms[room_id]

        rooms = self._memberships.get(connection_id)
        if rooms is not None:
            rooms.discard(room_id)
            if not rooms:
                del self._memberships[connection_id]
        return True

    def is_member(self, connection_id: str, room_id: str) -> bool:
        return connection_id in self._rooms.get(room_id, ())

    def members(self, room_id: str) -> set[str]:
        return set(self._rooms.get(room_id, ()))

    def rooms_of(self, connection_id: str) -> set[str]:
        return set(self._memberships.get(connection_id, ()))

    def on_disconnect(self, connection_id: str) -> list[str]:
        """Purge a departed connection.

        Returns:
            Rooms the connection was part of (empty on a repeated call)
        """
        rooms = sorted(self._memberships.pop(connection_id, set()))
        for room_id in rooms:
            members = self._rooms.get(room_id)
            if members is None:
                continue
            members.discard(connection_id)
            if not members:
                del self._rooms[room_id]
        self._connections.pop(connection_id, None)
        return rooms

    async def send(self, connection_id: str, event: ServerEvent) -> bool:
        """Deliver an event to one connection.

        Returns:
            True if the send succeeded
        """
        return await self._deliver(connection_id, encode_server_event(event), event.type)

    async def send_many(
        self,
        connection_ids: Iterable[str],
        event: ServerEvent,
        exclude: str | None = None,
    ) -> int:
        """Deliver an event to an explicit set of connections.

        Returns:
            Number of successful deliveries
        """
        targets = [cid for cid in dict.fromkeys(connection_ids) if cid != exclude]
        if not targets:
            return 0

        data = encode_server_event(event)
        results = await asyncio.gather(
            *(self._deliver(cid, data, event.type) for cid in targets)
        )
        return sum(1 for ok in results if ok)

    async def broadcast(
        self, room_id: str, event: ServerEvent, exclude: str | None = None
    ) -> int:
        """Deliver an event to every member of a room.

        A room without members is a no-op.

        Returns:
            Number of successful deliveries
        """
        members = self._rooms.get(room_id)
        if not members:
            return 0
        return await self.send_many(sorted(members), event, exclude=exclude)

    async def close_all(self, reason: str = "server shutdown") -> None:
        """Close every registered connection."""
        for connection in list(self._connections.values()):
            await connection.close(reason=reason)

    async def _deliver(self, connection_id: str, data: str, event_type: str) -> bool:
        connection = self._connections.get(connection_id)
        if connection is None or not connection.is_connected:
            self.dropped_sends += 1
            logger.debug(
                "Dropping event for unavailable connection",
                extra={"connection_id": connection_id, "type": event_type},
            )
            return False

        try:
            await connection.send_text(data)
            return True
        except Exception as e:
            self.dropped_sends += 1
            logger.warning(
                "Failed to deliver event",
                extra={"connection_id": connection_id, "type": event_type, "error": str(e)},
            )
            return False
