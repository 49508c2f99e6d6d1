import asyncio
from typing import Any, Awaitable, Callable, Iterable

from loguru import logger

DRIVERS = "drivers"
CLIENTS = "clients"

Sender = Callable[[dict[str, Any]], Awaitable[Any]]


def request_room(request_id) -> str:
    """Name of the private channel between a request's driver and requester."""
    return f"request:{request_id}"


def envelope(event: str, payload: Any) -> dict[str, Any]:
    return {"event": event, "data": payload}


class NotificationHub:
    """
    Delivers events to a single connection, a room, or a whole group.

    Delivery is best effort: a connection whose sender fails is logged and
    detached, nothing is queued or retried.
    """

    def __init__(self):
        self._senders: dict[str, Sender] = {}
        self._group_of: dict[str, str] = {}
        self._groups: dict[str, set[str]] = {DRIVERS: set(), CLIENTS: set()}
        self._rooms: dict[str, set[str]] = {}
        self._memberships: dict[str, set[str]] = {}

    # --- Connections ---

    def attach(self, connection_id: str, sender: Sender, group: str) -> None:
        self._senders[connection_id] = sender
        self._group_of[connection_id] = group
        self._groups.setdefault(group, set()).add(connection_id)

    def detach(self, connection_id: str) -> bool:
        """Drops the connection from its group and every room. Idempotent."""
        if self._senders.pop(connection_id, None) is None:
            return False
        group = self._group_of.pop(connection_id, None)
        if group is not None:
            self._groups.get(group, set()).discard(connection_id)
        for room in self._memberships.pop(connection_id, set()):
            members = self._rooms.get(room)
            if members is not None:
                members.discard(connection_id)
                if not members:
                    del self._rooms[room]
        return True

    def is_live(self, connection_id: str | None) -> bool:
        return connection_id is not None and connection_id in self._senders

    def group_of(self, connection_id: str | None) -> str | None:
        return self._group_of.get(connection_id)

    def group_members(self, group: str) -> set[str]:
        return set(self._groups.get(group, set()))

    # --- Rooms ---

    def join(self, room: str, connection_id: str | None) -> bool:
        """Adds a live connection to a room, creating the room on first join."""
        if not self.is_live(connection_id):
            logger.debug(f"Skipping join of {connection_id} to {room}: connection is gone")
            return False
        self._rooms.setdefault(room, set()).add(connection_id)
        self._memberships.setdefault(connection_id, set()).add(room)
        return True

    def room_members(self, room: str) -> set[str]:
        return set(self._rooms.get(room, set()))

    def rooms_of(self, connection_id: str) -> set[str]:
        return set(self._memberships.get(connection_id, set()))

    # --- Delivery ---

    async def send_to(self, connection_id: str, event: str, payload: Any) -> bool:
        success, _ = await self._deliver([connection_id], event, payload)
        return success == 1

    async def emit_to_room(self, room: str, event: str, payload: Any, exclude: str | None = None) -> int:
        targets = [conn for conn in self._rooms.get(room, set()) if conn != exclude]
        success, _ = await self._deliver(targets, event, payload)
        return success

    async def broadcast(self, group: str, event: str, payload: Any, exclude: str | None = None) -> int:
        targets = [conn for conn in self._groups.get(group, set()) if conn != exclude]
        success, _ = await self._deliver(targets, event, payload)
        return success

    async def _deliver(self, connection_ids: Iterable[str], event: str, payload: Any) -> tuple[int, int]:
        """Sends to all targets concurrently. Returns (success_count, fail_count)."""
        targets = [(conn, self._senders[conn]) for conn in connection_ids if conn in self._senders]
        if not targets:
            return 0, 0

        message = envelope(event, payload)
        results = await asyncio.gather(*(sender(message) for _, sender in targets), return_exceptions=True)

        success_count = 0
        fail_count = 0
        for (conn, _), result in zip(targets, results):
            if isinstance(result, Exception):
                fail_count += 1
                logger.warning(f"Delivery of '{event}' to {conn} failed, detaching connection: {result!r}")
                self.detach(conn)
            else:
                success_count += 1
        return success_count, fail_count

    def stats(self) -> dict[str, int]:
        return {
            'connections': len(self._senders),
            'drivers': len(self._groups.get(DRIVERS, set())),
            'clients': len(self._groups.get(CLIENTS, set())),
            'rooms': len(self._rooms),
        }
