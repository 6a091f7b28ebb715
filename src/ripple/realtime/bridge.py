"""Delivery bridge — room registry (client port) + relay (internal port)."""

import asyncio
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import structlog

logger = structlog.get_logger()

USER_ROOM_PREFIX = "user:"


def room_for_user(user_id: Any) -> str:
    """The room a user's clients join and their notifications are sent to."""
    return f"{USER_ROOM_PREFIX}{user_id}"


class ClientConnection(Protocol):
    """Anything that can receive JSON frames — a WebSocket wrapper or a test double."""

    id: str

    async def send_json(self, data: dict[str, Any]) -> None: ...


@dataclass(frozen=True)
class RelayResult:
    """Outcome of one publish_to_room, reported back to the producer."""
    success: bool
    room: str
    delivered: int = 0
    error: Optional[str] = None

    def ack(self, ref: Optional[str] = None) -> dict[str, Any]:
        """Internal-port acknowledgement frame."""
        if self.success:
            frame: dict[str, Any] = {
                "type": "notificationReceived",
                "success": True,
                "roomDelivered": self.room,
                "delivered": self.delivered,
            }
        else:
            frame = {"type": "notificationError", "error": self.error or "relay failed"}
        if ref is not None:
            frame["id"] = ref
        return frame


class RoomRegistry:
    """Client-facing connections and their room memberships.

    Learn: All access happens on one event loop, and no method awaits while
    mutating, so plain dicts are safe without a lock.
    """

    def __init__(self):
        self._connections: dict[str, ClientConnection] = {}
        self._rooms: dict[str, set[str]] = {}
        self._memberships: dict[str, set[str]] = {}

    def register(self, conn: ClientConnection) -> None:
        self._connections[conn.id] = conn
        self._memberships.setdefault(conn.id, set())

    def unregister(self, conn_id: str) -> set[str]:
        """Forget a connection and leave all its rooms. Returns the rooms left."""
        self._connections.pop(conn_id, None)
        rooms = self._memberships.pop(conn_id, set())
        for room in rooms:
            members = self._rooms.get(room)
            if members is None:
                continue
            members.discard(conn_id)
            if not members:
                del self._rooms[room]
        return rooms

    def join(self, conn_id: str, room: str) -> None:
        if conn_id not in self._connections:
            raise KeyError(f"Unknown connection {conn_id}")
        self._rooms.setdefault(room, set()).add(conn_id)
        self._memberships[conn_id].add(room)

    def leave(self, conn_id: str, room: str) -> None:
        members = self._rooms.get(room)
        if members is not None:
            members.discard(conn_id)
            if not members:
                del self._rooms[room]
        self._memberships.get(conn_id, set()).discard(room)

    def members(self, room: str) -> list[ClientConnection]:
        return [
            self._connections[conn_id]
            for conn_id in self._rooms.get(room, ())
            if conn_id in self._connections
        ]

    def room_size(self, room: str) -> int:
        return len(self._rooms.get(room, ()))

    def rooms_of(self, conn_id: str) -> set[str]:
        return set(self._memberships.get(conn_id, ()))

    @property
    def connection_count(self) -> int:
        return len(self._connections)


class DeliveryBridge:
    """Two ports, one relay rule.

    Usage:
        bridge = DeliveryBridge()
        bridge.attach_client(conn)
        bridge.join(conn.id, room_for_user("42"))
        result = await bridge.publish_to_room(room_for_user("42"), {...})
    """

    def __init__(self):
        self.clients = RoomRegistry()

    # ─── Client-facing port ──────────────────────────────

    def attach_client(self, conn: ClientConnection) -> None:
        self.clients.register(conn)
        logger.info("bridge.client_connected", conn_id=conn.id)

    def detach_client(self, conn_id: str) -> None:
        rooms = self.clients.unregister(conn_id)
        logger.info("bridge.client_disconnected", conn_id=conn_id, rooms=sorted(rooms))

    def join(self, conn_id: str, room: str) -> None:
        self.clients.join(conn_id, room)
        logger.info("bridge.room_joined", conn_id=conn_id, room=room)

    def leave(self, conn_id: str, room: str) -> None:
        self.clients.leave(conn_id, room)

    async def emit(self, room: str, event: str, data: Any) -> int:
        """Send one frame to every member of room. Returns how many got it.

        A member whose send fails is detached; it is gone, and the next
        emit would only fail again.
        """
        members = self.clients.members(room)
        if not members:
            return 0

        frame = {"type": event, "data": data}
        results = await asyncio.gather(
            *(conn.send_json(frame) for conn in members),
            return_exceptions=True,
        )
        delivered = 0
        for conn, result in zip(members, results):
            if isinstance(result, BaseException):
                logger.warning("bridge.send_failed", conn_id=conn.id, room=room, error=str(result))
                self.detach_client(conn.id)
            else:
                delivered += 1
        return delivered

    # ─── Internal-facing port ────────────────────────────

    async def publish_to_room(self, room: Any, notification: Any) -> RelayResult:
        """Relay a producer's notification to room on the client port.

        An empty room is not an error: nothing is queued, the push is
        simply dropped (success with delivered=0).
        """
        if not isinstance(room, str) or not room:
            return RelayResult(success=False, room=str(room or ""), error="room is required")

        try:
            delivered = await self.emit(room, "notification", notification)
        except Exception as e:
            logger.exception("bridge.relay_failed", room=room)
            return RelayResult(success=False, room=room, error=str(e))

        logger.info("bridge.relayed", room=room, delivered=delivered)
        return RelayResult(success=True, room=room, delivered=delivered)
