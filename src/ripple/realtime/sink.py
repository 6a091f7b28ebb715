"""Notification sinks — how the fan-out worker reaches the internal port.

Learn: The worker does not care where the bridge lives. When it runs inside
the API process (ripple serve --embedded-worker) it calls the bridge
directly; as a separate process it talks to /ws/internal over a WebSocket.
Both return a RelayResult and neither raises: a failed push never undoes
the notification that was already persisted.
"""

import asyncio
import json
import uuid
from typing import Any, Optional, Protocol

import structlog
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from ripple.realtime.bridge import DeliveryBridge, RelayResult

logger = structlog.get_logger()


class NotificationSink(Protocol):
    async def push(self, room: str, notification: dict[str, Any]) -> RelayResult: ...

    async def close(self) -> None: ...


class LocalBridgeSink:
    """In-process sink: calls the bridge's internal port directly."""

    def __init__(self, bridge: DeliveryBridge):
        self.bridge = bridge

    async def push(self, room: str, notification: dict[str, Any]) -> RelayResult:
        return await self.bridge.publish_to_room(room, notification)

    async def close(self) -> None:
        pass


class RemoteBridgeSink:
    """WebSocket client for the bridge's internal port.

    Learn: One connection, opened lazily on the first push and re-opened on
    the next push after a drop. Pushes are serialized on a lock so each ack
    can be matched to its request by reading the next frames in order.
    """

    def __init__(
        self,
        url: str,
        token: Optional[str] = None,
        ack_timeout: float = 5.0,
        connect_timeout: float = 10.0,
    ):
        self.url = url
        self._token = token
        self._ack_timeout = ack_timeout
        self._connect_timeout = connect_timeout
        self._ws: Optional[ClientConnection] = None
        self._lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def push(self, room: str, notification: dict[str, Any]) -> RelayResult:
        ref = uuid.uuid4().hex
        frame = json.dumps(
            {"type": "notification", "id": ref, "room": room, "data": notification},
            default=str,
        )
        async with self._lock:
            try:
                ws = await self._ensure_connection()
                await ws.send(frame)
                ack = await asyncio.wait_for(self._read_ack(ws, ref), timeout=self._ack_timeout)
            except asyncio.TimeoutError:
                logger.warning("sink.ack_timeout", room=room, timeout=self._ack_timeout)
                await self._drop()
                return RelayResult(success=False, room=room, error="ack timeout")
            except (ConnectionClosed, WebSocketException, OSError, ValueError) as e:
                logger.warning("sink.connection_lost", room=room, error=str(e))
                await self._drop()
                return RelayResult(success=False, room=room, error=str(e))

        if ack.get("type") == "notificationReceived":
            return RelayResult(
                success=True,
                room=ack.get("roomDelivered", room),
                delivered=int(ack.get("delivered", 0)),
            )
        return RelayResult(success=False, room=room, error=str(ack.get("error", "relay failed")))

    async def _ensure_connection(self) -> ClientConnection:
        if self._ws is not None:
            return self._ws

        headers = {"Authorization": f"Bearer {self._token}"} if self._token else None
        ws = await connect(
            self.url,
            additional_headers=headers,
            open_timeout=self._connect_timeout,
        )
        # The bridge greets every producer before anything else
        try:
            welcome = json.loads(await asyncio.wait_for(ws.recv(), timeout=self._connect_timeout))
        except BaseException:
            await ws.close()
            raise
        if not isinstance(welcome, dict) or welcome.get("type") != "welcome":
            await ws.close()
            raise WebSocketException("Unexpected greeting from bridge")
        logger.info("sink.connected", url=self.url)
        self._ws = ws
        return ws

    async def _read_ack(self, ws: ClientConnection, ref: str) -> dict[str, Any]:
        while True:
            raw = await ws.recv()
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("sink.invalid_frame", frame=str(raw)[:100])
                continue
            if not isinstance(msg, dict):
                continue
            if msg.get("type") in ("notificationReceived", "notificationError") and msg.get("id") in (ref, None):
                return msg

    async def _drop(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug("sink.close_failed", error=str(e))

    async def close(self) -> None:
        async with self._lock:
            await self._drop()
