"""Client-facing WebSocket endpoint — browsers receive notification pushes.

Learn: Each client connects to /ws/client and then says who it is:

  → {"type": "authenticate", "userId": "42"}     joins room user:42
  → {"type": "join", "room": "user:42"}           explicit room join
  ← {"type": "joined", "room": "user:42"}
  ← {"type": "notification", "data": {...}}       pushed by the relay

The handler only reads. Pushes are written by the relay, from whichever
task is serving the producer's publish_to_room call.
"""

import json
import uuid
from typing import Any

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ripple.realtime.bridge import DeliveryBridge, room_for_user

logger = structlog.get_logger()
router = APIRouter()


class WebSocketClient:
    """Adapts a Starlette WebSocket to the bridge's ClientConnection."""

    def __init__(self, websocket: WebSocket):
        self.id = uuid.uuid4().hex
        self._websocket = websocket

    async def send_json(self, data: dict[str, Any]) -> None:
        await self._websocket.send_text(json.dumps(data, default=str))


async def _handle_client_message(
    bridge: DeliveryBridge,
    conn: WebSocketClient,
    raw: str,
) -> None:
    try:
        msg = json.loads(raw)
    except json.JSONDecodeError:
        await conn.send_json({"type": "error", "error": "invalid JSON"})
        return
    if not isinstance(msg, dict):
        await conn.send_json({"type": "error", "error": "message must be a JSON object"})
        return

    msg_type = msg.get("type")

    if msg_type == "authenticate":
        user_id = msg.get("userId")
        if user_id is None or user_id == "":
            await conn.send_json({"type": "error", "error": "userId is required"})
            return
        room = room_for_user(user_id)
        bridge.join(conn.id, room)
        await conn.send_json({"type": "joined", "room": room})

    elif msg_type == "join":
        room = msg.get("room")
        if not isinstance(room, str) or not room:
            await conn.send_json({"type": "error", "error": "room is required"})
            return
        bridge.join(conn.id, room)
        await conn.send_json({"type": "joined", "room": room})

    elif msg_type == "leave":
        room = msg.get("room")
        if isinstance(room, str) and room:
            bridge.leave(conn.id, room)
            await conn.send_json({"type": "left", "room": room})

    elif msg_type == "ping":
        await conn.send_json({"type": "pong"})

    else:
        await conn.send_json({"type": "error", "error": f"unknown message type: {msg_type!r}"})


@router.websocket("/ws/client")
async def client_websocket(websocket: WebSocket):
    """WebSocket endpoint for end-user clients.

    Room memberships live exactly as long as the connection; on disconnect
    the client leaves every room it joined.
    """
    await websocket.accept()

    bridge: DeliveryBridge = websocket.app.state.bridge
    conn = WebSocketClient(websocket)
    bridge.attach_client(conn)

    try:
        while True:
            raw = await websocket.receive_text()
            await _handle_client_message(bridge, conn, raw)
    except WebSocketDisconnect:
        pass
    finally:
        bridge.detach_client(conn.id)
