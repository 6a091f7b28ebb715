"""Internal-facing WebSocket endpoint — trusted producers publish to rooms.

Learn: Served on its own port (RIPPLE_INTERNAL_PORT), never exposed to
browsers. Protocol:

  ← {"type": "welcome", "message": "..."}                      on connect
  → {"type": "notification", "id": "<ref>", "room": "user:42", "data": {...}}
  ← {"type": "notificationReceived", "success": true,
     "roomDelivered": "user:42", "delivered": 1, "id": "<ref>"}
  ← {"type": "notificationError", "error": "...", "id": "<ref>"}

Authentication: service JWT as Bearer header or ?token= query param.
In development mode, unauthenticated producers are allowed.
"""

import json
from typing import Optional

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ripple.auth.jwt import TokenError, verify_service_token
from ripple.config import settings
from ripple.realtime.bridge import DeliveryBridge

logger = structlog.get_logger()
router = APIRouter()


def _extract_token(websocket: WebSocket) -> Optional[str]:
    auth = websocket.headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip() or None
    return websocket.query_params.get("token")


@router.websocket("/ws/internal")
async def internal_websocket(websocket: WebSocket):
    """WebSocket endpoint for notification producers (the fan-out worker)."""
    # ── Authentication ──────────────────────────────────────
    token = _extract_token(websocket)

    if not token and settings.environment != "development":
        await websocket.close(code=4001, reason="Authentication required")
        return

    producer = "anonymous"
    if token:
        try:
            producer = verify_service_token(token)
        except TokenError:
            await websocket.close(code=4001, reason="Invalid or expired token")
            return

    # ── Connection accepted ─────────────────────────────────
    await websocket.accept()
    bridge: DeliveryBridge = websocket.app.state.bridge
    log = logger.bind(producer=producer)
    log.info("bridge.producer_connected")

    await websocket.send_json({"type": "welcome", "message": "Connected to notification relay"})

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                await websocket.send_json({"type": "notificationError", "error": "invalid JSON"})
                continue
            if not isinstance(msg, dict):
                await websocket.send_json({"type": "notificationError", "error": "message must be a JSON object"})
                continue

            ref = msg.get("id")
            msg_type = msg.get("type")

            if msg_type == "notification":
                result = await bridge.publish_to_room(msg.get("room"), msg.get("data"))
                if not result.success:
                    log.warning("bridge.relay_rejected", room=result.room, error=result.error)
                await websocket.send_json(result.ack(ref))
            elif msg_type == "ping":
                await websocket.send_json({"type": "pong"})
            else:
                frame = {"type": "notificationError", "error": f"unknown message type: {msg_type!r}"}
                if ref is not None:
                    frame["id"] = ref
                await websocket.send_json(frame)
    except WebSocketDisconnect:
        log.info("bridge.producer_disconnected")
