"""Real-time delivery — WebSocket push of notifications to connected clients.

Learn: Delivery goes through one DeliveryBridge with two ports:
1. Internal port — trusted producers (the fan-out worker) call
   publish_to_room(room, notification) over /ws/internal.
2. Client port — browsers connect to /ws/client, join rooms
   (user:<id>), and receive "notification" pushes.

The relay rule joins them: whatever arrives on the internal port for room R
is emitted to room R on the client port. Pushes are best-effort; the
persisted notification is the durable record and clients catch up via
the REST API.
"""
