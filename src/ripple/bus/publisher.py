"""Event publisher — owns the outbound broker connection.

Learn: The API must keep working when Redis is down. So publishing never
raises: every failure is logged and reported as False, and the caller
(usually an API handler) carries on.

Connection lifecycle is an explicit state machine:

  disconnected → connecting → connected → disconnected (drop) → connecting …

Two rules hold under concurrency:
1. At most one dial is in flight. Concurrent callers that find the manager
   disconnected all await the same dial task.
2. A supervisor task pings the broker while connected. When the ping fails
   the state flips to disconnected and the next publish re-dials.

Bounded exponential backoff for individual commands is redis-py
configuration (Retry + ExponentialBackoff), not logic re-implemented here.
"""

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional

import redis.asyncio as aioredis
import structlog
from pydantic import ValidationError
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ripple.bus.partitioning import StreamLayout
from ripple.config import Settings
from ripple.events.envelope import EventEnvelope
from ripple.events.types import TargetType, topic_for

logger = structlog.get_logger()

ClientFactory = Callable[[], Awaitable[Any]]

# Errors that mean "the connection is gone", as opposed to a bad command
TRANSPORT_ERRORS = (RedisConnectionError, RedisTimeoutError, ConnectionError, OSError, TimeoutError)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def redis_client_factory(settings: Settings) -> ClientFactory:
    """Build a factory that dials Redis and verifies the connection with PING."""

    async def factory() -> aioredis.Redis:
        client = aioredis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=settings.bus_connect_timeout,
            retry=Retry(
                ExponentialBackoff(cap=settings.bus_retry_cap, base=settings.bus_retry_base),
                settings.bus_retry_attempts,
            ),
            retry_on_error=[RedisConnectionError, RedisTimeoutError],
        )
        try:
            await client.ping()
        except BaseException:
            await client.aclose()
            raise
        return client

    return factory


class ConnectionManager:
    """Single outbound broker connection with guarded state transitions.

    Usage:
        connection = ConnectionManager(redis_client_factory(settings))
        await connection.connect()      # optional, publish() connects lazily
        ...
        await connection.close()
    """

    def __init__(
        self,
        client_factory: ClientFactory,
        health_check_interval: float = 5.0,
    ):
        self._factory = client_factory
        self.health_check_interval = health_check_interval
        self._state = ConnectionState.DISCONNECTED
        self._client: Any = None
        self._lock = asyncio.Lock()
        self._pending: Optional[asyncio.Task] = None
        self._supervisor: Optional[asyncio.Task] = None
        self.connect_attempts = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def client(self) -> Any:
        """The live client, or None when not connected."""
        return self._client if self.is_connected else None

    # ─── Connect ──────────────────────────────────────────

    async def connect(self) -> bool:
        """Connect if needed. Returns True when connected, False otherwise.

        Callers arriving while a dial is in flight share that dial. The dial
        is shielded: cancelling one waiting caller does not abort it for the
        others.
        """
        async with self._lock:
            if self._state is ConnectionState.CONNECTED:
                return True
            if self._pending is None:
                self._state = ConnectionState.CONNECTING
                self._pending = asyncio.create_task(self._dial())
            pending = self._pending
        try:
            return await asyncio.shield(pending)
        except asyncio.CancelledError:
            # The dial itself was aborted by close(), not this caller
            if pending.cancelled():
                return False
            raise

    async def ensure_connected(self) -> bool:
        if self.is_connected:
            return True
        return await self.connect()

    async def _dial(self) -> bool:
        self.connect_attempts += 1
        log = logger.bind(attempt=self.connect_attempts)
        log.info("bus.connecting")
        try:
            client = await self._factory()
        except Exception as e:
            async with self._lock:
                self._state = ConnectionState.DISCONNECTED
                self._pending = None
            log.warning("bus.connect_failed", error=str(e))
            return False

        try:
            async with self._lock:
                self._client = client
                self._state = ConnectionState.CONNECTED
                self._pending = None
                self._start_supervisor()
        except asyncio.CancelledError:
            await _close_quietly(client)
            raise
        log.info("bus.connected")
        return True

    # ─── Disconnect handling ─────────────────────────────

    async def mark_disconnected(self, reason: str) -> None:
        """Transition to disconnected and drop the client.

        Called by the supervisor when a health check fails, and by the
        publisher when a command fails with a transport error.
        """
        async with self._lock:
            if self._state is not ConnectionState.CONNECTED:
                return
            client = self._client
            self._client = None
            self._state = ConnectionState.DISCONNECTED
            supervisor = self._supervisor
            self._supervisor = None

        logger.warning("bus.disconnected", reason=reason)
        if supervisor is not None and supervisor is not asyncio.current_task():
            supervisor.cancel()
        await _close_quietly(client)

    def _start_supervisor(self) -> None:
        if self.health_check_interval <= 0:
            return
        self._supervisor = asyncio.create_task(self._supervise(self._client))

    async def _supervise(self, client: Any) -> None:
        """Ping the broker while this client is the live one."""
        while True:
            await asyncio.sleep(self.health_check_interval)
            if self._client is not client:
                return
            try:
                await client.ping()
            except Exception as e:
                await self.mark_disconnected(f"health check failed: {e}")
                return

    # ─── Shutdown ─────────────────────────────────────────

    async def close(self) -> None:
        async with self._lock:
            client = self._client
            supervisor = self._supervisor
            pending = self._pending
            self._client = None
            self._supervisor = None
            self._pending = None
            self._state = ConnectionState.DISCONNECTED

        if supervisor is not None:
            supervisor.cancel()
            try:
                await supervisor
            except asyncio.CancelledError:
                pass
        if pending is not None:
            pending.cancel()
            try:
                await pending
            except asyncio.CancelledError:
                pass
        await _close_quietly(client)
        logger.info("bus.closed")


async def _close_quietly(client: Any) -> None:
    if client is None:
        return
    try:
        await client.aclose()
    except Exception as e:
        logger.debug("bus.close_failed", error=str(e))


class EventPublisher:
    """Serializes envelopes and appends them to partition streams.

    Learn: publish() returns a bool instead of raising. A like or a follow
    must still succeed for the actor when the notification pipeline is
    down; the caller decides whether a False matters.
    """

    def __init__(
        self,
        connection: ConnectionManager,
        layout: StreamLayout,
        maxlen: Optional[int] = 100_000,
    ):
        self.connection = connection
        self.layout = layout
        self.maxlen = maxlen

    async def publish(
        self,
        topic: str,
        envelope: EventEnvelope | Mapping[str, Any],
    ) -> bool:
        """Publish one envelope. Never raises; returns the outcome."""
        try:
            if not isinstance(envelope, EventEnvelope):
                envelope = EventEnvelope.model_validate(envelope)
        except ValidationError as e:
            logger.warning("bus.publish_rejected", topic=topic, reason="invalid envelope", error=str(e))
            return False

        # Checked before touching the transport: no key, no partition
        if not envelope.target_id:
            logger.warning(
                "bus.publish_rejected",
                topic=topic,
                event_type=envelope.event_type,
                reason="missing targetId",
            )
            return False

        envelope = envelope.stamped()
        log = logger.bind(topic=topic, event_type=envelope.event_type, event_id=envelope.event_id)

        try:
            if not await self.connection.ensure_connected():
                log.error("bus.publish_failed", reason="not connected")
                return False

            client = self.connection.client
            if client is None:
                log.error("bus.publish_failed", reason="connection dropped")
                return False

            key = envelope.partition_key
            stream = self.layout.stream_for(topic, key)
            await client.xadd(
                stream,
                {"key": key, "value": envelope.to_wire()},
                maxlen=self.maxlen,
                approximate=True,
            )
        except TRANSPORT_ERRORS as e:
            log.error("bus.publish_failed", reason="transport", error=str(e))
            await self.connection.mark_disconnected(str(e))
            return False
        except Exception as e:
            log.error("bus.publish_failed", reason="unexpected", error=str(e))
            return False

        log.info("bus.event_published", stream=stream)
        return True

    async def publish_event(
        self,
        event_type: str,
        *,
        actor_id: str,
        target_id: Any,
        target_type: TargetType | str,
        payload: Optional[dict[str, Any]] = None,
        topic: Optional[str] = None,
    ) -> bool:
        """Build an envelope and publish it to the topic for its event type."""
        topic = topic or topic_for(event_type)
        if topic is None:
            logger.warning("bus.publish_rejected", event_type=event_type, reason="no topic for event type")
            return False
        return await self.publish(topic, {
            "eventType": event_type,
            "actorId": actor_id,
            "targetId": target_id,
            "targetType": target_type,
            "payload": payload or {},
        })
