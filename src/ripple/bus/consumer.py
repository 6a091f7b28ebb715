"""Bus consumer — Redis Streams consumer-group reader over partition streams.

Learn: Delivery is at-least-once. An entry is acked only after the handler
is done with it, so a crash mid-batch leaves it pending. Pending entries
come back two ways:

1. On start, the consumer replays its own pending entries page by page.
2. On start and then every claim_interval seconds, it claims (XAUTOCLAIM)
   entries any consumer in the group has left pending longer than
   claim_min_idle_ms. This is what rescues the entries of a worker that
   crashed and came back under a different name.

A handler that raises RetryableError leaves its entry pending; the next
claim sweep picks it up again, up to max_attempts deliveries in this
process. Any other handler error is logged and the entry is acked.
Handlers must therefore tolerate seeing the same envelope twice.

Ordering: entries of one partition stream are handled strictly in order;
different partitions of the same batch are handled concurrently. Retried
and claimed entries are replayed after newer ones.
"""

import asyncio
import json
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional

import structlog
from pydantic import ValidationError

from ripple.bus.partitioning import StreamLayout
from ripple.events.envelope import EventEnvelope

logger = structlog.get_logger()

Handler = Callable[[str, EventEnvelope], Awaitable[Any]]


class RetryableError(Exception):
    """Raised by a handler when its entry should stay pending and be retried."""


class ConsumerState(str, Enum):
    IDLE = "idle"
    RECEIVING = "receiving"
    PROCESSING = "processing"
    STOPPED = "stopped"


@dataclass
class ConsumerStats:
    """Runtime statistics for monitoring."""
    processed: int = 0
    dropped: int = 0
    failed: int = 0
    retried: int = 0
    claimed: int = 0
    started_at: Optional[datetime] = None
    by_stream: dict[str, int] = field(default_factory=dict)


def _str(value: bytes | str) -> str:
    return value.decode() if isinstance(value, bytes) else value


class BusConsumer:
    """Reads every partition stream of the given topics through one group."""

    def __init__(
        self,
        redis_client: Any,
        handler: Handler,
        *,
        layout: StreamLayout,
        topics: Iterable[str],
        group: str = "notification-group",
        consumer_name: Optional[str] = None,
        batch_size: int = 10,
        block_ms: int = 1000,
        claim_min_idle_ms: int = 60_000,
        claim_interval: float = 30.0,
        max_attempts: int = 5,
    ):
        self._redis = redis_client
        self._handler = handler
        self._layout = layout
        self._streams = layout.streams(topics)
        self._group = group
        self._consumer = consumer_name or f"worker-{os.getpid()}"
        self._batch_size = batch_size
        self._block_ms = block_ms
        self._claim_min_idle_ms = claim_min_idle_ms
        self._claim_interval = claim_interval
        self._max_attempts = max(1, max_attempts)
        self._attempts: dict[tuple[str, str], int] = {}
        self.state = ConsumerState.IDLE
        self.stats = ConsumerStats()

    @property
    def streams(self) -> list[str]:
        return list(self._streams)

    async def start(self, shutdown_event: asyncio.Event) -> None:
        """Consume until shutdown_event is set. The current batch always finishes."""
        await self._ensure_consumer_groups()
        await self._recover_pending()
        await self._claim_idle()

        loop = asyncio.get_running_loop()
        last_claim = loop.time()
        self.stats.started_at = datetime.now(timezone.utc)
        log = logger.bind(group=self._group, consumer=self._consumer)
        log.info("consumer.started", streams=len(self._streams))

        while not shutdown_event.is_set():
            try:
                if self._claim_interval > 0 and loop.time() - last_claim >= self._claim_interval:
                    last_claim = loop.time()
                    await self._claim_idle()

                self.state = ConsumerState.RECEIVING
                entries = await self._redis.xreadgroup(
                    self._group,
                    self._consumer,
                    {stream: ">" for stream in self._streams},
                    count=self._batch_size,
                    block=self._block_ms,
                )
                if not entries:
                    self.state = ConsumerState.IDLE
                    continue
                await self._process_entries(entries)
            except asyncio.CancelledError:
                break
            except Exception:
                log.exception("consumer.read_error")
                self.state = ConsumerState.IDLE
                await asyncio.sleep(1.0)

        self.state = ConsumerState.STOPPED
        log.info(
            "consumer.stopped",
            processed=self.stats.processed,
            dropped=self.stats.dropped,
            failed=self.stats.failed,
            retried=self.stats.retried,
        )

    async def _ensure_consumer_groups(self) -> None:
        for stream in self._streams:
            try:
                # id="0": also pick up entries appended before the group existed
                await self._redis.xgroup_create(stream, self._group, id="0", mkstream=True)
            except Exception as exc:
                if "BUSYGROUP" not in str(exc):
                    raise

    async def _recover_pending(self) -> None:
        """Replay entries this consumer read but never acked, page by page."""
        cursors = {stream: "0" for stream in self._streams}
        recovered = 0
        try:
            while cursors:
                entries = await self._redis.xreadgroup(
                    self._group,
                    self._consumer,
                    cursors,
                    count=self._batch_size * 5,
                )
                drained = set(cursors)
                for stream, messages in entries or []:
                    if messages:
                        stream = _str(stream)
                        # Page past what was just read, acked or not
                        cursors[stream] = _str(messages[-1][0])
                        drained.discard(stream)
                        recovered += len(messages)
                if entries:
                    await self._process_entries(entries)
                for stream in drained:
                    cursors.pop(stream)
        except Exception:
            logger.exception("consumer.pending_recovery_failed")
        if recovered:
            logger.info("consumer.recovered_pending", entries=recovered)

    async def _claim_idle(self) -> None:
        """Take over entries left pending past the idle limit by any consumer."""
        for stream in self._streams:
            start_id = "0-0"
            try:
                while True:
                    response = await self._redis.xautoclaim(
                        stream,
                        self._group,
                        self._consumer,
                        self._claim_min_idle_ms,
                        start_id=start_id,
                        count=self._batch_size * 5,
                    )
                    start_id = _str(response[0])
                    messages = response[1]
                    if messages:
                        self.stats.claimed += len(messages)
                        logger.info("consumer.claimed_pending", stream=stream, entries=len(messages))
                        await self._process_entries([(stream, messages)])
                    if start_id in ("0-0", "0"):
                        break
            except Exception:
                logger.exception("consumer.claim_failed", stream=stream)

    async def _process_entries(self, entries: Any) -> None:
        self.state = ConsumerState.PROCESSING
        await asyncio.gather(*(
            self._process_stream(_str(stream), messages)
            for stream, messages in entries
            if messages
        ))
        self.state = ConsumerState.IDLE

    async def _process_stream(self, stream: str, messages: Any) -> None:
        topic = self._layout.topic_of(stream) or stream
        for entry_id, data in messages:
            entry_id = _str(entry_id)
            if await self._process_entry(stream, topic, entry_id, data):
                try:
                    await self._redis.xack(stream, self._group, entry_id)
                except Exception:
                    logger.exception("consumer.ack_failed", stream=stream, entry_id=entry_id)
            self.stats.by_stream[stream] = self.stats.by_stream.get(stream, 0) + 1

    async def _process_entry(self, stream: str, topic: str, entry_id: str, data: Any) -> bool:
        """Hand one entry to the handler. Returns whether it should be acked."""
        fields = {_str(k): _str(v) for k, v in (data or {}).items()}
        try:
            envelope = EventEnvelope.from_wire(fields.get("value", ""))
        except (ValidationError, ValueError, json.JSONDecodeError) as e:
            # Malformed entries can never succeed; ack and drop
            self.stats.dropped += 1
            logger.warning("consumer.malformed_entry", topic=topic, entry_id=entry_id, error=str(e))
            return True

        log = logger.bind(topic=topic, entry_id=entry_id, event_type=envelope.event_type)
        key = (stream, entry_id)
        try:
            await self._handler(topic, envelope)
        except RetryableError as e:
            attempts = self._attempts.get(key, 0) + 1
            if attempts < self._max_attempts:
                self._attempts[key] = attempts
                self.stats.retried += 1
                log.warning("consumer.handler_retry_pending", attempt=attempts, error=str(e))
                return False
            self._attempts.pop(key, None)
            self.stats.failed += 1
            log.error("consumer.handler_gave_up", attempts=attempts, error=str(e))
            return True
        except Exception:
            self._attempts.pop(key, None)
            self.stats.failed += 1
            log.exception("consumer.handler_failed")
            return True

        self._attempts.pop(key, None)
        self.stats.processed += 1
        return True
