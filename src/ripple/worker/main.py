"""Fan-out worker entry point — run as a separate process.

Learn: The worker is its own process, separate from the API server.
This provides crash isolation: if the worker dies, the API keeps
accepting events (they wait in the partition streams), and when the
worker comes back it replays its own pending entries and claims the
ones a crashed worker left behind.

It reaches connected clients through the bridge's internal port with a
service token, exactly like any other trusted producer.

Usage:
    ripple worker

Or directly:
    ripple-worker
"""

import asyncio
import signal
import sys
from dataclasses import asdict
from typing import Optional

import structlog

from ripple.bus.consumer import BusConsumer
from ripple.bus.partitioning import StreamLayout
from ripple.bus.publisher import TRANSPORT_ERRORS, ClientFactory, redis_client_factory
from ripple.config import settings
from ripple.events.types import FANOUT_TOPICS
from ripple.log import configure_logging
from ripple.realtime.bridge import DeliveryBridge
from ripple.realtime.sink import LocalBridgeSink, NotificationSink, RemoteBridgeSink
from ripple.relevance import RelevancePolicy, build_gate
from ripple.services.fanout import FanOutService

logger = structlog.get_logger()


def build_fanout(sink: NotificationSink) -> FanOutService:
    """Fan-out service wired to the configured gate and the shared DB."""
    from ripple.db.engine import async_session_factory

    policy = RelevancePolicy(
        build_gate(settings.relevance_gate),
        threshold=settings.relevance_threshold,
        timeout=settings.relevance_timeout_seconds,
    )
    return FanOutService(
        async_session_factory,
        policy,
        sink,
        concurrency=settings.fanout_concurrency,
    )


def build_consumer(redis_client, fanout: FanOutService) -> BusConsumer:
    return BusConsumer(
        redis_client,
        fanout.handle,
        layout=StreamLayout.from_settings(settings),
        topics=FANOUT_TOPICS,
        group=settings.consumer_group,
        consumer_name=settings.consumer_name or None,
        batch_size=settings.consumer_batch_size,
        block_ms=settings.consumer_block_ms,
        claim_min_idle_ms=settings.consumer_claim_min_idle_ms,
        claim_interval=settings.consumer_claim_interval,
        max_attempts=settings.consumer_max_attempts,
    )


async def _consume(
    sink: NotificationSink,
    shutdown_event: asyncio.Event,
    client_factory: Optional[ClientFactory] = None,
) -> None:
    """Dial Redis and consume until shutdown. The sink stays open."""
    redis_client = await (client_factory or redis_client_factory(settings))()
    consumer = build_consumer(redis_client, build_fanout(sink))
    try:
        await consumer.start(shutdown_event)
    finally:
        await redis_client.aclose()
        logger.info("worker.stopped", state=consumer.state.value, **{
            k: v for k, v in asdict(consumer.stats).items() if k != "started_at"
        })


async def run_embedded(
    bridge: DeliveryBridge,
    shutdown_event: asyncio.Event,
    client_factory: Optional[ClientFactory] = None,
) -> None:
    """Run inside the API process, pushing straight into its bridge.

    Transport failures (Redis down at startup, or gone while creating the
    consumer groups) are retried with exponential backoff until shutdown.
    """
    sink = LocalBridgeSink(bridge)
    delay = settings.bus_retry_base
    try:
        while not shutdown_event.is_set():
            try:
                await _consume(sink, shutdown_event, client_factory)
                return
            except TRANSPORT_ERRORS as e:
                logger.warning("worker.bus_unavailable", error=str(e), retry_in=delay)
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
            delay = min(delay * 2, settings.bus_retry_cap)
    finally:
        await sink.close()


async def run():
    """Run the worker until interrupted."""
    from ripple.auth.jwt import create_service_token
    from ripple.db.engine import engine, init_models

    await init_models()

    sink = RemoteBridgeSink(
        settings.bridge_internal_url,
        token=create_service_token("fanout-worker"),
        ack_timeout=settings.bridge_ack_timeout,
    )

    # Handle shutdown signals: stop reading, let the current batch finish
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_event.set)

    logger.info(
        "worker.starting",
        group=settings.consumer_group,
        topics=list(FANOUT_TOPICS),
        partitions=settings.bus_partitions,
        bridge=settings.bridge_internal_url,
    )

    try:
        await _consume(sink, shutdown_event)
    finally:
        await sink.close()
        await engine.dispose()


def main():
    """CLI entry point."""
    configure_logging("DEBUG" if settings.debug else "INFO", json=settings.log_json)
    try:
        asyncio.run(run())
    except TRANSPORT_ERRORS as e:
        logger.error("worker.startup_failed", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
