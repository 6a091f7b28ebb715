"""FastAPI application factories.

Learn: Two apps, one process, one DeliveryBridge:

- create_app()          public port (RIPPLE_PORT): REST API + /ws/client
- create_internal_app() internal port (RIPPLE_INTERNAL_PORT): /ws/internal

Both are handed the same bridge, which is what lets a producer on the
internal port reach a browser on the public port. `ripple serve` runs
the two uvicorn servers side by side.

Lifespan manages startup/shutdown of the database, the publisher's
broker connection and, optionally, an embedded fan-out worker.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ripple import __version__
from ripple.api import api_router
from ripple.bus.partitioning import StreamLayout
from ripple.bus.publisher import ConnectionManager, EventPublisher, redis_client_factory
from ripple.config import settings
from ripple.realtime.bridge import DeliveryBridge

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle.

    Learn: Anything before `yield` runs at startup, after `yield` runs at
    shutdown. The broker is optional at startup: the publisher re-dials
    lazily on the next publish, so the API comes up even when Redis is down.
    """
    logger.info(
        "ripple.starting",
        version=__version__,
        environment=settings.environment,
        port=settings.port,
        internal_port=settings.internal_port,
    )

    from ripple.db.engine import engine, init_models
    await init_models()

    connection: ConnectionManager = app.state.connection
    if await connection.connect():
        logger.info("ripple.bus_connected", url=settings.redis_url)
    else:
        logger.warning("ripple.bus_unavailable", url=settings.redis_url)

    worker_task: Optional[asyncio.Task] = None
    shutdown_event = asyncio.Event()
    if app.state.embedded_worker:
        from ripple.worker.main import run_embedded
        worker_task = asyncio.create_task(run_embedded(app.state.bridge, shutdown_event))
        logger.info("ripple.embedded_worker_started")

    yield

    logger.info("ripple.shutdown")

    # Drain the consumer first: it finishes its in-flight batch
    if worker_task is not None:
        shutdown_event.set()
        try:
            await asyncio.wait_for(worker_task, timeout=settings.consumer_block_ms / 1000 + 10)
        except asyncio.TimeoutError:
            worker_task.cancel()
            logger.warning("ripple.embedded_worker_cancelled")
        except Exception:
            logger.exception("ripple.embedded_worker_failed")

    await connection.close()
    await engine.dispose()


def create_app(
    bridge: Optional[DeliveryBridge] = None,
    connection: Optional[ConnectionManager] = None,
    embedded_worker: Optional[bool] = None,
) -> FastAPI:
    """Build and return the public FastAPI application."""
    app = FastAPI(
        title="Ripple",
        description="Notification fan-out and real-time delivery",
        version=__version__,
        lifespan=lifespan,
    )

    if connection is None:
        connection = ConnectionManager(
            redis_client_factory(settings),
            health_check_interval=settings.bus_health_check_interval,
        )
    app.state.bridge = bridge or DeliveryBridge()
    app.state.connection = connection
    app.state.publisher = EventPublisher(
        connection,
        StreamLayout.from_settings(settings),
        maxlen=settings.bus_stream_maxlen,
    )
    app.state.embedded_worker = (
        settings.embedded_worker if embedded_worker is None else embedded_worker
    )

    # ── Middleware stack ──────────────────────────────────────
    # Note: Starlette middleware executes in reverse order of registration.
    # Request flow: RequestId → Security → CORS → handler

    from ripple.middleware.request_id import RequestIdMiddleware
    from ripple.middleware.security import SecurityHeadersMiddleware

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router)

    from ripple.realtime.websocket import router as client_ws_router
    app.include_router(client_ws_router)

    return app


def create_internal_app(bridge: DeliveryBridge) -> FastAPI:
    """Build the internal relay app. Bind it to a private interface only."""
    app = FastAPI(
        title="Ripple internal relay",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.bridge = bridge

    from ripple.realtime.internal import router as internal_ws_router
    app.include_router(internal_ws_router)

    return app


# Default app instances (uvicorn: ripple.main:app / ripple.main:internal_app)
app = create_app()
internal_app = create_internal_app(app.state.bridge)
