"""Test fixtures — isolated databases, an in-memory bus, recording sinks.

Learn: Testing pattern for the notification pipeline:

1. Each test gets its own SQLite database file (aiosqlite) with the schema
   created from the ORM models. Separate sessions get separate connections,
   like the per-recipient sessions of the fan-out worker in production.
2. Redis is replaced by FakeStreamRedis, which implements the handful of
   stream commands the publisher and consumer use (XADD, XGROUP CREATE,
   XREADGROUP, XAUTOCLAIM, XACK, PING).
3. The app is built with create_app() around a ConnectionManager that dials
   the fake, so publishes from API handlers land in inspectable streams.
"""

import os

# Must be set before ripple.config is imported anywhere
os.environ.setdefault("RIPPLE_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("RIPPLE_ENVIRONMENT", "development")

import asyncio
import json
import time
from typing import Any, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from redis.exceptions import ResponseError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from ripple.bus.partitioning import StreamLayout
from ripple.bus.publisher import ConnectionManager, EventPublisher
from ripple.db.engine import get_db
from ripple.db.models import Base
from ripple.main import create_app
from ripple.realtime.bridge import DeliveryBridge, RelayResult
from ripple.relevance import RelevanceRequest

# ═══════════════════════════════════════════════════════════
# Fakes
# ═══════════════════════════════════════════════════════════


def _id_key(entry_id: str) -> tuple[int, ...]:
    return tuple(int(part) for part in entry_id.split("-"))


class FakeStreamRedis:
    """In-memory stand-in for the Redis stream commands the bus uses."""

    def __init__(self):
        self.streams: dict[str, list[tuple[str, dict[str, str]]]] = {}
        self.groups: dict[tuple[str, str], dict[str, Any]] = {}
        self.acked: list[tuple[str, str]] = []
        self.xadd_error: Optional[BaseException] = None
        self.ping_error: Optional[BaseException] = None
        self.closed = False
        self._seq = 0

    async def ping(self) -> bool:
        if self.ping_error is not None:
            raise self.ping_error
        return True

    async def xadd(self, stream, fields, maxlen=None, approximate=True):
        if self.xadd_error is not None:
            raise self.xadd_error
        self._seq += 1
        entry_id = f"{self._seq}-0"
        self.streams.setdefault(stream, []).append((entry_id, dict(fields)))
        return entry_id

    async def xgroup_create(self, stream, group, id="$", mkstream=False):
        if (stream, group) in self.groups:
            raise ResponseError("BUSYGROUP Consumer Group name already exists")
        entries = self.streams.setdefault(stream, [])
        self.groups[(stream, group)] = {
            "delivered": 0 if id == "0" else len(entries),
            "pending": {},  # entry id -> owning consumer
            "since": {},  # entry id -> monotonic time of last delivery
        }

    async def xreadgroup(self, group, consumer, streams, count=None, block=None):
        result = []
        now = time.monotonic()
        for stream, last_id in streams.items():
            state = self.groups[(stream, group)]
            entries = self.streams.get(stream, [])
            if last_id == ">":
                batch = entries[state["delivered"]:]
                if count:
                    batch = batch[:count]
                state["delivered"] += len(batch)
            else:
                # This consumer's pending entries after last_id
                batch = [
                    (entry_id, fields)
                    for entry_id, fields in entries
                    if state["pending"].get(entry_id) == consumer
                    and _id_key(entry_id) > _id_key(last_id)
                ]
                if count:
                    batch = batch[:count]
            for entry_id, _ in batch:
                state["pending"][entry_id] = consumer
                state["since"][entry_id] = now
            if batch:
                result.append((stream, batch))
        if not result:
            # Stands in for BLOCK; also keeps consumer loops from spinning
            await asyncio.sleep(0.01)
        return result

    async def xautoclaim(self, name, groupname, consumername, min_idle_time, start_id="0-0", count=None):
        state = self.groups[(name, groupname)]
        now = time.monotonic()
        claimed = []
        next_id = "0-0"
        for entry_id, fields in self.streams.get(name, []):
            if entry_id not in state["pending"] or _id_key(entry_id) < _id_key(start_id):
                continue
            if (now - state["since"][entry_id]) * 1000 < min_idle_time:
                continue
            if count and len(claimed) == count:
                next_id = entry_id
                break
            state["pending"][entry_id] = consumername
            state["since"][entry_id] = now
            claimed.append((entry_id, fields))
        return [next_id, claimed, []]

    async def xack(self, stream, group, *entry_ids):
        state = self.groups[(stream, group)]
        acked = 0
        for entry_id in entry_ids:
            if state["pending"].pop(entry_id, None) is not None:
                state["since"].pop(entry_id, None)
                self.acked.append((stream, entry_id))
                acked += 1
        return acked

    async def aclose(self):
        self.closed = True

    # ─── Inspection helpers ──────────────────────────────

    def entries(self, prefix: str = "") -> list[dict[str, str]]:
        """All entries of streams whose name starts with prefix, in append order."""
        found = [
            (entry_id, fields)
            for stream, entries in self.streams.items()
            if stream.startswith(prefix)
            for entry_id, fields in entries
        ]
        found.sort(key=lambda item: int(item[0].split("-")[0]))
        return [fields for _, fields in found]

    def envelopes(self, prefix: str = "") -> list[dict[str, Any]]:
        return [json.loads(fields["value"]) for fields in self.entries(prefix)]

    def pending_count(self) -> int:
        return sum(len(state["pending"]) for state in self.groups.values())


class DialCounter:
    """Client factory that counts dials and can be told to fail or stall."""

    def __init__(self, client: Optional[FakeStreamRedis] = None, delay: float = 0.0):
        self.client = client or FakeStreamRedis()
        self.delay = delay
        self.failures = 0  # fail this many dials before succeeding
        self.calls = 0

    async def __call__(self) -> FakeStreamRedis:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("connection refused")
        return self.client


class FakeClientConnection:
    """A client-port connection that records every frame it is sent."""

    def __init__(self, conn_id: str, fail: bool = False):
        self.id = conn_id
        self.fail = fail
        self.sent: list[dict[str, Any]] = []

    async def send_json(self, data: dict[str, Any]) -> None:
        if self.fail:
            raise ConnectionResetError("client went away")
        self.sent.append(data)


class RecordingSink:
    """NotificationSink that records pushes instead of relaying them."""

    def __init__(self, success: bool = True):
        self.success = success
        self.pushes: list[tuple[str, dict[str, Any]]] = []
        self.closed = False

    async def push(self, room: str, notification: dict[str, Any]) -> RelayResult:
        self.pushes.append((room, notification))
        if not self.success:
            return RelayResult(success=False, room=room, error="bridge unavailable")
        return RelayResult(success=True, room=room, delivered=1)

    async def close(self) -> None:
        self.closed = True


class ScriptedGate:
    """Relevance gate with a per-recipient script.

    A float is returned as the score, an exception instance is raised,
    and "hang" sleeps far past any sensible timeout.
    """

    def __init__(self, script: dict[str, Any], default: Any = 1.0):
        self.script = script
        self.default = default
        self.requests: list[RelevanceRequest] = []

    async def score(self, request: RelevanceRequest) -> float:
        self.requests.append(request)
        outcome = self.script.get(request.recipient_id, self.default)
        if outcome == "hang":
            await asyncio.sleep(60)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


async def wait_until(predicate, timeout: float = 3.0) -> None:
    """Poll predicate until it holds or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


# ═══════════════════════════════════════════════════════════
# Fixtures
# ═══════════════════════════════════════════════════════════


@pytest_asyncio.fixture()
async def db_engine(tmp_path):
    """Fresh SQLite database per test, schema created from the models."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ripple.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture()
async def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture()
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_redis():
    return FakeStreamRedis()


@pytest.fixture
def dialer(fake_redis):
    return DialCounter(fake_redis)


@pytest.fixture
def layout():
    return StreamLayout(prefix="ripple", partitions=8)


@pytest_asyncio.fixture()
async def connection(dialer):
    """ConnectionManager over the fake; no supervisor unless a test asks."""
    conn = ConnectionManager(dialer, health_check_interval=0)
    yield conn
    await conn.close()


@pytest.fixture
def publisher(connection, layout):
    return EventPublisher(connection, layout)


@pytest.fixture
def bridge():
    return DeliveryBridge()


@pytest.fixture
def app(bridge, connection):
    return create_app(bridge=bridge, connection=connection, embedded_worker=False)


@pytest_asyncio.fixture()
async def client(app, db_session):
    """HTTP client with the app's get_db overridden for testing."""
    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def client_conn():
    """Factory for recording client-port connections."""
    def make(conn_id: str = "c1", fail: bool = False) -> FakeClientConnection:
        return FakeClientConnection(conn_id, fail=fail)
    return make
