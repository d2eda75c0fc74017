"""
Shared fixtures for the AgentRelay unit tests.

Nothing here needs a running server, a terminal multiplexer or a Redis
instance: the DB is an in-memory aiosqlite connection, deliveries go to a
recording transport and pub/sub runs against an in-process double.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import aiosqlite
import pytest
import pytest_asyncio

from agentrelay.db.database import init_schema
from agentrelay.presence import PresenceStore, MemoryPresenceBackend, SqlitePresenceBackend
from agentrelay.transport.base import DeliveryTransport, DeliveryResult


# ─────────────────────────────────────────────
# Database
# ─────────────────────────────────────────────

@pytest_asyncio.fixture
async def db():
    conn = await aiosqlite.connect(":memory:")
    conn.row_factory = aiosqlite.Row
    await init_schema(conn)
    try:
        yield conn
    finally:
        await conn.close()


# ─────────────────────────────────────────────
# Clock
# ─────────────────────────────────────────────

class FakeClock:
    """Manually advanced UTC clock for staleness tests."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


# ─────────────────────────────────────────────
# Transports
# ─────────────────────────────────────────────

class RecordingTransport(DeliveryTransport):
    """
    Records every delivery. Targets listed in `fail_targets` return a failed
    result; targets in `raise_targets` make deliver() raise.
    """
    name = "recording"

    def __init__(self, fail_targets=(), raise_targets=(), route_prefix: Optional[str] = "pane-") -> None:
        self.calls: list[tuple[str, str, Optional[dict]]] = []
        self.fail_targets = set(fail_targets)
        self.raise_targets = set(raise_targets)
        self.route_prefix = route_prefix

    def route_for(self, agent_id: str) -> Optional[str]:
        if self.route_prefix is None:
            return None
        return f"{self.route_prefix}{agent_id}"

    async def deliver(self, target: str, text: str, envelope: Optional[dict] = None) -> DeliveryResult:
        self.calls.append((target, text, envelope))
        if target in self.raise_targets:
            raise RuntimeError("helper vanished")
        if target in self.fail_targets:
            return DeliveryResult.failure(target, "snd failed with code 1")
        return DeliveryResult.success(target)

    @property
    def targets(self) -> list[str]:
        return [c[0] for c in self.calls]


@pytest.fixture
def transport():
    return RecordingTransport()


# ─────────────────────────────────────────────
# Presence
# ─────────────────────────────────────────────

@pytest.fixture
def presence(clock, transport):
    return PresenceStore(MemoryPresenceBackend(), clock=clock, default_route=transport.route_for)


@pytest.fixture
def sqlite_presence(db, clock):
    return PresenceStore(SqlitePresenceBackend(db), clock=clock)


# ─────────────────────────────────────────────
# Redis double
# ─────────────────────────────────────────────

class FakePubSub:
    def __init__(self, redis: "FakeRedis") -> None:
        self._redis = redis
        self._queue: asyncio.Queue = asyncio.Queue()
        self.channels: set[str] = set()
        self.closed = False

    async def subscribe(self, *channels: str) -> None:
        for ch in channels:
            self.channels.add(ch)
            self._redis.subscribers.setdefault(ch, []).append(self)

    async def unsubscribe(self, *channels: str) -> None:
        for ch in channels or tuple(self.channels):
            self.channels.discard(ch)
            subs = self._redis.subscribers.get(ch, [])
            if self in subs:
                subs.remove(self)

    async def get_message(self, ignore_subscribe_messages: bool = False, timeout: float = 0.0):
        try:
            return await asyncio.wait_for(self._queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    async def aclose(self) -> None:
        self.closed = True


class FakeRedis:
    """The slice of redis.asyncio.Redis used by the bus transport and presence backend."""

    def __init__(self) -> None:
        self.subscribers: dict[str, list[FakePubSub]] = {}
        self.hashes: dict[str, dict[str, str]] = {}
        self.published: list[tuple[str, str]] = []
        self.pubsubs: list[FakePubSub] = []
        self.closed = False

    async def publish(self, channel: str, data: str) -> int:
        self.published.append((channel, data))
        subs = list(self.subscribers.get(channel, []))
        for sub in subs:
            sub._queue.put_nowait({"type": "message", "channel": channel, "data": data})
        return len(subs)

    def pubsub(self) -> FakePubSub:
        ps = FakePubSub(self)
        self.pubsubs.append(ps)
        return ps

    async def hset(self, key: str, field: str, value: str) -> int:
        h = self.hashes.setdefault(key, {})
        created = field not in h
        h[field] = value
        return int(created)

    async def hget(self, key: str, field: str) -> Optional[str]:
        return self.hashes.get(key, {}).get(field)

    async def hdel(self, key: str, *fields: str) -> int:
        h = self.hashes.get(key, {})
        removed = 0
        for f in fields:
            if h.pop(f, None) is not None:
                removed += 1
        return removed

    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(self.hashes.get(key, {}))

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def fake_redis():
    return FakeRedis()
