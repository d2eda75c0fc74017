"""
Presence store: who is registered, in which group, and who is still alive.

The store owns the staleness policy (an explicit `last_seen` compared to a
window) and delegates persistence to a PresenceBackend:

- SqlitePresenceBackend  the shared aiosqlite row store (default)
- MemoryPresenceBackend  an in-process dict, for tests and single-process runs
- RedisPresenceBackend   a Redis hash, for agents spread over several hosts
"""
import asyncio
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import aiosqlite
from redis.asyncio import Redis

from agentrelay.config import STALE_SECONDS
from agentrelay.db import crud
from agentrelay.db.models import AgentRecord, DEFAULT_GROUP, normalize_group, parse_timestamp
from agentrelay.identity import generate_agent_id

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PresenceError(ValueError):
    """Raised for presence requests that cannot be honoured (e.g. empty name)."""


# ─────────────────────────────────────────────
# Storage backends
# ─────────────────────────────────────────────

class PresenceBackend(ABC):
    """Storage collaborator behind PresenceStore. Records are keyed by agent id."""

    @abstractmethod
    async def insert(self, agent: AgentRecord) -> None:
        ...

    @abstractmethod
    async def touch(self, agent_id: str, seen_at: datetime, status: Optional[str] = None) -> bool:
        """Refresh last_seen. Returns False if the id is unknown."""
        ...

    @abstractmethod
    async def delete(self, agent_id: str) -> bool:
        ...

    @abstractmethod
    async def get(self, agent_id: str) -> Optional[AgentRecord]:
        ...

    @abstractmethod
    async def all(self, group: Optional[str] = None) -> list[AgentRecord]:
        """Every stored record (optionally one group), malformed entries skipped."""
        ...

    async def group_counts(self) -> list[tuple[str, int]]:
        counts: dict[str, int] = {}
        for agent in await self.all():
            counts[agent.group] = counts.get(agent.group, 0) + 1
        return list(counts.items())

    async def close(self) -> None:
        pass


class MemoryPresenceBackend(PresenceBackend):
    """Dict-backed presence. Insertion order is preserved by the dict."""

    def __init__(self) -> None:
        self._agents: dict[str, AgentRecord] = {}
        self._lock = asyncio.Lock()

    async def insert(self, agent: AgentRecord) -> None:
        async with self._lock:
            self._agents[agent.id] = agent

    async def touch(self, agent_id: str, seen_at: datetime, status: Optional[str] = None) -> bool:
        async with self._lock:
            agent = self._agents.get(agent_id)
            if agent is None:
                return False
            agent.last_seen = seen_at
            if status is not None:
                agent.status = status
            return True

    async def delete(self, agent_id: str) -> bool:
        async with self._lock:
            return self._agents.pop(agent_id, None) is not None

    async def get(self, agent_id: str) -> Optional[AgentRecord]:
        return self._agents.get(agent_id)

    async def all(self, group: Optional[str] = None) -> list[AgentRecord]:
        return [a for a in self._agents.values() if group is None or a.group == group]


class SqlitePresenceBackend(PresenceBackend):
    def __init__(self, db: aiosqlite.Connection) -> None:
        self.db = db

    async def insert(self, agent: AgentRecord) -> None:
        await crud.agent_insert(self.db, agent)

    async def touch(self, agent_id: str, seen_at: datetime, status: Optional[str] = None) -> bool:
        return await crud.agent_touch(self.db, agent_id, seen_at, status)

    async def delete(self, agent_id: str) -> bool:
        return await crud.agent_delete(self.db, agent_id)

    async def get(self, agent_id: str) -> Optional[AgentRecord]:
        return await crud.agent_get(self.db, agent_id)

    async def all(self, group: Optional[str] = None) -> list[AgentRecord]:
        return await crud.agent_list(self.db, group)

    async def group_counts(self) -> list[tuple[str, int]]:
        return await crud.agent_group_counts(self.db)


class RedisPresenceBackend(PresenceBackend):
    """
    Redis hash of JSON-encoded records.

    Key pattern:
    - {prefix}:presence -> HASH agent_id -> JSON record
    """

    def __init__(self, redis: Redis, key_prefix: str = "agents", owns_client: bool = False) -> None:
        self._redis = redis
        self._key = f"{key_prefix}:presence"
        self._owns_client = owns_client

    def _serialize(self, agent: AgentRecord) -> str:
        return json.dumps({
            "id": agent.id,
            "name": agent.name,
            "description": agent.description,
            "group": agent.group,
            "route_target": agent.route_target,
            "status": agent.status,
            "registered_at": agent.registered_at.isoformat(),
            "last_seen": agent.last_seen.isoformat(),
        })

    def _deserialize(self, data: str) -> AgentRecord:
        d = json.loads(data)
        return AgentRecord(
            id=d["id"],
            name=d["name"],
            description=d.get("description", ""),
            group=d.get("group") or DEFAULT_GROUP,
            route_target=d.get("route_target") or "",
            status=d.get("status"),
            registered_at=parse_timestamp(d["registered_at"]),
            last_seen=parse_timestamp(d["last_seen"]),
        )

    async def insert(self, agent: AgentRecord) -> None:
        await self._redis.hset(self._key, agent.id, self._serialize(agent))

    async def touch(self, agent_id: str, seen_at: datetime, status: Optional[str] = None) -> bool:
        agent = await self.get(agent_id)
        if agent is None:
            return False
        agent.last_seen = seen_at
        if status is not None:
            agent.status = status
        await self._redis.hset(self._key, agent_id, self._serialize(agent))
        return True

    async def delete(self, agent_id: str) -> bool:
        return bool(await self._redis.hdel(self._key, agent_id))

    async def get(self, agent_id: str) -> Optional[AgentRecord]:
        raw = await self._redis.hget(self._key, agent_id)
        if raw is None:
            return None
        try:
            return self._deserialize(raw)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed presence entry {agent_id!r}: {e}")
            return None

    async def all(self, group: Optional[str] = None) -> list[AgentRecord]:
        entries = await self._redis.hgetall(self._key)
        agents = []
        for agent_id, raw in entries.items():
            try:
                agent = self._deserialize(raw)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed presence entry {agent_id!r}: {e}")
                continue
            if group is None or agent.group == group:
                agents.append(agent)
        # Hash field order is not insertion order; registration time is the closest stand-in.
        agents.sort(key=lambda a: a.registered_at)
        return agents

    async def close(self) -> None:
        if self._owns_client:
            await self._redis.aclose()


# ─────────────────────────────────────────────
# Presence store
# ─────────────────────────────────────────────

class PresenceStore:
    """Answers "who is active now" and "who belongs to group G"."""

    def __init__(
        self,
        backend: PresenceBackend,
        stale_after: timedelta = timedelta(seconds=STALE_SECONDS),
        default_route: Optional[Callable[[str], Optional[str]]] = None,
        clock: Callable[[], datetime] = _utcnow,
        pin_routes: bool = False,
    ) -> None:
        self.backend = backend
        self.stale_after = stale_after
        self._default_route = default_route
        self._clock = clock
        # Subject-addressed transports derive the route from the id; callers cannot override it.
        self.pin_routes = pin_routes

    def is_stale(self, agent: AgentRecord, now: Optional[datetime] = None) -> bool:
        now = now or self._clock()
        return now - agent.last_seen > self.stale_after

    async def register(
        self,
        name: str,
        description: str = "",
        group: Optional[str] = None,
        route_target: Optional[str] = None,
    ) -> AgentRecord:
        name = (name or "").strip()
        if not name:
            raise PresenceError("Agent name must not be empty")

        agent_id = generate_agent_id(name)
        if self.pin_routes and self._default_route is not None:
            if route_target:
                logger.info(f"Ignoring route {route_target!r} for {agent_id}: transport assigns its own")
            route_target = self._default_route(agent_id)
        elif not route_target and self._default_route is not None:
            route_target = self._default_route(agent_id)

        now = self._clock()
        agent = AgentRecord(
            id=agent_id,
            name=name,
            description=description or "",
            group=normalize_group(group) or DEFAULT_GROUP,
            route_target=route_target or "",
            registered_at=now,
            last_seen=now,
        )
        await self.backend.insert(agent)
        logger.info(f"Agent registered: {agent.id} group={agent.group} route={agent.route_target or '-'}")
        return agent

    async def heartbeat(self, agent_id: str, status: Optional[str] = None) -> bool:
        """Refresh presence. Unknown ids are a no-op (heartbeats may race external cleanup)."""
        ok = await self.backend.touch(agent_id, self._clock(), status)
        if not ok:
            logger.debug(f"Heartbeat for unknown agent {agent_id} ignored")
        return ok

    async def deregister(self, agent_id: str) -> bool:
        removed = await self.backend.delete(agent_id)
        if removed:
            logger.info(f"Agent deregistered: {agent_id}")
        return removed

    async def get(self, agent_id: str) -> Optional[AgentRecord]:
        agent = await self.backend.get(agent_id)
        if agent is None:
            return None
        return agent.with_staleness(self.is_stale(agent))

    async def groups(self) -> list[tuple[str, int]]:
        return await self.backend.group_counts()

    async def close(self) -> None:
        await self.backend.close()

    async def list(self, include_stale: bool = False, group: Optional[str] = None) -> list[AgentRecord]:
        now = self._clock()
        out = []
        for agent in await self.backend.all(normalize_group(group)):
            stale = self.is_stale(agent, now)
            if stale and not include_stale:
                continue
            out.append(agent.with_staleness(stale))
        return out
