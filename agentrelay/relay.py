"""
Runtime wiring: one presence store, one transport, one router and (optionally)
one history ledger per process, built from configuration.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import aiosqlite
import redis.asyncio as aioredis

from agentrelay import config
from agentrelay.db.database import get_db
from agentrelay.db.models import Envelope
from agentrelay.ledger import HistoryLedger
from agentrelay.presence import (
    PresenceStore,
    PresenceBackend,
    MemoryPresenceBackend,
    SqlitePresenceBackend,
    RedisPresenceBackend,
)
from agentrelay.resolver import resolve
from agentrelay.router import MessageRouter
from agentrelay.transport.base import DeliveryTransport
from agentrelay.transport.bus import BusTransport
from agentrelay.transport.direct import DirectTransport

logger = logging.getLogger(__name__)


class LedgerDisabledError(RuntimeError):
    """Raised by history tools when the ledger is switched off."""


@dataclass
class Relay:
    presence: PresenceStore
    transport: DeliveryTransport
    router: MessageRouter
    ledger: Optional[HistoryLedger] = None
    name_policy: str = "recent"
    # Agents registered by this process; only tracked for stdio sessions, which deregister them on exit
    session_agents: Optional[set[str]] = None

    def remember_agent(self, agent_id: str) -> None:
        if self.session_agents is not None:
            self.session_agents.add(agent_id)

    def forget_agent(self, agent_id: str) -> None:
        if self.session_agents is not None:
            self.session_agents.discard(agent_id)

    def require_ledger(self) -> HistoryLedger:
        if self.ledger is None:
            raise LedgerDisabledError(
                "History ledger is disabled (set AGENTRELAY_LEDGER=1 to enable it)"
            )
        return self.ledger

    async def dm_history(self, agent_id: str, with_reference: str, limit: int = 50) -> tuple[str, list[Envelope]]:
        """
        Resolve `with_reference` (id or short name, stale agents included) and
        return (resolved id, DMs between the two agents). An unresolvable
        reference is used verbatim, so history with deregistered agents stays
        reachable by full id.
        """
        ledger = self.require_ledger()
        candidates = await self.presence.list(include_stale=True)
        res = resolve(with_reference, candidates, self.name_policy)
        other_id = res.agent.id if res.found else with_reference
        return other_id, await ledger.dm_history(agent_id, other_id, limit)

    async def close(self) -> None:
        await self.transport.close()
        await self.presence.close()


def build_transport(name: Optional[str] = None, session_pane: Optional[str] = None) -> DeliveryTransport:
    name = name or config.TRANSPORT
    if name == "bus":
        return BusTransport(config.BUS_URL, config.SUBJECT_PREFIX)
    if name != "direct":
        logger.warning(f"Unknown transport '{name}', falling back to 'direct'")
    return DirectTransport(config.SND_PATH, config.DELIVERY_TIMEOUT, session_pane=session_pane)


async def build_presence_backend(
    name: str,
    db: aiosqlite.Connection,
    transport: DeliveryTransport,
) -> PresenceBackend:
    if name == "memory":
        return MemoryPresenceBackend()
    if name == "redis":
        if isinstance(transport, BusTransport):
            return RedisPresenceBackend(await transport.client(), key_prefix=config.SUBJECT_PREFIX)
        client = aioredis.from_url(config.BUS_URL, encoding="utf-8", decode_responses=True)
        return RedisPresenceBackend(client, key_prefix=config.SUBJECT_PREFIX, owns_client=True)
    if name != "sqlite":
        logger.warning(f"Unknown presence backend '{name}', falling back to 'sqlite'")
    return SqlitePresenceBackend(db)


async def build_relay(
    db: aiosqlite.Connection,
    transport: Optional[DeliveryTransport] = None,
    presence_backend: Optional[PresenceBackend] = None,
    ledger_enabled: bool = config.LEDGER_ENABLED,
    name_policy: str = config.NAME_POLICY,
    stale_seconds: int = config.STALE_SECONDS,
    session_pane: Optional[str] = None,
    track_session: bool = False,
) -> Relay:
    """
    `session_pane` and `track_session` belong to stdio mode, where the process
    serves exactly one agent session. A shared HTTP server passes neither, so
    agents that register without a pane have no direct route.
    """
    transport = transport or build_transport(session_pane=session_pane)
    if presence_backend is None:
        presence_backend = await build_presence_backend(config.PRESENCE_BACKEND, db, transport)

    presence = PresenceStore(
        presence_backend,
        stale_after=timedelta(seconds=stale_seconds),
        default_route=transport.route_for,
        pin_routes=transport.supports_subscribe,
    )
    ledger = HistoryLedger(db) if ledger_enabled else None
    router = MessageRouter(presence, transport, ledger=ledger, name_policy=name_policy)
    logger.info(
        f"Relay ready: transport={transport.name} presence={type(presence_backend).__name__} "
        f"ledger={'on' if ledger else 'off'} name_policy={name_policy}"
    )
    return Relay(
        presence=presence,
        transport=transport,
        router=router,
        ledger=ledger,
        name_policy=name_policy,
        session_agents=set() if track_session else None,
    )


# Module-level relay shared by the MCP and HTTP surfaces
_relay: Relay | None = None
_lock = asyncio.Lock()


async def get_relay(**options) -> Relay:
    """Process-wide relay. `options` go to build_relay on the first call only."""
    global _relay
    if _relay is None:
        async with _lock:
            if _relay is None:
                _relay = await build_relay(await get_db(), **options)
    return _relay


async def close_relay() -> None:
    global _relay
    if _relay is not None:
        await _relay.close()
        _relay = None
        logger.info("Relay closed.")
