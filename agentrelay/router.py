"""
Message router: broadcast and direct-message semantics on top of the presence
store, the directory resolver and one delivery transport.

Outcomes are returned as values. An unknown recipient, a target without a
route and a failed delivery are all normal results, not exceptions.
"""
import asyncio
import logging
from typing import Optional

import aiosqlite

from agentrelay.config import CHECK_TIMEOUT, CHECK_MAX_COUNT, NAME_POLICY
from agentrelay.db.models import (
    AgentRecord,
    BroadcastResult,
    DirectMessageResult,
    TargetOutcome,
    PRIORITIES,
)
from agentrelay.identity import short_name
from agentrelay.ledger import HistoryLedger
from agentrelay.presence import PresenceStore
from agentrelay.resolver import resolve, NOT_FOUND, AMBIGUOUS
from agentrelay.transport.base import (
    DeliveryTransport,
    DeliveryResult,
    TransportCapabilityError,
)

logger = logging.getLogger(__name__)

NO_MESSAGES = "No messages"

# Extra time granted on top of the caller's budget for connecting and teardown
_SUBSCRIBE_GRACE = 1.0


class MessageRouter:
    def __init__(
        self,
        presence: PresenceStore,
        transport: DeliveryTransport,
        ledger: Optional[HistoryLedger] = None,
        name_policy: str = NAME_POLICY,
    ) -> None:
        self.presence = presence
        self.transport = transport
        self.ledger = ledger
        self.name_policy = name_policy

    async def _deliver(self, agent: AgentRecord, text: str, envelope: dict) -> DeliveryResult:
        """One attempt; anything the transport raises becomes a failed result."""
        try:
            return await self.transport.deliver(agent.route_target, text, envelope=envelope)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"[router] transport error delivering to {agent.id}")
            return DeliveryResult.failure(agent.route_target, f"{type(e).__name__}: {e}")

    async def _record(self, **kwargs) -> None:
        if self.ledger is None:
            return
        try:
            await self.ledger.record(**kwargs)
        except aiosqlite.Error as e:
            # Delivery already happened; a ledger hiccup must not turn it into a failure.
            logger.warning(f"[router] could not record envelope: {e}")

    # ─────────────────────────────────────────────
    # Broadcast
    # ─────────────────────────────────────────────

    async def broadcast(
        self,
        sender_id: str,
        message: str,
        priority: str = "normal",
        group: Optional[str] = None,
    ) -> BroadcastResult:
        if priority not in PRIORITIES:
            raise ValueError(f"Invalid priority '{priority}'. Must be one of {PRIORITIES}")

        agents = await self.presence.list(include_stale=False, group=group)
        targets = [a for a in agents if a.id != sender_id and a.route_target]
        if not targets:
            logger.info(f"[broadcast] {sender_id}: no eligible targets (group={group})")
            return BroadcastResult(attempted=0)

        text = f"[{short_name(sender_id)}] {message}"
        envelope = {
            "from": sender_id,
            "to": None,
            "kind": "broadcast",
            "group": group,
            "content": message,
            "priority": priority,
        }
        # Every attempt settles before we return; gather keeps target order.
        results = await asyncio.gather(*(self._deliver(a, text, envelope) for a in targets))
        outcomes = [
            TargetOutcome(agent_id=a.id, name=a.name, ok=r.ok, reason=r.reason)
            for a, r in zip(targets, results)
        ]
        result = BroadcastResult(attempted=len(targets), outcomes=outcomes)
        logger.info(f"[broadcast] {sender_id}: {result.delivered}/{result.attempted} delivered")

        await self._record(from_agent=sender_id, content=message, priority=priority)
        return result

    # ─────────────────────────────────────────────
    # Direct message
    # ─────────────────────────────────────────────

    async def direct_message(self, sender_id: str, to_reference: str, message: str) -> DirectMessageResult:
        candidates = await self.presence.list(include_stale=False)
        res = resolve(to_reference, candidates, self.name_policy)

        if res.status == NOT_FOUND:
            return DirectMessageResult("not_found", to_reference)
        if res.status == AMBIGUOUS:
            return DirectMessageResult(
                "ambiguous", to_reference, detail=", ".join(a.id for a in res.matches)
            )

        target = res.agent
        if not target.route_target:
            return DirectMessageResult("no_route", to_reference, agent=target)

        text = f"[DM from {short_name(sender_id)}] {message}"
        envelope = {
            "from": sender_id,
            "to": target.id,
            "kind": "dm",
            "content": message,
            "priority": "normal",
        }
        delivery = await self._deliver(target, text, envelope)
        if not delivery.ok:
            return DirectMessageResult("failed", to_reference, agent=target, detail=delivery.reason)

        await self._record(from_agent=sender_id, content=message, to_agent=target.id)
        logger.info(f"[dm] {sender_id} -> {target.id}")
        return DirectMessageResult("sent", to_reference, agent=target)

    # ─────────────────────────────────────────────
    # Pull-based inbox (bus transport)
    # ─────────────────────────────────────────────

    async def check_messages(
        self,
        agent_id: str,
        timeout: float = CHECK_TIMEOUT,
        max_count: int = CHECK_MAX_COUNT,
    ) -> str:
        """
        Listen on the agent's DM subject and the broadcast subject at the same
        time, under one shared timeout, and merge what arrived. Broadcasts fanned
        out to the DM subject are filed by their envelope kind, not by subject.
        """
        if not self.transport.supports_subscribe:
            raise TransportCapabilityError(
                f"check_messages requires the bus transport (configured: {self.transport.name})"
            )

        # Polling for mail counts as a sign of life.
        await self.presence.heartbeat(agent_id)

        on_dm: list[dict] = []
        on_broadcast: list[dict] = []
        listeners = [
            asyncio.create_task(
                self.transport.collect(self.transport.dm_subject(agent_id), max_count, timeout, sink=on_dm)
            ),
            asyncio.create_task(
                self.transport.collect(self.transport.broadcast_subject(), max_count, timeout, sink=on_broadcast)
            ),
        ]
        try:
            done, pending = await asyncio.wait(listeners, timeout=timeout + _SUBSCRIBE_GRACE)
        finally:
            for task in listeners:
                if not task.done():
                    task.cancel()
        if pending:
            logger.warning(f"[check_messages] {agent_id}: subscriptions overran {timeout}s budget")
            await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()

        direct, broadcasts = [], []
        for payload in on_dm:
            (broadcasts if payload.get("kind") == "broadcast" else direct).append(payload)
        for payload in on_broadcast:
            (direct if payload.get("kind") == "dm" else broadcasts).append(payload)

        sections = []
        if direct:
            sections.append("Direct messages:\n" + "\n".join(self.transport.render_inbound(p) for p in direct))
        if broadcasts:
            sections.append("Broadcasts:\n" + "\n".join(self.transport.render_inbound(p) for p in broadcasts))
        return "\n\n".join(sections) if sections else NO_MESSAGES
