"""
Bus transport: publish JSON envelopes to subject-named Redis pub/sub channels.

Subject schema (prefix defaults to "agents"):
- {prefix}.dm.{agent_id}  - direct traffic for one agent
- {prefix}.broadcast      - traffic for everyone

The bus has no side effect on the receiving terminal, so inbound traffic is
pulled with `collect` (parsed envelopes) or `subscribe` (rendered text), both
of which listen for a bounded time and return what accumulated.
"""
import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as aioredis
from redis.asyncio import Redis
from redis.exceptions import RedisError

from agentrelay.config import BUS_URL, SUBJECT_PREFIX
from agentrelay.transport.base import DeliveryTransport, DeliveryResult, NO_MESSAGES_RECEIVED

logger = logging.getLogger(__name__)


class BusTransport(DeliveryTransport):
    name = "bus"
    supports_subscribe = True

    def __init__(
        self,
        bus_url: str = BUS_URL,
        subject_prefix: str = SUBJECT_PREFIX,
        client: Redis | None = None,
    ) -> None:
        self._bus_url = bus_url
        self._prefix = subject_prefix
        self._redis: Redis | None = client
        self._owns_client = client is None
        self._lock = asyncio.Lock()

    async def _ensure_connected(self) -> Redis:
        if self._redis is None:
            async with self._lock:
                if self._redis is None:
                    self._redis = aioredis.from_url(
                        self._bus_url,
                        encoding="utf-8",
                        decode_responses=True,
                    )
                    logger.info(f"[bus] client created for {self._bus_url}")
        return self._redis

    async def client(self) -> Redis:
        return await self._ensure_connected()

    def dm_subject(self, agent_id: str) -> str:
        return f"{self._prefix}.dm.{agent_id}"

    def broadcast_subject(self) -> str:
        return f"{self._prefix}.broadcast"

    def route_for(self, agent_id: str) -> Optional[str]:
        return self.dm_subject(agent_id)

    async def deliver(self, target: str, text: str, envelope: Optional[dict] = None) -> DeliveryResult:
        payload = dict(envelope or {})
        payload.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        payload["text"] = text
        try:
            client = await self._ensure_connected()
            receivers = await client.publish(target, json.dumps(payload))
        except (RedisError, OSError) as e:
            logger.warning(f"[bus] publish to {target} failed: {e}")
            return DeliveryResult.failure(target, f"publish failed: {e}")
        return DeliveryResult.success(target, detail=f"{receivers} subscriber(s)")

    async def collect(
        self, subject: str, max_count: int, timeout: float, sink: Optional[list] = None,
    ) -> list[dict]:
        """
        Listen on `subject` for up to `timeout` seconds or `max_count` messages
        and return the parsed envelopes. Envelopes are appended to `sink` as they
        arrive, so a caller that cancels the listener still sees what came in.
        """
        received = sink if sink is not None else []
        client = await self._ensure_connected()
        pubsub = client.pubsub()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(timeout, 0.0)
        try:
            await pubsub.subscribe(subject)
            while len(received) < max_count:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=remaining)
                if message is None or message.get("type") != "message":
                    continue
                received.append(self.parse_inbound(message.get("data")))
        finally:
            try:
                await pubsub.unsubscribe(subject)
                await pubsub.aclose()
            except (RedisError, OSError) as e:
                logger.debug(f"[bus] teardown of {subject} subscription failed: {e}")
        return received

    async def subscribe(self, subject: str, max_count: int, timeout: float) -> str:
        """
        Rendered form of `collect`. A timeout is not an error: whatever arrived
        is returned, or the "No messages received" sentinel if nothing did.
        """
        received = await self.collect(subject, max_count, timeout)
        if not received:
            return NO_MESSAGES_RECEIVED
        return "\n".join(self.render_inbound(p) for p in received)

    @staticmethod
    def parse_inbound(data) -> dict:
        """Envelope dict for one pub/sub payload; non-JSON payloads become {"text": ...}."""
        if isinstance(data, bytes):
            data = data.decode("utf-8", errors="replace")
        try:
            payload = json.loads(data)
        except (TypeError, ValueError):
            return {"text": str(data)}
        if not isinstance(payload, dict):
            return {"text": str(payload)}
        return payload

    async def close(self) -> None:
        if self._redis is not None and self._owns_client:
            await self._redis.aclose()
        self._redis = None
