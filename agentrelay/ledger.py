"""
History ledger: append-only log of channel and DM traffic.

Reads come back oldest first. `seq` is a strictly increasing cursor, so a
dashboard can poll `messages_since(last_seen_seq)` for new traffic.
"""
import logging
from typing import Optional

import aiosqlite

from agentrelay.db import crud
from agentrelay.db.models import Envelope, ChannelSummary, PRIORITIES

logger = logging.getLogger(__name__)


class HistoryLedger:
    def __init__(self, db: aiosqlite.Connection) -> None:
        self.db = db

    async def record(
        self,
        from_agent: str,
        content: str,
        to_agent: Optional[str] = None,
        channel: Optional[str] = None,
        priority: str = "normal",
    ) -> Envelope:
        if priority not in PRIORITIES:
            raise ValueError(f"Invalid priority '{priority}'. Must be one of {PRIORITIES}")
        return await crud.envelope_append(
            self.db, from_agent, content, to_agent=to_agent, channel=channel, priority=priority,
        )

    async def channel_send(self, agent_id: str, channel: str, message: str) -> Envelope:
        channel = (channel or "").strip().lstrip("#")
        if not channel:
            raise ValueError("Channel name must not be empty")
        env = await self.record(agent_id, message, channel=channel)
        logger.info(f"Channel post: #{channel} seq={env.seq} from={agent_id}")
        return env

    async def channel_history(self, channel: str, limit: int = 50) -> list[Envelope]:
        return await crud.envelope_channel_history(self.db, channel.lstrip("#"), limit)

    async def dm_history(self, agent_a: str, agent_b: str, limit: int = 50) -> list[Envelope]:
        return await crud.envelope_dm_history(self.db, agent_a, agent_b, limit)

    async def channel_list(self) -> list[ChannelSummary]:
        return await crud.envelope_channel_counts(self.db)

    async def messages_since(self, cursor: int = 0, limit: int = 100) -> list[Envelope]:
        return await crud.envelopes_since(self.db, after_seq=cursor, limit=limit)
