"""
CRUD operations for AgentRelay.
All functions are async and receive the aiosqlite connection from the caller.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

import aiosqlite

from agentrelay.db.models import AgentRecord, Envelope, ChannelSummary, parse_timestamp

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_dt(s: str) -> datetime:
    return parse_timestamp(s)


# ─────────────────────────────────────────────
# Agent presence rows
# ─────────────────────────────────────────────

async def agent_insert(db: aiosqlite.Connection, agent: AgentRecord) -> AgentRecord:
    await db.execute(
        "INSERT INTO agents (id, name, description, grp, route_target, status, registered_at, last_seen) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
        (agent.id, agent.name, agent.description, agent.group, agent.route_target or "",
         agent.status, agent.registered_at.isoformat(), agent.last_seen.isoformat()),
    )
    await db.commit()
    return agent


async def agent_touch(
    db: aiosqlite.Connection,
    agent_id: str,
    seen_at: datetime,
    status: Optional[str] = None,
) -> bool:
    """Refresh last_seen (and status when given). Returns False for unknown ids."""
    if status is None:
        async with db.execute(
            "UPDATE agents SET last_seen = ? WHERE id = ?", (seen_at.isoformat(), agent_id)
        ) as cur:
            updated = cur.rowcount
    else:
        async with db.execute(
            "UPDATE agents SET last_seen = ?, status = ? WHERE id = ?",
            (seen_at.isoformat(), status, agent_id),
        ) as cur:
            updated = cur.rowcount
    await db.commit()
    return updated > 0


async def agent_delete(db: aiosqlite.Connection, agent_id: str) -> bool:
    async with db.execute("DELETE FROM agents WHERE id = ?", (agent_id,)) as cur:
        deleted = cur.rowcount
    await db.commit()
    return deleted > 0


async def agent_get(db: aiosqlite.Connection, agent_id: str) -> Optional[AgentRecord]:
    async with db.execute("SELECT * FROM agents WHERE id = ?", (agent_id,)) as cur:
        row = await cur.fetchone()
    if row is None:
        return None
    return _row_to_agent(row)


async def agent_list(db: aiosqlite.Connection, group: Optional[str] = None) -> list[AgentRecord]:
    """All agent rows in insertion order. Rows that fail to parse are skipped."""
    if group is not None:
        async with db.execute("SELECT * FROM agents WHERE grp = ? ORDER BY rowid", (group,)) as cur:
            rows = await cur.fetchall()
    else:
        async with db.execute("SELECT * FROM agents ORDER BY rowid") as cur:
            rows = await cur.fetchall()

    agents = []
    for r in rows:
        try:
            agents.append(_row_to_agent(r))
        except (TypeError, ValueError) as e:
            logger.warning(f"Skipping malformed agent row {r['id']!r}: {e}")
    return agents


async def agent_group_counts(db: aiosqlite.Connection) -> list[tuple[str, int]]:
    async with db.execute(
        "SELECT grp, COUNT(*) AS cnt FROM agents GROUP BY grp ORDER BY MIN(rowid)"
    ) as cur:
        rows = await cur.fetchall()
    return [(r["grp"], r["cnt"]) for r in rows]


def _row_to_agent(row: aiosqlite.Row) -> AgentRecord:
    return AgentRecord(
        id=row["id"],
        name=row["name"],
        description=row["description"] or "",
        group=row["grp"] or "default",
        route_target=row["route_target"] or "",
        registered_at=_parse_dt(row["registered_at"]),
        last_seen=_parse_dt(row["last_seen"]),
        status=row["status"],
    )


# ─────────────────────────────────────────────
# Envelope ledger
# ─────────────────────────────────────────────

async def envelope_append(
    db: aiosqlite.Connection,
    from_agent: str,
    content: str,
    to_agent: Optional[str] = None,
    channel: Optional[str] = None,
    priority: str = "normal",
) -> Envelope:
    now = _now()
    async with db.execute(
        "INSERT INTO envelopes (from_agent, to_agent, channel, content, priority, created_at) "
        "VALUES (?, ?, ?, ?, ?, ?)",
        (from_agent, to_agent, channel, content, priority, now),
    ) as cur:
        seq = cur.lastrowid
    await db.commit()
    logger.debug(f"Envelope appended: seq={seq} from={from_agent} to={to_agent} channel={channel}")
    return Envelope(
        seq=seq, from_agent=from_agent, to_agent=to_agent, channel=channel,
        content=content, priority=priority, created_at=_parse_dt(now),
    )


async def envelope_channel_history(db: aiosqlite.Connection, channel: str, limit: int = 50) -> list[Envelope]:
    """Most recent `limit` envelopes of a channel, oldest first."""
    async with db.execute(
        "SELECT * FROM envelopes WHERE channel = ? ORDER BY seq DESC LIMIT ?",
        (channel, limit),
    ) as cur:
        rows = await cur.fetchall()
    return [_row_to_envelope(r) for r in reversed(rows)]


async def envelope_dm_history(
    db: aiosqlite.Connection, agent_a: str, agent_b: str, limit: int = 50
) -> list[Envelope]:
    """Most recent `limit` DMs exchanged between two agents in either direction, oldest first."""
    async with db.execute(
        "SELECT * FROM envelopes "
        "WHERE (from_agent = ? AND to_agent = ?) OR (from_agent = ? AND to_agent = ?) "
        "ORDER BY seq DESC LIMIT ?",
        (agent_a, agent_b, agent_b, agent_a, limit),
    ) as cur:
        rows = await cur.fetchall()
    return [_row_to_envelope(r) for r in reversed(rows)]


async def envelope_channel_counts(db: aiosqlite.Connection) -> list[ChannelSummary]:
    async with db.execute(
        "SELECT channel, COUNT(*) AS cnt FROM envelopes WHERE channel IS NOT NULL "
        "GROUP BY channel ORDER BY channel"
    ) as cur:
        rows = await cur.fetchall()
    return [ChannelSummary(channel=r["channel"], message_count=r["cnt"]) for r in rows]


async def envelopes_since(db: aiosqlite.Connection, after_seq: int = 0, limit: int = 100) -> list[Envelope]:
    """Fetch envelopes newer than `after_seq` for incremental pollers."""
    async with db.execute(
        "SELECT * FROM envelopes WHERE seq > ? ORDER BY seq ASC LIMIT ?",
        (after_seq, limit),
    ) as cur:
        rows = await cur.fetchall()
    return [_row_to_envelope(r) for r in rows]


def _row_to_envelope(row: aiosqlite.Row) -> Envelope:
    return Envelope(
        seq=row["seq"],
        from_agent=row["from_agent"],
        to_agent=row["to_agent"],
        channel=row["channel"],
        content=row["content"],
        priority=row["priority"],
        created_at=_parse_dt(row["created_at"]),
    )
