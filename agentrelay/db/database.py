"""
SQLite database connection management and schema initialization.
Uses aiosqlite for fully async, non-blocking access.
"""
import aiosqlite
import asyncio
import logging
from pathlib import Path

from agentrelay.config import DB_PATH

logger = logging.getLogger(__name__)

# Module-level connection (single shared connection with WAL mode)
_db: aiosqlite.Connection | None = None
_lock = asyncio.Lock()


async def get_db() -> aiosqlite.Connection:
    """Return the shared async database connection, initializing it if needed."""
    global _db
    if _db is None:
        async with _lock:
            if _db is None:
                if DB_PATH != ":memory:":
                    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
                _db = await aiosqlite.connect(DB_PATH)
                _db.row_factory = aiosqlite.Row
                # WAL mode: allows concurrent reads while writing
                await _db.execute("PRAGMA journal_mode=WAL")
                await init_schema(_db)
                logger.info(f"Database initialized at {DB_PATH}")
    return _db


async def close_db() -> None:
    """Gracefully close the database connection."""
    global _db
    if _db is not None:
        await _db.close()
        _db = None
        logger.info("Database connection closed.")


async def init_schema(db: aiosqlite.Connection) -> None:
    """Create all tables if they do not already exist (idempotent)."""
    await db.executescript("""
        -- ----------------------------------------------------------------
        -- Agent presence: one row per registered agent, keyed by its
        -- generated id. Liveness is judged from last_seen.
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS agents (
            id              TEXT PRIMARY KEY,
            name            TEXT NOT NULL,
            description     TEXT NOT NULL DEFAULT '',
            grp             TEXT NOT NULL DEFAULT 'default',
            route_target    TEXT NOT NULL DEFAULT '',
            status          TEXT,
            registered_at   TEXT NOT NULL,
            last_seen       TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_agents_name ON agents(name);

        -- ----------------------------------------------------------------
        -- Envelopes: append-only history ledger.
        -- `seq` is the monotonic cursor handed out to pollers.
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS envelopes (
            seq         INTEGER PRIMARY KEY AUTOINCREMENT,
            from_agent  TEXT NOT NULL,
            to_agent    TEXT,
            channel     TEXT,
            content     TEXT NOT NULL,
            priority    TEXT NOT NULL DEFAULT 'normal',
            created_at  TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_envelopes_channel
            ON envelopes(channel, seq);
        CREATE INDEX IF NOT EXISTS idx_envelopes_pair
            ON envelopes(from_agent, to_agent, seq);
    """)
    await db.commit()

    logger.info("Schema initialized.")
