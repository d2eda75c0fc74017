"""
AgentRelay HTTP entry point.

Starts a FastAPI HTTP server that:
  1. Mounts the MCP Server (SSE + JSON-RPC) at /mcp
  2. Serves a read-only REST API for dashboards at /api
  3. Streams newly recorded ledger envelopes over SSE at /events
"""
import asyncio
import json
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import StreamingResponse, JSONResponse
from mcp.server.sse import SseServerTransport

from agentrelay.config import HOST, PORT, RELAY_VERSION
from agentrelay.db.database import get_db, close_db
from agentrelay.relay import get_relay, close_relay, LedgerDisabledError
from agentrelay.mcp_server import server as mcp_server

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("agentrelay")

# Poll interval for the /events stream (seconds)
EVENTS_POLL_INTERVAL = 0.5


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: open the DB and wire the relay
    await get_db()
    relay = await get_relay()
    logger.info(f"AgentRelay running at http://{HOST}:{PORT} (transport={relay.transport.name})")
    yield
    # Shutdown: relay first, it may still hold the DB
    await close_relay()
    await close_db()


app = FastAPI(
    title="AgentRelay",
    description="Presence, broadcast and direct messaging between coding-agent sessions.",
    version=RELAY_VERSION,
    lifespan=lifespan,
)

# ─────────────────────────────────────────────
# MCP SSE Transport (mounted at /mcp)
# ─────────────────────────────────────────────

sse_transport = SseServerTransport("/mcp/messages")


class _SseCompletedResponse:
    """
    Returned from mcp_sse_endpoint after connect_sse() exits. The SSE
    transport has already written the whole HTTP response, so this must not
    send any further ASGI messages.
    """
    async def __call__(self, scope, receive, send):
        pass


@app.get("/mcp/sse")
async def mcp_sse_endpoint(request: Request):
    """MCP SSE endpoint consumed by MCP clients."""
    try:
        async with sse_transport.connect_sse(
            request.scope, request.receive, request._send
        ) as streams:
            await mcp_server.run(
                streams[0], streams[1],
                mcp_server.create_initialization_options(),
            )
    except Exception as exc:
        # Normal client disconnects end up here as well.
        logger.debug("MCP SSE session ended: %s: %s", type(exc).__name__, exc)
    return _SseCompletedResponse()


# Raw ASGI mount: the transport answers 202 Accepted itself.
app.mount("/mcp/messages/", app=sse_transport.handle_post_message)


def _ledger_disabled(e: LedgerDisabledError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"error": str(e)})


# ─────────────────────────────────────────────
# Ledger SSE stream for dashboards
# ─────────────────────────────────────────────

@app.get("/events")
async def ledger_sse_stream(request: Request, after: int = 0):
    """
    SSE stream of ledger envelopes. Polls `messages_since` and emits each new
    envelope with its seq as the SSE id, so clients can resume with ?after=.
    """
    relay = await get_relay()
    try:
        ledger = relay.require_ledger()
    except LedgerDisabledError as e:
        return _ledger_disabled(e)

    async def event_generator():
        cursor = after
        while True:
            if await request.is_disconnected():
                break
            for env in await ledger.messages_since(cursor):
                cursor = env.seq
                kind = "channel" if env.channel else ("dm" if env.to_agent else "broadcast")
                yield f"id: {env.seq}\nevent: {kind}\ndata: {json.dumps(env.to_dict())}\n\n"
            await asyncio.sleep(EVENTS_POLL_INTERVAL)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


# ─────────────────────────────────────────────
# REST API for dashboards
# ─────────────────────────────────────────────

@app.get("/api/agents")
async def api_agents(include_stale: bool = False, group: str | None = None):
    relay = await get_relay()
    agents = await relay.presence.list(include_stale=include_stale, group=group)
    return [a.summary() for a in agents]


@app.get("/api/groups")
async def api_groups():
    relay = await get_relay()
    return [{"group": g, "count": n} for g, n in await relay.presence.groups()]


@app.get("/api/channels")
async def api_channels():
    relay = await get_relay()
    try:
        summaries = await relay.require_ledger().channel_list()
    except LedgerDisabledError as e:
        return _ledger_disabled(e)
    return [{"channel": s.channel, "message_count": s.message_count} for s in summaries]


@app.get("/api/channels/{channel}/messages")
async def api_channel_messages(channel: str, limit: int = 50):
    relay = await get_relay()
    try:
        envelopes = await relay.require_ledger().channel_history(channel, limit)
    except LedgerDisabledError as e:
        return _ledger_disabled(e)
    return [e.to_dict() for e in envelopes]


@app.get("/api/messages")
async def api_messages_since(after: int = 0, limit: int = 100):
    relay = await get_relay()
    try:
        envelopes = await relay.require_ledger().messages_since(after, limit)
    except LedgerDisabledError as e:
        return _ledger_disabled(e)
    return {
        "cursor": envelopes[-1].seq if envelopes else after,
        "messages": [e.to_dict() for e in envelopes],
    }


# ─────────────────────────────────────────────
# Health check
# ─────────────────────────────────────────────

@app.get("/health")
async def health():
    relay = await get_relay()
    return {
        "status": "ok",
        "service": "AgentRelay",
        "version": RELAY_VERSION,
        "transport": relay.transport.name,
        "ledger": relay.ledger is not None,
    }


# ─────────────────────────────────────────────
# Entry point
# ─────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run("agentrelay.main:app", host=HOST, port=PORT, reload=True)
