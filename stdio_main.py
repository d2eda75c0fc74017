import asyncio
import logging
import os

from mcp.server.stdio import stdio_server

from agentrelay.db.database import close_db
from agentrelay.mcp_server import server
from agentrelay.relay import Relay, get_relay, close_relay


async def _deregister_session_agents(relay: Relay) -> None:
    """A stdio server lives exactly as long as its agent session."""
    for agent_id in sorted(relay.session_agents or ()):
        await relay.presence.deregister(agent_id)


async def main():
    # This process runs inside the agent's own pane, so that pane is the agent's default route.
    relay = await get_relay(session_pane=os.getenv("TMUX_PANE"), track_session=True)
    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options()
            )
    finally:
        await _deregister_session_agents(relay)
        await close_relay()
        await close_db()


def run() -> None:
    # Disable logging to stdout to avoid corrupting MCP JSON-RPC
    logging.getLogger().setLevel(logging.CRITICAL)
    asyncio.run(main())


if __name__ == "__main__":
    run()
