"""
MCP Server for AgentRelay.

Registers the relay's tools and resources. Served over stdio (one server per
agent session, see stdio_main.py) or mounted onto the FastAPI app via SSE.
Tools that the configured transport or ledger cannot serve are not listed.
"""
import json
import logging
from typing import Any

import mcp.types as types
from mcp.server import Server

from agentrelay.config import get_config_dict
from agentrelay.relay import Relay, get_relay
from agentrelay.tools.dispatch import dispatch_tool

logger = logging.getLogger(__name__)

# Create the MCP server instance
server = Server("AgentRelay")

_AGENT_ID = {"type": "string", "description": "Your agent_id as returned by agent_register."}


# ═════════════════════════════════════════════
# TOOLS
# ═════════════════════════════════════════════

_PRESENCE_TOOLS = [
    types.Tool(
        name="agent_register",
        description=(
            "Register this session on the relay. Returns a unique agent_id "
            "(<name>-<8 hex>) to pass to every other tool."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "name":        {"type": "string", "description": "Short human-readable name, e.g. 'backend'."},
                "description": {"type": "string", "description": "What this agent is working on."},
                "group":       {"type": "string", "description": "Optional group to join (default: 'default')."},
                "pane":        {"type": "string", "description": "Optional terminal pane override (session:window.pane)."},
            },
            "required": ["name", "description"],
        },
    ),
    types.Tool(
        name="agent_deregister",
        description="Remove this agent from the relay. Safe to call twice.",
        inputSchema={
            "type": "object",
            "properties": {"agent_id": _AGENT_ID},
            "required": ["agent_id"],
        },
    ),
    types.Tool(
        name="agent_heartbeat",
        description="Refresh presence so other agents keep seeing you as active.",
        inputSchema={
            "type": "object",
            "properties": {
                "agent_id": _AGENT_ID,
                "status":   {"type": "string", "description": "Optional short status line."},
            },
            "required": ["agent_id"],
        },
    ),
    types.Tool(
        name="agent_discover",
        description="List agents on the relay, optionally restricted to one group.",
        inputSchema={
            "type": "object",
            "properties": {
                "include_stale": {"type": "boolean", "default": False,
                                  "description": "Also list agents that have not been seen recently."},
                "group":         {"type": "string", "description": "Only list members of this group."},
            },
        },
    ),
    types.Tool(
        name="agent_groups",
        description="List groups with their member counts.",
        inputSchema={"type": "object", "properties": {}},
    ),
]

_MESSAGING_TOOLS = [
    types.Tool(
        name="agent_broadcast",
        description="Send a message to every other active agent (or every member of a group).",
        inputSchema={
            "type": "object",
            "properties": {
                "agent_id": _AGENT_ID,
                "message":  {"type": "string"},
                "priority": {"type": "string", "enum": ["low", "normal", "high"], "default": "normal"},
                "group":    {"type": "string", "description": "Restrict the broadcast to this group."},
            },
            "required": ["agent_id", "message"],
        },
    ),
    types.Tool(
        name="agent_dm",
        description="Send a direct message to one agent, by agent_id or by short name.",
        inputSchema={
            "type": "object",
            "properties": {
                "agent_id": _AGENT_ID,
                "to":       {"type": "string", "description": "Recipient agent_id or short name."},
                "message":  {"type": "string"},
            },
            "required": ["agent_id", "to", "message"],
        },
    ),
]

_CHECK_MESSAGES_TOOL = types.Tool(
    name="agent_check_messages",
    description=(
        "Listen for direct messages and broadcasts for a bounded time and return "
        "what arrived. Only available on the bus transport."
    ),
    inputSchema={
        "type": "object",
        "properties": {
            "agent_id":  _AGENT_ID,
            "timeout":   {"type": "number", "description": "Seconds to listen (shared by both subscriptions)."},
            "max_count": {"type": "integer", "description": "Stop after this many messages per subscription."},
        },
        "required": ["agent_id"],
    },
)

_LEDGER_TOOLS = [
    types.Tool(
        name="channel_send",
        description="Post a message to a named channel (e.g. 'general').",
        inputSchema={
            "type": "object",
            "properties": {
                "agent_id": _AGENT_ID,
                "channel":  {"type": "string"},
                "message":  {"type": "string"},
            },
            "required": ["agent_id", "channel", "message"],
        },
    ),
    types.Tool(
        name="channel_history",
        description="Read the most recent messages of a channel, oldest first.",
        inputSchema={
            "type": "object",
            "properties": {
                "channel": {"type": "string"},
                "limit":   {"type": "integer", "default": 50},
            },
            "required": ["channel"],
        },
    ),
    types.Tool(
        name="channel_list",
        description="List channels that have messages, with message counts.",
        inputSchema={"type": "object", "properties": {}},
    ),
    types.Tool(
        name="dm_history",
        description="Read the direct messages exchanged with another agent, oldest first.",
        inputSchema={
            "type": "object",
            "properties": {
                "agent_id":   _AGENT_ID,
                "with_agent": {"type": "string", "description": "Other agent's id or short name."},
                "limit":      {"type": "integer", "default": 50},
            },
            "required": ["agent_id", "with_agent"],
        },
    ),
    types.Tool(
        name="messages_since",
        description="Poll all recorded traffic after a cursor. Pass back the returned cursor next time.",
        inputSchema={
            "type": "object",
            "properties": {
                "cursor": {"type": "integer", "default": 0},
                "limit":  {"type": "integer", "default": 100},
            },
        },
    ),
]

_CONFIG_TOOL = types.Tool(
    name="relay_get_config",
    description="Report relay version, transport, ledger state and name resolution policy.",
    inputSchema={"type": "object", "properties": {}},
)


def tools_for(relay: Relay) -> list[types.Tool]:
    tools = [_CONFIG_TOOL, *_PRESENCE_TOOLS, *_MESSAGING_TOOLS]
    if relay.transport.supports_subscribe:
        tools.append(_CHECK_MESSAGES_TOOL)
    if relay.ledger is not None:
        tools.extend(_LEDGER_TOOLS)
    return tools


@server.list_tools()
async def list_tools() -> list[types.Tool]:
    return tools_for(await get_relay())


@server.call_tool()
async def call_tool(name: str, arguments: dict[str, Any]) -> list[types.Content]:
    relay = await get_relay()
    return await dispatch_tool(relay, name, arguments)


# ═════════════════════════════════════════════
# RESOURCES
# ═════════════════════════════════════════════

@server.list_resources()
async def list_resources() -> list[types.Resource]:
    relay = await get_relay()
    resources = [
        types.Resource(
            uri="relay://config",
            name="Relay Configuration",
            description="Effective relay settings (transport, staleness window, ledger).",
            mimeType="application/json",
        ),
        types.Resource(
            uri="relay://agents/active",
            name="Active Agents",
            description="Agents seen within the staleness window.",
            mimeType="application/json",
        ),
        types.Resource(
            uri="relay://groups",
            name="Groups",
            description="Groups and their member counts.",
            mimeType="application/json",
        ),
    ]
    if relay.ledger is not None:
        resources.append(types.Resource(
            uri="relay://channels",
            name="Channels",
            description="Channels with recorded messages.",
            mimeType="application/json",
        ))
    return resources


async def render_resource(relay: Relay, uri_str: str) -> str:
    if uri_str == "relay://config":
        return json.dumps(get_config_dict(), indent=2)

    if uri_str == "relay://agents/active":
        agents = await relay.presence.list(include_stale=False)
        return json.dumps([a.summary() for a in agents], indent=2)

    if uri_str == "relay://groups":
        return json.dumps([{"group": g, "count": n} for g, n in await relay.presence.groups()], indent=2)

    if uri_str == "relay://channels" and relay.ledger is not None:
        summaries = await relay.ledger.channel_list()
        return json.dumps(
            [{"channel": s.channel, "message_count": s.message_count} for s in summaries], indent=2,
        )

    return f"Unknown resource URI: {uri_str}"


@server.read_resource()
async def read_resource(uri: types.AnyUrl) -> str:
    return await render_resource(await get_relay(), str(uri))
