"""
Tool dispatch layer for AgentRelay.
Each handler validates its arguments, calls into the relay and returns one JSON
text block. Errors are reported in-band as {"error": ...} so a bad call never
tears down the MCP session.
"""
import json
import logging
from datetime import datetime
from typing import Any

import mcp.types as types
from pydantic import ValidationError

from agentrelay.config import RELAY_VERSION
from agentrelay.db.models import Envelope
from agentrelay.identity import short_name
from agentrelay.presence import PresenceError
from agentrelay.relay import Relay, LedgerDisabledError
from agentrelay.transport.base import TransportCapabilityError
from agentrelay.tools.schemas import (
    RegisterArgs,
    AgentIdArgs,
    BroadcastArgs,
    DirectMessageArgs,
    DiscoverArgs,
    HeartbeatArgs,
    CheckMessagesArgs,
    ChannelSendArgs,
    ChannelHistoryArgs,
    DMHistoryArgs,
    MessagesSinceArgs,
)

logger = logging.getLogger(__name__)

REGISTERED_HINT = "Registered. Use this agent_id for all subsequent calls."

def _text(payload: Any) -> list[types.TextContent]:
    return [types.TextContent(type="text", text=json.dumps(payload, default=str))]


def _clock(ts: datetime) -> str:
    return ts.strftime("%H:%M:%S")


def _render_lines(envelopes: list[Envelope]) -> str:
    return "\n".join(f"[{_clock(e.created_at)}] {short_name(e.from_agent)}: {e.content}" for e in envelopes)


# ─────────────────────────────────────────────
# Presence
# ─────────────────────────────────────────────

async def handle_agent_register(relay: Relay, arguments: dict[str, Any]) -> list[types.TextContent]:
    args = RegisterArgs.model_validate(arguments)
    agent = await relay.presence.register(
        args.name,
        description=args.description,
        group=args.group,
        route_target=args.pane,
    )
    relay.remember_agent(agent.id)
    logger.info(f"[agent_register] {agent.id} group={agent.group} route={agent.route_target}")
    return _text({
        "agent_id": agent.id,
        "name": agent.name,
        "group": agent.group,
        "route_target": agent.route_target,
        "message": REGISTERED_HINT,
    })


async def handle_agent_deregister(relay: Relay, arguments: dict[str, Any]) -> list[types.TextContent]:
    args = AgentIdArgs.model_validate(arguments)
    removed = await relay.presence.deregister(args.agent_id)
    relay.forget_agent(args.agent_id)
    return _text({"ok": True, "removed": removed, "message": "Deregistered"})


async def handle_agent_heartbeat(relay: Relay, arguments: dict[str, Any]) -> list[types.TextContent]:
    args = HeartbeatArgs.model_validate(arguments)
    refreshed = await relay.presence.heartbeat(args.agent_id, status=args.status)
    return _text({"ok": True, "refreshed": refreshed})


async def handle_agent_discover(relay: Relay, arguments: dict[str, Any]) -> list[types.TextContent]:
    args = DiscoverArgs.model_validate(arguments)
    agents = await relay.presence.list(include_stale=args.include_stale, group=args.group)
    if not agents:
        message = "No agents currently registered."
    else:
        lines = [f"Active agents ({len(agents)}):"]
        for a in agents:
            line = f"- {a.name} ({a.id}) [{a.group}]"
            if a.description:
                line += f": {a.description}"
            if a.is_stale:
                line += " (stale)"
            lines.append(line)
        message = "\n".join(lines)
    return _text({
        "count": len(agents),
        "agents": [a.summary() for a in agents],
        "message": message,
    })


async def handle_agent_groups(relay: Relay, arguments: dict[str, Any]) -> list[types.TextContent]:
    counts = await relay.presence.groups()
    return _text({"groups": [{"group": g, "count": n} for g, n in counts]})


# ─────────────────────────────────────────────
# Messaging
# ─────────────────────────────────────────────

async def handle_agent_broadcast(relay: Relay, arguments: dict[str, Any]) -> list[types.TextContent]:
    args = BroadcastArgs.model_validate(arguments)
    result = await relay.router.broadcast(
        args.agent_id, args.message, priority=args.priority, group=args.group,
    )
    return _text({
        "attempted": result.attempted,
        "delivered": result.delivered,
        "results": [
            {"agent_id": o.agent_id, "name": o.name, "ok": o.ok, "reason": o.reason}
            for o in result.outcomes
        ],
        "message": result.render(),
    })


async def handle_agent_dm(relay: Relay, arguments: dict[str, Any]) -> list[types.TextContent]:
    args = DirectMessageArgs.model_validate(arguments)
    result = await relay.router.direct_message(args.agent_id, args.to, args.message)
    return _text({
        "ok": result.ok,
        "status": result.status,
        "to": result.agent.id if result.agent else None,
        "message": result.render(),
    })


async def handle_agent_check_messages(relay: Relay, arguments: dict[str, Any]) -> list[types.TextContent]:
    args = CheckMessagesArgs.model_validate(arguments)
    text = await relay.router.check_messages(args.agent_id, timeout=args.timeout, max_count=args.max_count)
    return _text({"message": text})


# ─────────────────────────────────────────────
# History ledger
# ─────────────────────────────────────────────

async def handle_channel_send(relay: Relay, arguments: dict[str, Any]) -> list[types.TextContent]:
    args = ChannelSendArgs.model_validate(arguments)
    env = await relay.require_ledger().channel_send(args.agent_id, args.channel, args.message)
    return _text({"ok": True, "seq": env.seq, "message": f"Sent to #{env.channel}"})


async def handle_channel_history(relay: Relay, arguments: dict[str, Any]) -> list[types.TextContent]:
    args = ChannelHistoryArgs.model_validate(arguments)
    channel = args.channel.lstrip("#")
    envelopes = await relay.require_ledger().channel_history(channel, args.limit)
    return _text({
        "channel": channel,
        "messages": [e.to_dict() for e in envelopes],
        "message": _render_lines(envelopes) if envelopes else f"No messages in #{channel}",
    })


async def handle_channel_list(relay: Relay, arguments: dict[str, Any]) -> list[types.TextContent]:
    summaries = await relay.require_ledger().channel_list()
    return _text({
        "channels": [{"channel": s.channel, "message_count": s.message_count} for s in summaries],
        "message": "\n".join(f"#{s.channel} ({s.message_count} messages)" for s in summaries)
        or "No channels yet",
    })


async def handle_dm_history(relay: Relay, arguments: dict[str, Any]) -> list[types.TextContent]:
    args = DMHistoryArgs.model_validate(arguments)
    other_id, envelopes = await relay.dm_history(args.agent_id, args.with_agent, args.limit)
    return _text({
        "with": other_id,
        "messages": [e.to_dict() for e in envelopes],
        "message": _render_lines(envelopes) if envelopes else f"No DM history with {args.with_agent}",
    })


async def handle_messages_since(relay: Relay, arguments: dict[str, Any]) -> list[types.TextContent]:
    args = MessagesSinceArgs.model_validate(arguments)
    envelopes = await relay.require_ledger().messages_since(args.cursor, args.limit)
    return _text({
        "cursor": envelopes[-1].seq if envelopes else args.cursor,
        "messages": [e.to_dict() for e in envelopes],
    })


async def handle_relay_get_config(relay: Relay, arguments: dict[str, Any]) -> list[types.TextContent]:
    return _text({
        "version": RELAY_VERSION,
        "transport": relay.transport.name,
        "ledger": relay.ledger is not None,
        "name_policy": relay.name_policy,
        "stale_seconds": int(relay.presence.stale_after.total_seconds()),
    })


TOOLS_DISPATCH = {
    "relay_get_config": handle_relay_get_config,
    "agent_register": handle_agent_register,
    "agent_deregister": handle_agent_deregister,
    "agent_heartbeat": handle_agent_heartbeat,
    "agent_discover": handle_agent_discover,
    "agent_groups": handle_agent_groups,
    "agent_broadcast": handle_agent_broadcast,
    "agent_dm": handle_agent_dm,
    "agent_check_messages": handle_agent_check_messages,
    "channel_send": handle_channel_send,
    "channel_history": handle_channel_history,
    "channel_list": handle_channel_list,
    "dm_history": handle_dm_history,
    "messages_since": handle_messages_since,
}


async def dispatch_tool(relay: Relay, name: str, arguments: dict[str, Any] | None) -> list[types.Content]:
    handler = TOOLS_DISPATCH.get(name)
    if handler is None:
        return _text({"error": f"Unknown tool: {name}"})
    try:
        return await handler(relay, arguments or {})
    except ValidationError as e:
        return _text({
            "error": f"Invalid arguments for {name}",
            "details": e.errors(include_url=False, include_context=False),
        })
    except (LedgerDisabledError, TransportCapabilityError, PresenceError, ValueError) as e:
        return _text({"error": str(e)})
    except Exception as e:
        logger.exception(f"[dispatch] {name} failed")
        return _text({"error": f"{type(e).__name__}: {e}"})
