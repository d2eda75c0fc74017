"""
Data models (dataclasses) for AgentRelay.
These are plain Python objects used across the DB, MCP, and API layers.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional

DEFAULT_GROUP = "default"
PRIORITIES = ("low", "normal", "high")


def parse_timestamp(value: str) -> datetime:
    """ISO-8601 to an aware datetime. Values written without an offset are taken as UTC."""
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def normalize_group(group: Optional[str]) -> Optional[str]:
    """Blank or whitespace-only group names mean the default group."""
    if group is None:
        return None
    return group.strip() or DEFAULT_GROUP


@dataclass
class AgentRecord:
    id: str              # <name>-<8 hex>, immutable
    name: str
    description: str
    group: str
    route_target: str    # pane address (direct) or DM subject (bus); "" when unknown
    registered_at: datetime
    last_seen: datetime
    status: Optional[str] = None
    is_stale: bool = False   # derived: last_seen outside the staleness window

    def with_staleness(self, is_stale: bool) -> "AgentRecord":
        return replace(self, is_stale=is_stale)

    def summary(self) -> dict:
        return {
            "agent_id": self.id,
            "name": self.name,
            "description": self.description,
            "group": self.group,
            "route_target": self.route_target or None,
            "status": self.status,
            "state": "stale" if self.is_stale else "active",
            "last_seen": self.last_seen.isoformat(),
        }


@dataclass
class Envelope:
    """
    One appended ledger entry. `seq` is the monotonic cursor assigned at append
    time; rows are never updated afterwards.
    """
    seq: int
    from_agent: str
    content: str
    created_at: datetime
    to_agent: Optional[str] = None    # absent => broadcast or channel post
    channel: Optional[str] = None
    priority: str = "normal"

    def to_dict(self) -> dict:
        return {
            "seq": self.seq,
            "from": self.from_agent,
            "to": self.to_agent,
            "channel": self.channel,
            "content": self.content,
            "priority": self.priority,
            "timestamp": self.created_at.isoformat(),
        }


@dataclass
class ChannelSummary:
    channel: str
    message_count: int   # derived with COUNT(*), never stored


@dataclass
class TargetOutcome:
    agent_id: str
    name: str
    ok: bool
    reason: Optional[str] = None


@dataclass
class BroadcastResult:
    attempted: int
    outcomes: list[TargetOutcome] = field(default_factory=list)

    NO_TARGETS = "No other agents to broadcast to"

    @property
    def no_targets(self) -> bool:
        return self.attempted == 0

    @property
    def delivered(self) -> int:
        return sum(1 for o in self.outcomes if o.ok)

    def render(self) -> str:
        if self.no_targets:
            return self.NO_TARGETS
        lines = [
            f"✓ {o.name}" if o.ok else f"✗ {o.name}: {o.reason}"
            for o in self.outcomes
        ]
        return f"Broadcast sent to {self.attempted} agent(s):\n" + "\n".join(lines)


@dataclass
class DirectMessageResult:
    status: str          # sent | not_found | no_route | failed | ambiguous
    reference: str
    agent: Optional[AgentRecord] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "sent"

    def render(self) -> str:
        if self.status == "sent":
            return f"DM sent to {self.agent.name}"
        if self.status == "not_found":
            return f"Agent {self.reference} not found"
        if self.status == "no_route":
            return f"Agent {self.reference} has no reachable destination"
        if self.status == "ambiguous":
            return f"Agent name '{self.reference}' is ambiguous: {self.detail}"
        return f"Failed to send DM: {self.detail}"
