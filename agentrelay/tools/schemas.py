"""
Argument models for the MCP tools. Validation happens before any side effect,
so a malformed call is rejected as a whole.
"""
from typing import Literal, Optional

from pydantic import BaseModel, Field

from agentrelay.config import CHECK_TIMEOUT, CHECK_MAX_COUNT


class RegisterArgs(BaseModel):
    name: str = Field(min_length=1)
    description: str
    group: Optional[str] = None
    pane: Optional[str] = None


class AgentIdArgs(BaseModel):
    agent_id: str = Field(min_length=1)


class BroadcastArgs(AgentIdArgs):
    message: str
    priority: Literal["low", "normal", "high"] = "normal"
    group: Optional[str] = None


class DirectMessageArgs(AgentIdArgs):
    to: str = Field(min_length=1)
    message: str


class DiscoverArgs(BaseModel):
    include_stale: bool = False
    group: Optional[str] = None


class HeartbeatArgs(AgentIdArgs):
    status: Optional[str] = None


class CheckMessagesArgs(AgentIdArgs):
    timeout: float = Field(CHECK_TIMEOUT, gt=0, le=300)
    max_count: int = Field(CHECK_MAX_COUNT, ge=1, le=1000)


class ChannelSendArgs(AgentIdArgs):
    channel: str = Field(min_length=1)
    message: str


class ChannelHistoryArgs(BaseModel):
    channel: str = Field(min_length=1)
    limit: int = Field(50, ge=1, le=1000)


class DMHistoryArgs(AgentIdArgs):
    with_agent: str = Field(min_length=1)
    limit: int = Field(50, ge=1, le=1000)


class MessagesSinceArgs(BaseModel):
    cursor: int = Field(0, ge=0)
    limit: int = Field(100, ge=1, le=1000)
