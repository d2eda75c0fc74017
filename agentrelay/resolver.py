"""
Directory resolver: turn an agent reference (full id or short name) into a record.

Resolution order:
  1. exact match on the generated id (unique by construction)
  2. match on `name`
     - one match: that record
     - several: depends on policy
         "recent"  the most recently seen match wins (ties: first in candidate order)
         "strict"  report the collision to the caller
"""
from dataclasses import dataclass, field
from typing import Optional

from agentrelay.db.models import AgentRecord

FOUND = "found"
NOT_FOUND = "not_found"
AMBIGUOUS = "ambiguous"

POLICIES = ("recent", "strict")


@dataclass
class Resolution:
    status: str
    reference: str
    agent: Optional[AgentRecord] = None
    matches: list[AgentRecord] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return self.status == FOUND


def resolve(reference: str, candidates: list[AgentRecord], policy: str = "recent") -> Resolution:
    if policy not in POLICIES:
        raise ValueError(f"Invalid name policy '{policy}'. Must be one of {POLICIES}")

    for agent in candidates:
        if agent.id == reference:
            return Resolution(FOUND, reference, agent, [agent])

    matches = [a for a in candidates if a.name == reference]
    if not matches:
        return Resolution(NOT_FOUND, reference)
    if len(matches) == 1:
        return Resolution(FOUND, reference, matches[0], matches)

    if policy == "strict":
        return Resolution(AMBIGUOUS, reference, None, matches)
    # max() keeps the first of equal keys, so ties fall back to candidate order
    newest = max(matches, key=lambda a: a.last_seen)
    return Resolution(FOUND, reference, newest, matches)
