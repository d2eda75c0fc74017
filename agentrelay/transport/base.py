"""
Delivery transport contract shared by the direct (terminal pane) and bus
(pub/sub) implementations.

A delivery never raises for a failed attempt: it returns a DeliveryResult
carrying the reason, so one bad target cannot abort a fan-out.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

NO_MESSAGES_RECEIVED = "No messages received"


class TransportCapabilityError(RuntimeError):
    """Raised when an operation needs a capability the configured transport lacks."""


@dataclass
class DeliveryResult:
    ok: bool
    target: str
    reason: Optional[str] = None
    detail: Optional[str] = None

    @classmethod
    def success(cls, target: str, detail: Optional[str] = None) -> "DeliveryResult":
        return cls(ok=True, target=target, detail=detail)

    @classmethod
    def failure(cls, target: str, reason: str, detail: Optional[str] = None) -> "DeliveryResult":
        return cls(ok=False, target=target, reason=reason, detail=detail)


class DeliveryTransport(ABC):
    name = "abstract"
    supports_subscribe = False

    @abstractmethod
    async def deliver(self, target: str, text: str, envelope: Optional[dict] = None) -> DeliveryResult:
        """
        Move `text` to `target`. `envelope` carries the structured message for
        transports that ship more than the rendered text.
        """
        ...

    def route_for(self, agent_id: str) -> Optional[str]:
        """Route target to store for a newly registered agent that supplied none."""
        return None

    def dm_subject(self, agent_id: str) -> str:
        raise TransportCapabilityError(f"The {self.name} transport has no subjects")

    def broadcast_subject(self) -> str:
        raise TransportCapabilityError(f"The {self.name} transport has no subjects")

    async def collect(
        self, subject: str, max_count: int, timeout: float, sink: Optional[list] = None,
    ) -> list[dict]:
        raise TransportCapabilityError(
            f"The {self.name} transport delivers messages directly; there is nothing to check"
        )

    async def subscribe(self, subject: str, max_count: int, timeout: float) -> str:
        raise TransportCapabilityError(
            f"The {self.name} transport delivers messages directly; there is nothing to check"
        )

    @staticmethod
    def render_inbound(payload: dict) -> str:
        """One inbound envelope as a display line."""
        text = payload.get("text") or payload.get("content") or ""
        ts = payload.get("timestamp")
        return f"[{ts}] {text}" if ts else text

    async def close(self) -> None:
        pass
