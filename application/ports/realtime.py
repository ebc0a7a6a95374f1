"""
Realtime port and message DTOs (contracts-first).

This module defines the push envelope, the broker protocol used for
cross-process fan-out and the channel/notifier contracts, so the
application layer stays decoupled from WebSocket and pub/sub details.
"""
from __future__ import annotations

from typing import Any, Awaitable, Callable, Protocol
from pydantic import BaseModel, Field
from datetime import datetime, timezone

from domain.transaction.events import PaymentApproved


def _utc_now_z() -> str:
    ts = datetime.now(timezone.utc)
    s = ts.isoformat()
    return s.replace("+00:00", "Z")


class Envelope(BaseModel):
    """Unified push message passed around the system.

    Fields:
      - type: semantic message type (payment_approved/connection_ack/ping/pong/error)
      - machine_id: target machine, used for routing between processes
      - data: payload (JSON-serializable), flattened into the wire frame
      - ts: server-generated UTC timestamp (ISO8601 with Z)
    """

    type: str
    machine_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    ts: str = Field(default_factory=_utc_now_z)

    def to_wire(self) -> dict[str, Any]:
        """Frame sent to the machine: ``{"type": ..., **data, "ts": ...}``."""
        return {"type": self.type, **self.data, "ts": self.ts}


Handler = Callable[[Envelope], Awaitable[None]]

MACHINE_CHANNEL_PREFIX = "rt:machine:"


def machine_channel(machine_id: str) -> str:
    """Broker channel carrying pushes addressed to one machine."""
    return f"{MACHINE_CHANNEL_PREFIX}{machine_id}"


class RealtimeBrokerPort(Protocol):
    """Abstraction for cross-process fan-out of push envelopes.

    Implementations may be in-memory (single process) or Redis pub/sub.
    """

    kind: str

    async def publish(self, channel: str, envelope: Envelope) -> None: ...

    async def subscribe(self, handler: Handler) -> None: ...

    async def aclose(self) -> None: ...  # pragma: no cover - optional


class PushChannel(Protocol):
    """A live bidirectional connection to one machine (e.g. a WebSocket)."""

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


class DispenseNotifier(Protocol):
    """Sink for first-time approvals; best-effort, never raises."""

    async def notify_approved(self, event: PaymentApproved) -> bool: ...


__all__ = [
    "Envelope",
    "RealtimeBrokerPort",
    "Handler",
    "PushChannel",
    "DispenseNotifier",
    "MACHINE_CHANNEL_PREFIX",
    "machine_channel",
]
