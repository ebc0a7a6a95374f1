"""Pytest bootstrap configuration.

Ensure environment variables are set before test collection and module
imports that depend on application settings.
"""
import os

# In-process backends only; no Redis during tests
os.environ["REDIS__URL"] = ""
os.environ.setdefault("TRANSACTION_STORE", "memory")
os.environ.setdefault("REALTIME_BROKER", "inmemory")
os.environ.setdefault("TRANSACTION_SWEEP_INTERVAL_S", "0")
# Disable server heartbeat so WebSocket tests never wait on idle pings
os.environ.setdefault("REALTIME_WS_IDLE_PING_INTERVAL_S", "0")
os.environ.setdefault("BACKEND_URL", "https://relay.test")
os.environ.setdefault("PAYMENT__MERCADOPAGO__ACCESS_TOKEN", "TEST-access-token")

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest
from starlette.websockets import WebSocketState

from application.dtos.payments import (
    CheckoutSession,
    CheckoutSessionRequest,
    GatewayPayment,
)
from infrastructure.repositories import InMemoryTransactionStore


class Clock:
    """Manually advanced UTC clock."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class StubGateway:
    provider = "stub"

    def __init__(self) -> None:
        self.sessions: list[CheckoutSessionRequest] = []
        self.payments: dict[str, GatewayPayment] = {}
        self.fetches: list[str] = []
        self.create_error: Optional[Exception] = None
        self.fetch_error: Optional[Exception] = None
        # Awaited inside create_session when set, to hold calls open
        self.create_gate: Optional[asyncio.Event] = None
        self.on_create = None
        self.closed = False

    async def create_session(self, req: CheckoutSessionRequest) -> CheckoutSession:
        self.sessions.append(req)
        if self.create_gate is not None:
            await self.create_gate.wait()
        if self.on_create is not None:
            await self.on_create(req)
        if self.create_error is not None:
            raise self.create_error
        n = len(self.sessions)
        return CheckoutSession(
            session_id=f"pref-{n}",
            pay_url=f"https://pay.test/checkout/{n}",
            sandbox_pay_url=f"https://sandbox.pay.test/checkout/{n}",
        )

    async def get_payment(self, gateway_payment_id: str) -> Optional[GatewayPayment]:
        self.fetches.append(gateway_payment_id)
        # Yield so concurrent webhooks interleave
        await asyncio.sleep(0)
        if self.fetch_error is not None:
            raise self.fetch_error
        return self.payments.get(gateway_payment_id)

    def add_payment(
        self,
        payment_id: str,
        status: str,
        external_reference: Optional[str],
        *,
        machine_id: Optional[str] = None,
        preference_id: Optional[str] = None,
        status_detail: Optional[str] = None,
        items: Optional[list[dict[str, Any]]] = None,
    ) -> GatewayPayment:
        payment = GatewayPayment(
            id=payment_id,
            status=status,
            raw_status=status,
            status_detail=status_detail,
            external_reference=external_reference,
            preference_id=preference_id,
            metadata={"machine_id": machine_id} if machine_id else {},
            items=items or [],
        )
        self.payments[payment_id] = payment
        return payment

    async def aclose(self) -> None:
        self.closed = True


class FakeChannel:
    """Stand-in for a WebSocket: records frames and close codes."""

    def __init__(self, *, fail_send: bool = False) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed_code: Optional[int] = None
        self.fail_send = fail_send
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED

    async def send_json(self, data: Any) -> None:
        if self.fail_send:
            raise ConnectionResetError("peer gone")
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        self.closed_code = code
        self.application_state = WebSocketState.DISCONNECTED

    def types(self) -> list[str]:
        return [m.get("type") for m in self.sent]


class RecordingNotifier:
    def __init__(self, *, result: bool = True, error: Optional[Exception] = None) -> None:
        self.events = []
        self.result = result
        self.error = error

    async def notify_approved(self, event) -> bool:
        self.events.append(event)
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def store(clock) -> InMemoryTransactionStore:
    return InMemoryTransactionStore(clock=clock)


@pytest.fixture
def gateway() -> StubGateway:
    return StubGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def make_channel():
    return FakeChannel


@pytest.fixture
def make_notifier():
    return RecordingNotifier
