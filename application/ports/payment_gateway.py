"""
Payment gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters.
"""
from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from application.dtos.payments import (
    CheckoutSession,
    CheckoutSessionRequest,
    GatewayPayment,
)


@runtime_checkable
class PaymentGateway(Protocol):
    """Gateway protocol for the hosted-checkout payment processor.

    Implementations should be async and side-effect free beyond IO. Both
    calls raise ``PaymentGatewayError`` on failure, timeouts included.
    """

    provider: str

    async def create_session(self, req: CheckoutSessionRequest) -> CheckoutSession: ...

    async def get_payment(self, gateway_payment_id: str) -> Optional[GatewayPayment]: ...

    async def aclose(self) -> None: ...
