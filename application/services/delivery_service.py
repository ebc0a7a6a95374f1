"""Application service for machine push delivery.

Keeps the push workflow (identify, in-band protocol, approval fan-out)
separate from the concrete connection registry and broadcast transport.
Approvals are published on the realtime broker; every process delivers
them to the channel it holds locally, if any.
"""
from __future__ import annotations

from typing import Any, Optional

from application.ports.realtime import (
    Envelope,
    PushChannel,
    RealtimeBrokerPort,
    machine_channel,
)
from core.logging_config import get_logger
from domain.transaction.entity import TransactionStatus
from domain.transaction.events import PaymentApproved
from infrastructure.realtime.connection_manager import DeliveryRegistry


logger = get_logger(__name__)

# Close code for a connection replaced by a newer one for the same machine
SUPERSEDED_CLOSE_CODE = 4000


class DeliveryService:
    def __init__(self, *, broker: RealtimeBrokerPort, registry: DeliveryRegistry) -> None:
        self._broker = broker
        self._registry = registry

    async def start(self) -> None:
        await self._broker.subscribe(self.on_broker_event)

    @property
    def registry(self) -> DeliveryRegistry:
        return self._registry

    @property
    def broker_kind(self) -> str:
        return self._broker.kind

    # -------------------- dispense sink --------------------
    async def notify_approved(self, event: PaymentApproved) -> bool:
        """Hand an approval to the broker; True if it was published."""
        if not event.machine_id:
            logger.info("dispense_skipped_no_machine", transaction_id=event.transaction_id)
            return False
        envelope = Envelope(
            type="payment_approved",
            machine_id=event.machine_id,
            data={
                "transaction_id": event.transaction_id,
                # Field name used by deployed machine firmware
                "vending_transaction_id": event.transaction_id,
                "status": TransactionStatus.APPROVED.value,
                "gateway_payment_id": event.gateway_payment_id,
            },
        )
        try:
            await self._broker.publish(machine_channel(event.machine_id), envelope)
        except Exception as exc:
            logger.error(
                "dispense_publish_failed",
                transaction_id=event.transaction_id,
                machine_id=event.machine_id,
                error=str(exc),
            )
            return False
        return True

    # Broker callback (cross-process events → in-process delivery)
    async def on_broker_event(self, envelope: Envelope) -> None:
        if not envelope.machine_id:
            logger.warning("realtime_event_unaddressed", type=envelope.type)
            return
        delivered = await self._registry.push(envelope.machine_id, envelope)
        logger.info(
            "realtime_event_dispatched",
            type=envelope.type,
            machine_id=envelope.machine_id,
            delivered=delivered,
        )

    # -------------------- connection lifecycle --------------------
    async def identify(
        self,
        machine_id: str,
        channel: PushChannel,
        *,
        ack_type: str = "connection_ack",
    ) -> None:
        superseded = await self._registry.identify(machine_id, channel, ack_type=ack_type)
        if superseded is not None:
            try:
                await superseded.close(code=SUPERSEDED_CLOSE_CODE)
            except Exception as exc:
                logger.info("ws_superseded_close_failed", machine_id=machine_id, error=str(exc))

    async def disconnect(self, machine_id: Optional[str], channel: PushChannel) -> None:
        if machine_id:
            await self._registry.remove(machine_id, channel)
        logger.info("ws_disconnected", machine_id=machine_id)

    async def handle_message(
        self,
        machine_id: Optional[str],
        channel: PushChannel,
        msg: Any,
    ) -> Optional[str]:
        """Apply one in-band message; returns the connection's machine id afterwards."""
        if not isinstance(msg, dict):
            logger.info("ws_message_ignored", machine_id=machine_id, reason="not an object")
            return machine_id
        mtype = str(msg.get("type") or "").lower()

        if mtype == "identify":
            requested = str(msg.get("machine_id") or "").strip()
            if machine_id:
                await self._error(channel, machine_id, "Connection already identified")
                return machine_id
            if not requested:
                await self._error(channel, None, "machine_id is required")
                return None
            await self.identify(requested, channel, ack_type="identification_ack")
            return requested
        if mtype == "ping":
            await self._registry.send(machine_id, channel, Envelope(type="pong", machine_id=machine_id))
        elif mtype == "ping_from_client":
            await self._registry.send(machine_id, channel, Envelope(type="pong_to_client", machine_id=machine_id))
        elif mtype == "pong":
            pass
        else:
            logger.info("ws_message_unhandled", machine_id=machine_id, type=mtype or None)
        return machine_id

    async def _error(self, channel: PushChannel, machine_id: Optional[str], message: str) -> None:
        await self._registry.send(
            machine_id,
            channel,
            Envelope(type="error", machine_id=machine_id, data={"message": message}),
        )

    async def aclose(self) -> None:
        close = getattr(self._broker, "aclose", None)
        if callable(close):
            await close()
