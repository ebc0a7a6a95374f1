"""In-process push connection registry.

Keeps track of the single live channel per machine id for this process and
delivers push envelopes to it. Cross-process fan-out is handled by a
RealtimeBrokerPort implementation; each process only delivers locally.
"""
from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

from starlette.websockets import WebSocketState

from application.ports.realtime import Envelope, PushChannel
from core.logging_config import get_logger
from core.config import settings
from domain.common.exceptions import DeliveryException


logger = get_logger(__name__)


def _is_open(channel: PushChannel) -> bool:
    client_state = getattr(channel, "client_state", WebSocketState.CONNECTED)
    app_state = getattr(channel, "application_state", WebSocketState.CONNECTED)
    return client_state == WebSocketState.CONNECTED and app_state == WebSocketState.CONNECTED


class DeliveryRegistry:
    """Map machine_id → live channel, at most one entry per machine."""

    def __init__(self, *, send_timeout: Optional[float] = None) -> None:
        self._by_machine: Dict[str, PushChannel] = {}
        # Guards the map only; never held across a send
        self._lock = asyncio.Lock()
        # Serializes concurrent sends on the same channel
        self._send_locks: Dict[PushChannel, asyncio.Lock] = {}
        self._send_timeout = settings.REALTIME_WS_SEND_TIMEOUT_S if send_timeout is None else send_timeout

    async def identify(
        self,
        machine_id: str,
        channel: PushChannel,
        *,
        ack_type: str = "connection_ack",
    ) -> Optional[PushChannel]:
        """Register ``channel`` for ``machine_id`` and acknowledge over it.

        Returns the superseded channel, if a different one was registered;
        the caller is responsible for closing it.
        """
        async with self._lock:
            previous = self._by_machine.get(machine_id)
            self._by_machine[machine_id] = channel
            self._send_locks.setdefault(channel, asyncio.Lock())
        if previous is channel:
            previous = None
        logger.info("ws_machine_identified", machine_id=machine_id, superseded=previous is not None)
        ack = Envelope(
            type=ack_type,
            machine_id=machine_id,
            data={"status": "success", "machine_id": machine_id, "message": f"Connected as {machine_id}"},
        )
        try:
            await self._send(machine_id, channel, ack.to_wire())
        except DeliveryException as exc:
            logger.warning("ws_ack_failed", machine_id=machine_id, error=exc.message)
        return previous

    async def push(self, machine_id: str, envelope: Envelope) -> bool:
        """Best-effort send; True when the frame was handed to an open channel."""
        async with self._lock:
            channel = self._by_machine.get(machine_id)
        if channel is None:
            logger.info("ws_push_no_channel", machine_id=machine_id, type=envelope.type)
            return False
        if not _is_open(channel):
            logger.info("ws_push_channel_closed", machine_id=machine_id, type=envelope.type)
            await self.remove(machine_id, channel)
            return False
        try:
            await self._send(machine_id, channel, envelope.to_wire())
        except DeliveryException as exc:
            logger.warning("ws_push_failed", machine_id=machine_id, type=envelope.type, error=exc.message)
            await self.remove(machine_id, channel)
            return False
        logger.info("ws_push_sent", machine_id=machine_id, type=envelope.type)
        return True

    async def remove(self, machine_id: str, channel: PushChannel) -> bool:
        """Deregister only if ``channel`` is still the registered one."""
        async with self._lock:
            if self._by_machine.get(machine_id) is not channel:
                self._send_locks.pop(channel, None)
                return False
            del self._by_machine[machine_id]
            self._send_locks.pop(channel, None)
        logger.info("ws_machine_removed", machine_id=machine_id)
        return True

    async def get(self, machine_id: str) -> Optional[PushChannel]:
        async with self._lock:
            return self._by_machine.get(machine_id)

    async def machine_ids(self) -> List[str]:
        async with self._lock:
            return list(self._by_machine)

    async def send(self, machine_id: Optional[str], channel: PushChannel, envelope: Envelope) -> bool:
        """Direct reply on a known channel (heartbeat, errors); never raises."""
        try:
            await self._send(machine_id, channel, envelope.to_wire())
            return True
        except DeliveryException as exc:
            logger.warning("ws_send_failed", machine_id=machine_id, type=envelope.type, error=exc.message)
            return False

    async def _send(self, machine_id: Optional[str], channel: PushChannel, payload: dict[str, Any]) -> None:
        lock = self._send_locks.get(channel)
        if lock is None:
            lock = asyncio.Lock()
        try:
            async with lock:
                if self._send_timeout and self._send_timeout > 0:
                    await asyncio.wait_for(channel.send_json(payload), timeout=self._send_timeout)
                else:
                    await channel.send_json(payload)
        except asyncio.TimeoutError:
            raise DeliveryException(machine_id or "unknown", "send timed out")
        except Exception as exc:
            raise DeliveryException(machine_id or "unknown", str(exc) or type(exc).__name__)
