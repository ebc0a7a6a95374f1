"""WebSocket route for machine push notifications.

Enhancements:
- Identify by `?machine_id=` at connect time or by a first `identify` message.
- Heartbeat/idle-timeout handling to detect half-open connections.
- Server sends JSON ping on idle; closes after configurable missed pongs.
"""
from __future__ import annotations

from typing import Any
import asyncio
import json

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from api.dependencies import get_delivery_service
from application.ports.realtime import Envelope
from core.logging_config import get_logger
from core.config import settings


logger = get_logger(__name__)


router = APIRouter(prefix="/ws", tags=["WebSocket"])

_NOT_JSON = object()


async def _receive(ws: WebSocket) -> Any:
    text = await ws.receive_text()
    try:
        return json.loads(text)
    except ValueError:
        return _NOT_JSON


@router.websocket("/machines")
async def machines_endpoint(ws: WebSocket) -> None:
    await ws.accept()
    delivery = get_delivery_service(ws.app)

    machine_id = (ws.query_params.get("machine_id") or "").strip() or None
    if machine_id:
        await delivery.identify(machine_id, ws)
    else:
        logger.info("ws_connected_unidentified")

    try:
        # Heartbeat/idle detection parameters (configurable via .env)
        idle_ping_interval = float(settings.REALTIME_WS_IDLE_PING_INTERVAL_S)
        pong_grace = float(settings.REALTIME_WS_PONG_GRACE_S)
        missed_limit = int(settings.REALTIME_WS_MISSED_PING_LIMIT)

        missed = 0
        while True:
            if idle_ping_interval and idle_ping_interval > 0:
                try:
                    msg = await asyncio.wait_for(_receive(ws), timeout=idle_ping_interval)
                except asyncio.TimeoutError:
                    # Idle: send ping and wait a short grace for response
                    missed += 1
                    if not await delivery.registry.send(machine_id, ws, Envelope(type="ping", machine_id=machine_id)):
                        # If send fails, treat as disconnected
                        await ws.close(code=1001)
                        break
                    try:
                        msg = await asyncio.wait_for(_receive(ws), timeout=pong_grace)
                        # Received something after ping (pong or normal message)
                        missed = 0
                    except asyncio.TimeoutError:
                        if missed > missed_limit:
                            logger.info("ws_heartbeat_timeout", machine_id=machine_id, missed=missed)
                            await ws.close(code=1001)
                            break
                        else:
                            # Continue waiting; send next ping on next idle interval
                            continue
            else:
                # Idle ping disabled: wait indefinitely for next message
                msg = await _receive(ws)
            if msg is _NOT_JSON:
                logger.info("ws_non_json_ignored", machine_id=machine_id)
                continue
            machine_id = await delivery.handle_message(machine_id, ws, msg)
    except WebSocketDisconnect:
        logger.info("ws_client_closed", machine_id=machine_id)
    except Exception as exc:
        logger.error("ws_error", machine_id=machine_id, error=str(exc), exc_info=True)
    finally:
        await delivery.disconnect(machine_id, ws)
