"""Redis Pub/Sub based RealtimeBrokerPort implementation.

Reuses the shared RedisClient from infrastructure.external.cache.
Publishes to per-machine channels `rt:machine:{machine_id}` and
pattern-subscribes `rt:machine:*` so every worker sees every push and
delivers to whichever local connection it holds.
"""
from __future__ import annotations

import asyncio
from typing import Optional

from application.ports.realtime import Envelope, RealtimeBrokerPort, Handler, MACHINE_CHANNEL_PREFIX
from core.logging_config import get_logger
from infrastructure.external.cache import get_redis_client, RedisClient


logger = get_logger(__name__)

CHANNEL_PATTERN = f"{MACHINE_CHANNEL_PREFIX}*"


class RedisRealtimeBroker(RealtimeBrokerPort):
    kind = "redis"

    def __init__(self, client: Optional[RedisClient] = None) -> None:
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()
        self._handler: Optional[Handler] = None
        self._client: Optional[RedisClient] = client

    async def publish(self, channel: str, envelope: Envelope) -> None:  # type: ignore[override]
        if self._client is None:
            self._client = await get_redis_client()
        try:
            # RedisClient handles JSON serialization internally
            await self._client.publish(channel, envelope.model_dump(mode="json"))
        except Exception as exc:
            logger.error("redis_publish_failed", channel=channel, error=str(exc))
            raise

    async def _listen(self) -> None:
        assert self._client is not None and self._handler is not None
        try:
            logger.info("redis_pubsub_subscribed", pattern=CHANNEL_PATTERN)
            async for message in self._client.psubscribe(CHANNEL_PATTERN):
                if self._stopping.is_set():
                    break
                try:
                    data = message.get("data")  # already deserialized (dict)
                    if not isinstance(data, dict):
                        continue
                    env = Envelope.model_validate(data)
                    await self._handler(env)
                except Exception as exc:  # pragma: no cover
                    logger.warning("redis_pubsub_parse_failed", error=str(exc))
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # pragma: no cover
            logger.error("redis_pubsub_listen_failed", error=str(exc))

    async def subscribe(self, handler: Handler) -> None:  # type: ignore[override]
        self._handler = handler
        if self._client is None:
            self._client = await get_redis_client()
        self._task = asyncio.create_task(self._listen(), name="redis-realtime-listener")

    async def aclose(self) -> None:  # type: ignore[override]
        self._stopping.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except (asyncio.CancelledError, Exception):  # pragma: no cover
                pass
        self._task = None
        self._client = None
