"""Shared async Redis access.

One pooled client per process, created in the app lifespan when
``REDIS__URL`` is set. Both the transaction store (``txn:*`` keys with
millisecond expiry and ``lock:txn:*`` locks) and the realtime broker
(``rt:machine:*`` pub/sub) use it.
"""
from .redis_client import (
    RedisClient,
    init_redis_client,
    get_redis_client,
    shutdown_redis_client,
)


__all__ = [
    "RedisClient",
    "init_redis_client",
    "get_redis_client",
    "shutdown_redis_client",
]
