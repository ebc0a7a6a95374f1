"""Transaction store backends and selection."""
from __future__ import annotations

from typing import Optional

from core.config import settings
from core.logging_config import get_logger
from domain.transaction.repository import TransactionStore

from .memory_transaction_store import InMemoryTransactionStore
from .redis_transaction_store import RedisTransactionStore


logger = get_logger(__name__)


async def create_transaction_store(kind: Optional[str] = None) -> TransactionStore:
    """选择存储后端：auto -> redis(if url) else memory"""
    provider = (kind or settings.TRANSACTION_STORE or "auto").lower()
    if provider in {"redis", "auto"} and settings.redis.url:
        from infrastructure.external.cache import get_redis_client
        try:
            client = await get_redis_client()
            logger.info("transaction_store_selected", provider="redis")
            return RedisTransactionStore(client)
        except Exception as exc:
            if provider == "redis":
                raise
            logger.error("transaction_store_redis_unavailable", error=str(exc))
    elif provider == "redis":
        logger.warning("transaction_store_redis_missing_url", message="REDIS__URL not set, falling back to in-memory store")
    elif provider not in {"memory", "auto"}:
        raise ValueError(f"Unsupported transaction store: {provider}")
    logger.info("transaction_store_selected", provider="memory")
    return InMemoryTransactionStore()


__all__ = ["InMemoryTransactionStore", "RedisTransactionStore", "create_transaction_store"]
