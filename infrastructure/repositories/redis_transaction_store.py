"""
Redis 交易存储 - `txn:{transaction_id}` JSON 值，TTL 由记录自身的 expires_at 推导
"""
from __future__ import annotations

import math
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable, Optional

from redis.exceptions import RedisError

from core.config import settings
from core.logging_config import get_logger
from domain.common.exceptions import TransactionStoreException
from domain.transaction.entity import TransactionRecord, utc_now
from domain.transaction.repository import TransactionStore
from infrastructure.external.cache import RedisClient


logger = get_logger(__name__)

_STORE_ERRORS = (RedisError, OSError, TimeoutError)


class RedisTransactionStore(TransactionStore):
    kind = "redis"

    def __init__(self, client: RedisClient, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._client = client
        self._clock = clock

    @staticmethod
    def _key(transaction_id: str) -> str:
        return f"txn:{transaction_id}"

    def _ttl_ms(self, record: TransactionRecord) -> Optional[int]:
        remaining = record.remaining_ttl(self._clock())
        if remaining is None:
            return None
        # Key expiry tracks expires_at to the millisecond; an already-expired write lives 1 ms
        return max(1, math.ceil(remaining / timedelta(milliseconds=1)))

    async def get(self, transaction_id: str) -> Optional[TransactionRecord]:
        try:
            data = await self._client.get(self._key(transaction_id))
        except _STORE_ERRORS as exc:
            logger.error("transaction_store_get_failed", transaction_id=transaction_id, error=str(exc))
            raise TransactionStoreException(str(exc), operation="get", transaction_id=transaction_id)
        if not isinstance(data, dict):
            return None
        record = TransactionRecord.from_dict(data)
        if record.is_expired(self._clock()):
            return None
        return record

    async def add(self, record: TransactionRecord) -> bool:
        try:
            return await self._client.set(
                self._key(record.transaction_id),
                record.to_dict(),
                ttl_ms=self._ttl_ms(record),
                nx=True,
            )
        except _STORE_ERRORS as exc:
            logger.error("transaction_store_add_failed", transaction_id=record.transaction_id, error=str(exc))
            raise TransactionStoreException(str(exc), operation="add", transaction_id=record.transaction_id)

    async def save(self, record: TransactionRecord) -> None:
        try:
            await self._client.set(
                self._key(record.transaction_id),
                record.to_dict(),
                ttl_ms=self._ttl_ms(record),
            )
        except _STORE_ERRORS as exc:
            logger.error("transaction_store_save_failed", transaction_id=record.transaction_id, error=str(exc))
            raise TransactionStoreException(str(exc), operation="save", transaction_id=record.transaction_id)

    async def delete(self, transaction_id: str) -> bool:
        try:
            return await self._client.delete(self._key(transaction_id)) > 0
        except _STORE_ERRORS as exc:
            logger.error("transaction_store_delete_failed", transaction_id=transaction_id, error=str(exc))
            raise TransactionStoreException(str(exc), operation="delete", transaction_id=transaction_id)

    @asynccontextmanager
    async def lock(self, transaction_id: str) -> AsyncIterator[None]:
        # Errors raised by the body are already wrapped by get/save
        try:
            async with self._client.lock(
                self._key(transaction_id),
                timeout=settings.redis.lock_timeout,
                blocking_timeout=settings.redis.lock_blocking_timeout,
            ):
                yield
        except _STORE_ERRORS as exc:
            logger.error("transaction_store_lock_failed", transaction_id=transaction_id, error=str(exc))
            raise TransactionStoreException(str(exc), operation="lock", transaction_id=transaction_id)
