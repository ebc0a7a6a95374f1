"""
内存交易存储 - 单进程 map 实现，读时判过期，可选周期清理
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Dict, Optional

from core.logging_config import get_logger
from domain.transaction.entity import TransactionRecord, utc_now
from domain.transaction.repository import TransactionStore


logger = get_logger(__name__)


class InMemoryTransactionStore(TransactionStore):
    """Keeps serialized snapshots so callers never alias stored state."""

    kind = "memory"

    def __init__(self, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._records: Dict[str, dict[str, Any]] = {}
        self._clock = clock
        # per-key locks with reference counts so idle keys do not accumulate
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_refs: Dict[str, int] = {}

    def _live(self, transaction_id: str) -> Optional[TransactionRecord]:
        snapshot = self._records.get(transaction_id)
        if snapshot is None:
            return None
        record = TransactionRecord.from_dict(snapshot)
        if record.is_expired(self._clock()):
            # read-time tombstoning
            self._records.pop(transaction_id, None)
            logger.debug("transaction_expired_on_read", transaction_id=transaction_id)
            return None
        return record

    async def get(self, transaction_id: str) -> Optional[TransactionRecord]:
        return self._live(transaction_id)

    async def add(self, record: TransactionRecord) -> bool:
        if self._live(record.transaction_id) is not None:
            return False
        self._records[record.transaction_id] = record.to_dict()
        return True

    async def save(self, record: TransactionRecord) -> None:
        self._records[record.transaction_id] = record.to_dict()

    async def delete(self, transaction_id: str) -> bool:
        return self._records.pop(transaction_id, None) is not None

    @asynccontextmanager
    async def lock(self, transaction_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(transaction_id, asyncio.Lock())
        self._lock_refs[transaction_id] = self._lock_refs.get(transaction_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_refs[transaction_id] -= 1
            if self._lock_refs[transaction_id] <= 0:
                self._lock_refs.pop(transaction_id, None)
                self._locks.pop(transaction_id, None)

    async def purge_expired(self) -> int:
        now = self._clock()
        expired = [
            tid for tid, snap in self._records.items()
            if TransactionRecord.from_dict(snap).is_expired(now)
        ]
        for tid in expired:
            self._records.pop(tid, None)
        if expired:
            logger.info("transaction_store_swept", purged=len(expired), remaining=len(self._records))
        return len(expired)

    def __len__(self) -> int:
        return len(self._records)
