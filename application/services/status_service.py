"""Read-only transaction status lookup for polling machines."""
from __future__ import annotations

from application.dtos.payments import TransactionStatusView
from core.logging_config import get_logger
from domain.transaction import TransactionStatus, TransactionStore


logger = get_logger(__name__)


class StatusQueryService:
    def __init__(self, store: TransactionStore) -> None:
        self._store = store

    async def get(self, transaction_id: str) -> TransactionStatusView:
        """Missing and expired records both read as ``not_found``.

        Store failures propagate as TransactionStoreException.
        """
        record = await self._store.get(transaction_id)
        if record is None:
            logger.debug("status_not_found", transaction_id=transaction_id)
            return TransactionStatusView(transaction_id=transaction_id, status=TransactionStatus.NOT_FOUND.value)
        return TransactionStatusView(
            transaction_id=record.transaction_id,
            status=record.status.value,
            machine_id=record.machine_id,
        )
