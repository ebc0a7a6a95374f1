"""
Checkout use-case: open a hosted checkout session for a vending purchase and
record it as pending.

The transaction id is claimed in the store (insert-if-absent) before the
gateway is called, so two concurrent requests for the same id never both
open a session. A gateway failure releases the claim.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional
from urllib.parse import urlencode

from application.dtos.payments import (
    BackUrls,
    CheckoutCreated,
    CheckoutSessionRequest,
    CreateCheckout,
)
from application.ports.payment_gateway import PaymentGateway
from core.logging_config import get_logger
from domain.common.exceptions import (
    BusinessException,
    PaymentGatewayError,
    TransactionConflictException,
    TransactionStoreException,
)
from domain.transaction import LineItem, TransactionRecord, TransactionStore
from domain.transaction.entity import utc_now


logger = get_logger(__name__)

DEFAULT_TTL = timedelta(hours=6)


def build_back_urls(base_url: Optional[str], transaction_id: str) -> Optional[BackUrls]:
    """Feedback page URLs; ``{payment_id}``/``{status}`` are filled in by the gateway."""
    if not base_url:
        return None

    def _url(outcome: str) -> str:
        query = urlencode({"status": outcome, "vending_txn_id": transaction_id})
        return f"{base_url}/payment-feedback?{query}&mp_payment_id={{payment_id}}&mp_status={{status}}"

    return BackUrls(success=_url("success"), failure=_url("failure"), pending=_url("pending"))


class CheckoutService:
    def __init__(
        self,
        store: TransactionStore,
        gateway: PaymentGateway,
        *,
        ttl: timedelta = DEFAULT_TTL,
        notification_url: Optional[str] = None,
        feedback_base_url: Optional[str] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._ttl = ttl
        self._notification_url = notification_url
        self._feedback_base_url = feedback_base_url
        self._clock = clock

    async def create_checkout(self, cmd: CreateCheckout) -> CheckoutCreated:
        tid = cmd.transaction_id
        items = [LineItem(name=i.name, quantity=i.quantity, unit_price=i.unit_price) for i in cmd.items]
        record = TransactionRecord.new_pending(
            transaction_id=tid,
            machine_id=cmd.machine_id,
            items=items,
            ttl=self._ttl,
            now=self._clock(),
        )

        if not await self._store.add(record):
            logger.warning("checkout_conflict", transaction_id=tid, machine_id=cmd.machine_id)
            raise TransactionConflictException(tid)

        req = CheckoutSessionRequest(
            items=cmd.items,
            external_reference=tid,
            notification_url=self._notification_url,
            back_urls=build_back_urls(self._feedback_base_url, tid),
            metadata={"machine_id": cmd.machine_id, "transaction_id": tid},
            machine_id=cmd.machine_id,
        )
        logger.info(
            "checkout_create_request",
            transaction_id=tid,
            machine_id=cmd.machine_id,
            items=len(items),
            provider=self._gateway.provider,
        )
        try:
            session = await self._gateway.create_session(req)
        except BusinessException as exc:
            await self._release(tid)
            logger.error("checkout_gateway_failed", transaction_id=tid, error=exc.message, details=exc.details)
            raise
        except Exception as exc:
            await self._release(tid)
            logger.error("checkout_gateway_failed", transaction_id=tid, error=str(exc), exc_info=True)
            raise PaymentGatewayError(
                "Failed to create checkout session",
                details={"detail": str(exc) or type(exc).__name__},
            ) from exc

        # A webhook may already have touched the record; merge rather than overwrite
        async with self._store.lock(tid):
            current = await self._store.get(tid) or record
            current.attach_session(session.session_id, now=self._clock())
            await self._store.save(current)

        logger.info("checkout_created", transaction_id=tid, session_id=session.session_id)
        return CheckoutCreated(
            transaction_id=tid,
            session_id=session.session_id,
            pay_url=session.pay_url,
            sandbox_pay_url=session.sandbox_pay_url,
        )

    async def _release(self, transaction_id: str) -> None:
        try:
            await self._store.delete(transaction_id)
        except TransactionStoreException as exc:
            # The claim now lingers until TTL; the id stays unusable until then
            logger.error("checkout_claim_release_failed", transaction_id=transaction_id, error=exc.message)
