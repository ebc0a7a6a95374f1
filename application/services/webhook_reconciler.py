"""
Webhook reconciliation.

Gateway notifications are at-least-once, unordered and may precede the
checkout's own store write. A notification is only a poke: the payment is
re-fetched from the gateway, correlated by its external reference (the
caller's transaction id) and merged into the stored record under a
per-transaction lock. The dispense push is claimed inside that lock and
sent after the record is saved, so concurrent redeliveries fire it at most
once.

``handle`` never raises; every path ends in an acknowledgement.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

from application.dtos.payments import (
    GatewayPayment,
    WebhookAck,
    WebhookNotification,
    WebhookOutcome,
)
from application.ports.payment_gateway import PaymentGateway
from application.ports.realtime import DispenseNotifier
from core.logging_config import get_logger
from domain.common.exceptions import (
    BusinessException,
    CorrelationException,
    DomainValidationException,
    TransactionStoreException,
)
from domain.transaction import (
    LineItem,
    MergeOutcome,
    TransactionRecord,
    TransactionStatus,
    TransactionStore,
)
from domain.transaction.entity import utc_now
from domain.transaction.events import PaymentApproved, TransactionStateChanged


logger = get_logger(__name__)

_MERGE_TO_OUTCOME = {
    MergeOutcome.UPDATED: WebhookOutcome.UPDATED,
    MergeOutcome.UNCHANGED: WebhookOutcome.UNCHANGED,
    MergeOutcome.IGNORED_STALE: WebhookOutcome.STALE,
    MergeOutcome.OVERWRITTEN: WebhookOutcome.OVERWRITTEN,
}


def _items_from_payment(payment: GatewayPayment) -> list[LineItem]:
    raw = payment.metadata.get("items") if isinstance(payment.metadata.get("items"), list) else payment.items
    items: list[LineItem] = []
    for entry in raw or []:
        if not isinstance(entry, dict):
            continue
        try:
            items.append(LineItem.from_dict(entry))
        except DomainValidationException as exc:
            logger.warning("webhook_item_skipped", gateway_payment_id=payment.id, error=exc.message)
    return items


class WebhookReconciler:
    def __init__(
        self,
        store: TransactionStore,
        gateway: PaymentGateway,
        notifier: Optional[DispenseNotifier] = None,
        *,
        ttl: timedelta = timedelta(hours=6),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._notifier = notifier
        self._ttl = ttl
        self._clock = clock

    async def handle(self, notification: WebhookNotification) -> WebhookAck:
        if not notification.is_payment:
            logger.info(
                "webhook_ignored",
                kind=notification.kind,
                gateway_payment_id=notification.gateway_payment_id,
            )
            return WebhookAck(outcome=WebhookOutcome.IGNORED)
        try:
            return await self._reconcile(notification.gateway_payment_id)
        except Exception as exc:
            logger.error(
                "webhook_processing_failed",
                gateway_payment_id=notification.gateway_payment_id,
                error=str(exc),
                exc_info=True,
            )
            return WebhookAck(outcome=WebhookOutcome.FAILED)

    async def _reconcile(self, gateway_payment_id: str) -> WebhookAck:
        payment = await self._fetch(gateway_payment_id)
        if payment is None:
            return WebhookAck(outcome=WebhookOutcome.UNRESOLVED)

        try:
            tid = self._correlate(payment)
        except CorrelationException as exc:
            logger.error("webhook_uncorrelated", error=exc.message, **exc.details)
            return WebhookAck(outcome=WebhookOutcome.UNCORRELATED)

        status = TransactionStatus(payment.status)
        try:
            outcome, record, previous, dispense = await self._merge(tid, payment, status)
        except TransactionStoreException as exc:
            logger.error(
                "webhook_store_failed",
                transaction_id=tid,
                gateway_payment_id=payment.id,
                error=exc.message,
                operation=(exc.details or {}).get("operation"),
            )
            return WebhookAck(outcome=WebhookOutcome.STORE_ERROR, transaction_id=tid, status=status.value)

        if record is None:
            return WebhookAck(outcome=outcome, transaction_id=tid, status=status.value)

        if outcome in (WebhookOutcome.CREATED, WebhookOutcome.UPDATED, WebhookOutcome.OVERWRITTEN):
            event = TransactionStateChanged(
                transaction_id=tid,
                machine_id=record.machine_id,
                status=record.status,
                previous_status=previous,
                gateway_payment_id=payment.id,
            )
            logger.info(
                "transaction_state_changed",
                transaction_id=tid,
                machine_id=event.machine_id,
                status=event.status.value,
                previous_status=event.previous_status.value if event.previous_status else None,
                gateway_payment_id=event.gateway_payment_id,
                outcome=outcome.value,
                event_id=event.event_id,
            )

        notified = False
        if dispense:
            notified = await self._notify(record, payment.id)
        return WebhookAck(
            outcome=outcome,
            transaction_id=tid,
            status=record.status.value,
            dispense_notified=notified,
        )

    async def _fetch(self, gateway_payment_id: str) -> Optional[GatewayPayment]:
        try:
            payment = await self._gateway.get_payment(gateway_payment_id)
        except BusinessException as exc:
            logger.error(
                "webhook_payment_unresolved",
                gateway_payment_id=gateway_payment_id,
                error=exc.message,
                error_type=exc.error_type,
                details=exc.details,
            )
            return None
        if payment is None:
            logger.warning("webhook_payment_unresolved", gateway_payment_id=gateway_payment_id, error="payment not found")
            return None
        logger.info(
            "webhook_payment_fetched",
            gateway_payment_id=payment.id,
            status=payment.status,
            raw_status=payment.raw_status,
            external_reference=payment.external_reference,
        )
        return payment

    @staticmethod
    def _correlate(payment: GatewayPayment) -> str:
        ref = (payment.external_reference or "").strip()
        if not ref:
            # Preference metadata carries the id too, for payments created by us
            ref = str(payment.metadata.get("transaction_id") or "").strip()
        if not ref:
            raise CorrelationException("Payment has no external reference", gateway_payment_id=payment.id)
        return ref

    async def _merge(
        self,
        tid: str,
        payment: GatewayPayment,
        status: TransactionStatus,
    ) -> tuple[WebhookOutcome, Optional[TransactionRecord], Optional[TransactionStatus], bool]:
        async with self._store.lock(tid):
            now = self._clock()
            record = await self._store.get(tid)
            previous: Optional[TransactionStatus] = None

            if record is None:
                if not status.is_terminal:
                    logger.info(
                        "webhook_dropped_missing_record",
                        transaction_id=tid,
                        gateway_payment_id=payment.id,
                        status=status.value,
                    )
                    return WebhookOutcome.DROPPED, None, None, False
                record = TransactionRecord.synthesize(
                    transaction_id=tid,
                    status=status,
                    gateway_payment_id=payment.id,
                    machine_id=payment.machine_id,
                    items=_items_from_payment(payment),
                    gateway_session_id=payment.preference_id,
                    status_detail=payment.status_detail,
                    ttl=self._ttl,
                    now=now,
                )
                logger.warning(
                    "webhook_record_synthesized",
                    transaction_id=tid,
                    gateway_payment_id=payment.id,
                    status=status.value,
                    machine_id=record.machine_id,
                )
                outcome = WebhookOutcome.CREATED
            else:
                previous = record.status
                if (
                    payment.preference_id
                    and record.gateway_session_id
                    and payment.preference_id != record.gateway_session_id
                ):
                    logger.warning(
                        "webhook_session_mismatch",
                        transaction_id=tid,
                        stored_session_id=record.gateway_session_id,
                        payment_session_id=payment.preference_id,
                        gateway_payment_id=payment.id,
                    )
                merged = record.apply_payment(
                    status=status,
                    gateway_payment_id=payment.id,
                    status_detail=payment.status_detail,
                    now=now,
                )
                outcome = _MERGE_TO_OUTCOME[merged]
                if merged is MergeOutcome.OVERWRITTEN:
                    logger.warning(
                        "webhook_status_overwritten",
                        transaction_id=tid,
                        previous_status=previous.value,
                        status=status.value,
                        gateway_payment_id=payment.id,
                    )
                elif merged is MergeOutcome.IGNORED_STALE:
                    logger.info(
                        "webhook_stale_status_ignored",
                        transaction_id=tid,
                        stored_status=previous.value,
                        status=status.value,
                    )
                if merged.changed and not record.machine_id and payment.machine_id:
                    record.machine_id = payment.machine_id

            dispense = record.claim_dispense(now)
            if outcome in (WebhookOutcome.CREATED, WebhookOutcome.UPDATED, WebhookOutcome.OVERWRITTEN) or dispense:
                await self._store.save(record)
            return outcome, record, previous, dispense

    async def _notify(self, record: TransactionRecord, gateway_payment_id: str) -> bool:
        if self._notifier is None:
            logger.info("dispense_notifier_missing", transaction_id=record.transaction_id)
            return False
        event = PaymentApproved(
            transaction_id=record.transaction_id,
            machine_id=record.machine_id,
            gateway_payment_id=gateway_payment_id,
        )
        try:
            delivered = await self._notifier.notify_approved(event)
        except Exception as exc:
            logger.error("dispense_notify_failed", transaction_id=record.transaction_id, error=str(exc))
            return False
        logger.info(
            "dispense_notified",
            transaction_id=record.transaction_id,
            machine_id=record.machine_id,
            delivered=delivered,
        )
        return delivered
