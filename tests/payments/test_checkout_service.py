import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from pydantic import ValidationError

from application.dtos.payments import CreateCheckout
from application.services.checkout_service import CheckoutService, build_back_urls
from domain.common.exceptions import (
    PaymentGatewayError,
    TransactionConflictException,
    TransactionStoreException,
)
from domain.transaction import TransactionStatus
from infrastructure.repositories import InMemoryTransactionStore


def _cmd(tid: str = "txn-001", **overrides) -> CreateCheckout:
    payload = {
        "machine_id": "vm-7",
        "items": [{"name": "Soda", "quantity": 1, "price": 15.0}],
        "transaction_id": tid,
    }
    payload.update(overrides)
    return CreateCheckout.model_validate(payload)


def _service(store, gateway, clock) -> CheckoutService:
    return CheckoutService(
        store,
        gateway,
        ttl=timedelta(hours=6),
        notification_url="https://relay.test/api/v1/payments/webhook",
        feedback_base_url="https://relay.test",
        clock=clock,
    )


@pytest.mark.asyncio
async def test_create_writes_pending_record_with_session(store, gateway, clock):
    created = await _service(store, gateway, clock).create_checkout(_cmd())

    assert created.transaction_id == "txn-001"
    assert created.session_id == "pref-1"
    assert created.pay_url == "https://pay.test/checkout/1"
    assert created.sandbox_pay_url == "https://sandbox.pay.test/checkout/1"

    record = await store.get("txn-001")
    assert record.status is TransactionStatus.PENDING
    assert record.machine_id == "vm-7"
    assert record.gateway_session_id == "pref-1"
    assert record.items[0].unit_price == Decimal("15.0")
    assert record.expires_at == clock() + timedelta(hours=6)


@pytest.mark.asyncio
async def test_session_request_carries_reference_callback_and_metadata(store, gateway, clock):
    await _service(store, gateway, clock).create_checkout(_cmd())

    req = gateway.sessions[0]
    assert req.external_reference == "txn-001"
    assert req.notification_url == "https://relay.test/api/v1/payments/webhook"
    assert req.metadata == {"machine_id": "vm-7", "transaction_id": "txn-001"}
    assert req.back_urls.success.startswith("https://relay.test/payment-feedback?status=success&vending_txn_id=txn-001")
    assert req.back_urls.success.endswith("&mp_payment_id={payment_id}&mp_status={status}")


def test_back_urls_absent_without_base():
    assert build_back_urls(None, "txn-001") is None


def test_request_accepts_legacy_field_names():
    cmd = CreateCheckout.model_validate(
        {
            "machine_id": "vm-7",
            "vending_transaction_id": "txn-legacy",
            "items": [{"name": "Soda", "quantity": 2, "unit_price": "9.50"}],
        }
    )
    assert cmd.transaction_id == "txn-legacy"
    assert cmd.items[0].unit_price == Decimal("9.50")


@pytest.mark.parametrize(
    "overrides",
    [
        {"machine_id": ""},
        {"machine_id": "   "},
        {"items": []},
        {"items": [{"name": "Soda", "quantity": 0, "price": 1}]},
        {"items": [{"name": "Soda", "quantity": 1, "price": -1}]},
        {"transaction_id": ""},
    ],
)
def test_invalid_requests_are_rejected(overrides):
    with pytest.raises(ValidationError):
        _cmd(**overrides)


@pytest.mark.asyncio
async def test_gateway_failure_leaves_no_record(store, gateway, clock):
    gateway.create_error = PaymentGatewayError("Failed to create checkout session", details={"detail": "invalid unit_price"})

    with pytest.raises(PaymentGatewayError) as exc:
        await _service(store, gateway, clock).create_checkout(_cmd())

    assert exc.value.details["detail"] == "invalid unit_price"
    assert await store.get("txn-001") is None


@pytest.mark.asyncio
async def test_unexpected_gateway_error_is_wrapped(store, gateway, clock):
    gateway.create_error = RuntimeError("socket exploded")

    with pytest.raises(PaymentGatewayError) as exc:
        await _service(store, gateway, clock).create_checkout(_cmd())

    assert exc.value.details["detail"] == "socket exploded"
    assert await store.get("txn-001") is None


@pytest.mark.asyncio
async def test_id_reusable_after_gateway_failure(store, gateway, clock):
    svc = _service(store, gateway, clock)
    gateway.create_error = PaymentGatewayError("boom")
    with pytest.raises(PaymentGatewayError):
        await svc.create_checkout(_cmd())

    gateway.create_error = None
    created = await svc.create_checkout(_cmd())
    assert created.transaction_id == "txn-001"


@pytest.mark.asyncio
async def test_existing_live_record_is_a_conflict(store, gateway, clock):
    svc = _service(store, gateway, clock)
    await svc.create_checkout(_cmd())

    with pytest.raises(TransactionConflictException):
        await svc.create_checkout(_cmd())
    assert len(gateway.sessions) == 1


@pytest.mark.asyncio
async def test_expired_id_can_be_reused(store, gateway, clock):
    svc = _service(store, gateway, clock)
    await svc.create_checkout(_cmd())
    clock.advance(hours=6, seconds=1)

    created = await svc.create_checkout(_cmd())
    assert created.session_id == "pref-2"


@pytest.mark.asyncio
async def test_concurrent_creates_open_a_single_session(store, gateway, clock):
    svc = _service(store, gateway, clock)
    gateway.create_gate = asyncio.Event()

    first = asyncio.create_task(svc.create_checkout(_cmd()))
    second = asyncio.create_task(svc.create_checkout(_cmd()))
    await asyncio.sleep(0.01)
    gateway.create_gate.set()
    results = await asyncio.gather(first, second, return_exceptions=True)

    successes = [r for r in results if not isinstance(r, Exception)]
    conflicts = [r for r in results if isinstance(r, TransactionConflictException)]
    assert len(successes) == 1 and len(conflicts) == 1
    assert len(gateway.sessions) == 1
    assert (await store.get("txn-001")).gateway_session_id == successes[0].session_id


@pytest.mark.asyncio
async def test_webhook_landing_during_creation_is_kept(store, gateway, clock):
    async def approve_meanwhile(req):
        async with store.lock(req.external_reference):
            record = await store.get(req.external_reference)
            record.apply_payment(status=TransactionStatus.APPROVED, gateway_payment_id="P1", now=clock())
            await store.save(record)

    gateway.on_create = approve_meanwhile
    await _service(store, gateway, clock).create_checkout(_cmd())

    record = await store.get("txn-001")
    assert record.status is TransactionStatus.APPROVED
    assert record.gateway_session_id == "pref-1"


class _BrokenStore(InMemoryTransactionStore):
    def __init__(self, *, fail_on: str, **kwargs):
        super().__init__(**kwargs)
        self.fail_on = fail_on

    async def add(self, record):
        if self.fail_on == "add":
            raise TransactionStoreException("connection refused", operation="add", transaction_id=record.transaction_id)
        return await super().add(record)

    async def save(self, record):
        if self.fail_on == "save":
            raise TransactionStoreException("connection reset", operation="save", transaction_id=record.transaction_id)
        return await super().save(record)


@pytest.mark.asyncio
async def test_store_outage_before_gateway_call(gateway, clock):
    store = _BrokenStore(fail_on="add", clock=clock)
    with pytest.raises(TransactionStoreException):
        await _service(store, gateway, clock).create_checkout(_cmd())
    assert gateway.sessions == []


@pytest.mark.asyncio
async def test_store_failure_after_gateway_success_is_fatal(gateway, clock):
    store = _BrokenStore(fail_on="save", clock=clock)
    with pytest.raises(TransactionStoreException):
        await _service(store, gateway, clock).create_checkout(_cmd())
    assert len(gateway.sessions) == 1
