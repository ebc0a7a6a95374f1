import asyncio
from datetime import timedelta
from decimal import Decimal

import fakeredis
import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError

from application.ports.realtime import Envelope, machine_channel
from application.services.delivery_service import DeliveryService
from core.config import settings
from domain.common.exceptions import TransactionStoreException
from domain.transaction import LineItem, TransactionRecord, TransactionStatus
from domain.transaction.entity import utc_now
from domain.transaction.events import PaymentApproved
from infrastructure.external.cache import RedisClient
from infrastructure.realtime.brokers.redis import RedisRealtimeBroker
from infrastructure.realtime.connection_manager import DeliveryRegistry
from infrastructure.repositories.redis_transaction_store import RedisTransactionStore


TTL = timedelta(hours=6)
KEY = "test:txn:txn-001"


def _record(now, tid="txn-001", ttl=TTL) -> TransactionRecord:
    return TransactionRecord.new_pending(
        transaction_id=tid,
        machine_id="vm-7",
        items=[LineItem(name="Soda", quantity=1, unit_price=Decimal("15"))],
        ttl=ttl,
        now=now,
    )


@pytest.fixture
def server():
    return fakeredis.FakeServer()


@pytest_asyncio.fixture
async def raw(server):
    client = fakeredis.FakeAsyncRedis(server=server, decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def redis_client(raw) -> RedisClient:
    return RedisClient(raw, namespace="test")


@pytest.fixture
def redis_store(redis_client, clock) -> RedisTransactionStore:
    return RedisTransactionStore(redis_client, clock=clock)


@pytest.mark.asyncio
async def test_add_is_insert_if_absent(redis_store, clock):
    assert await redis_store.add(_record(clock())) is True
    assert await redis_store.add(_record(clock())) is False


@pytest.mark.asyncio
async def test_record_round_trips_through_json(redis_store, clock):
    await redis_store.add(_record(clock()))
    rec = await redis_store.get("txn-001")
    assert rec.machine_id == "vm-7"
    assert rec.status is TransactionStatus.PENDING
    assert rec.items[0].unit_price == Decimal("15")


@pytest.mark.asyncio
async def test_key_expiry_follows_expires_at(redis_store, raw, clock):
    await redis_store.add(_record(clock()))
    assert 6 * 3600 * 1000 - 5000 < await raw.pttl(KEY) <= 6 * 3600 * 1000


@pytest.mark.asyncio
async def test_save_keeps_original_expiry(redis_store, raw, clock):
    rec = _record(clock())
    await redis_store.add(rec)

    clock.advance(hours=1)
    rec.attach_session("pref-1", now=clock())
    await redis_store.save(rec)

    # Five hours left, not a fresh six
    assert 5 * 3600 * 1000 - 5000 < await raw.pttl(KEY) <= 5 * 3600 * 1000
    assert (await redis_store.get("txn-001")).gateway_session_id == "pref-1"


@pytest.mark.asyncio
async def test_expired_record_reads_as_missing(redis_store, clock):
    await redis_store.add(_record(clock()))
    clock.advance(hours=7)
    assert await redis_store.get("txn-001") is None


@pytest.mark.asyncio
async def test_short_ttl_is_not_rounded_up_to_a_second(redis_client):
    store = RedisTransactionStore(redis_client)
    assert await store.add(_record(utc_now(), ttl=timedelta(milliseconds=50))) is True

    await asyncio.sleep(0.15)

    assert await store.get("txn-001") is None
    assert await store.add(_record(utc_now(), ttl=timedelta(milliseconds=50))) is True


@pytest.mark.asyncio
async def test_already_expired_write_evicts_itself(redis_store, raw, clock):
    stale = _record(clock() - timedelta(hours=7))
    await redis_store.save(stale)
    await asyncio.sleep(0.05)
    assert await raw.exists(KEY) == 0


@pytest.mark.asyncio
async def test_lock_timeout_is_a_store_error(redis_store, redis_client, monkeypatch):
    monkeypatch.setattr(settings.redis, "lock_blocking_timeout", 0.1)

    async with redis_client.lock("txn:txn-001", timeout=5, blocking_timeout=1):
        with pytest.raises(TransactionStoreException) as exc:
            async with redis_store.lock("txn-001"):
                pass

    assert exc.value.details == {"operation": "lock", "transaction_id": "txn-001"}
    # released once the holder leaves
    async with redis_store.lock("txn-001"):
        pass


@pytest.mark.asyncio
async def test_outage_is_a_store_error(redis_store, server):
    server.connected = False
    with pytest.raises(TransactionStoreException) as exc:
        await redis_store.get("txn-001")
    assert exc.value.details["operation"] == "get"


@pytest.mark.asyncio
async def test_client_namespaces_keys_and_decodes_json(redis_client, raw):
    assert await redis_client.set("k", {"a": 1}, ttl_ms=10_000) is True
    assert await raw.get("test:k") == '{"a": 1}'
    assert await redis_client.get("k") == {"a": 1}
    assert await redis_client.set("k", {"a": 2}, nx=True) is False
    assert await redis_client.delete("k") == 1
    assert await redis_client.get("k", default="none") == "none"


@pytest.mark.asyncio
async def test_broker_fans_out_published_envelopes(redis_client):
    broker = RedisRealtimeBroker(redis_client)
    received = []

    async def handler(envelope: Envelope):
        received.append(envelope)

    await broker.subscribe(handler)
    try:
        # Wait for the pattern subscription; non-envelope payloads are skipped
        for _ in range(100):
            if await redis_client.publish(machine_channel("warmup"), "ping") > 0:
                break
            await asyncio.sleep(0.01)

        await broker.publish(
            machine_channel("vm-7"),
            Envelope(type="payment_approved", machine_id="vm-7", data={"transaction_id": "txn-001"}),
        )
        for _ in range(100):
            if received:
                break
            await asyncio.sleep(0.01)
    finally:
        await broker.aclose()

    assert len(received) == 1
    assert received[0].machine_id == "vm-7"
    assert received[0].data == {"transaction_id": "txn-001"}


@pytest.mark.asyncio
async def test_broker_publish_failure_reports_undelivered(redis_client, server):
    broker = RedisRealtimeBroker(redis_client)
    delivery = DeliveryService(broker=broker, registry=DeliveryRegistry(send_timeout=1.0))
    server.connected = False

    with pytest.raises(RedisConnectionError):
        await broker.publish(machine_channel("vm-7"), Envelope(type="payment_approved", machine_id="vm-7"))
    assert await delivery.notify_approved(PaymentApproved(transaction_id="txn-001", machine_id="vm-7")) is False
