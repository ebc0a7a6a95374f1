import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from domain.transaction import LineItem, TransactionRecord


TTL = timedelta(hours=6)


def _record(clock, tid="txn-001") -> TransactionRecord:
    return TransactionRecord.new_pending(
        transaction_id=tid,
        machine_id="vm-7",
        items=[LineItem(name="Soda", quantity=1, unit_price=Decimal("15"))],
        ttl=TTL,
        now=clock(),
    )


@pytest.mark.asyncio
async def test_record_visible_until_ttl_then_not_found(store, clock):
    await store.add(_record(clock))

    clock.advance(hours=6, seconds=-1)
    assert (await store.get("txn-001")) is not None

    clock.advance(seconds=2)
    assert await store.get("txn-001") is None
    # read-time tombstoning dropped the entry
    assert len(store) == 0


@pytest.mark.asyncio
async def test_add_is_insert_if_absent(store, clock):
    assert await store.add(_record(clock)) is True
    assert await store.add(_record(clock)) is False


@pytest.mark.asyncio
async def test_add_succeeds_again_after_expiry(store, clock):
    await store.add(_record(clock))
    clock.advance(hours=7)
    assert await store.add(_record(clock)) is True


@pytest.mark.asyncio
async def test_returned_records_are_copies(store, clock):
    await store.add(_record(clock))
    rec = await store.get("txn-001")
    rec.machine_id = "tampered"
    assert (await store.get("txn-001")).machine_id == "vm-7"


@pytest.mark.asyncio
async def test_purge_expired_removes_only_expired(store, clock):
    await store.add(_record(clock, "old"))
    clock.advance(hours=5)
    await store.add(_record(clock, "new"))
    clock.advance(hours=2)
    assert await store.purge_expired() == 1
    assert await store.get("new") is not None


@pytest.mark.asyncio
async def test_lock_serializes_read_merge_write(store, clock):
    await store.add(_record(clock))
    order = []

    async def writer(tag: str):
        async with store.lock("txn-001"):
            order.append(f"{tag}-in")
            await asyncio.sleep(0.01)
            order.append(f"{tag}-out")

    await asyncio.gather(writer("a"), writer("b"))
    assert order in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])
    # idle lock entries are released
    assert store._locks == {}
