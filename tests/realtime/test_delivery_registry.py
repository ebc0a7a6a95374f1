import asyncio

import pytest
import pytest_asyncio

from application.ports.realtime import Envelope, machine_channel
from application.services.delivery_service import SUPERSEDED_CLOSE_CODE, DeliveryService
from domain.transaction.events import PaymentApproved
from infrastructure.realtime.brokers import InMemoryRealtimeBroker
from infrastructure.realtime.connection_manager import DeliveryRegistry


@pytest.fixture
def registry() -> DeliveryRegistry:
    return DeliveryRegistry(send_timeout=1)


@pytest_asyncio.fixture
async def delivery(registry):
    svc = DeliveryService(broker=InMemoryRealtimeBroker(), registry=registry)
    await svc.start()
    yield svc
    await svc.aclose()


def _approved(machine_id="vm-7", tid="txn-001") -> PaymentApproved:
    return PaymentApproved(transaction_id=tid, machine_id=machine_id, gateway_payment_id="P1")


@pytest.mark.asyncio
async def test_identify_registers_and_acknowledges(registry, make_channel):
    ch = make_channel()
    superseded = await registry.identify("vm-7", ch)

    assert superseded is None
    assert await registry.get("vm-7") is ch
    assert ch.sent[0]["type"] == "connection_ack"
    assert ch.sent[0]["machine_id"] == "vm-7"
    assert ch.sent[0]["status"] == "success"
    assert "ts" in ch.sent[0]


@pytest.mark.asyncio
async def test_reidentify_same_channel_is_not_a_supersede(registry, make_channel):
    ch = make_channel()
    await registry.identify("vm-7", ch)
    assert await registry.identify("vm-7", ch) is None
    assert await registry.machine_ids() == ["vm-7"]


@pytest.mark.asyncio
async def test_stale_remove_keeps_newer_channel(registry, make_channel):
    old, new = make_channel(), make_channel()
    await registry.identify("vm-7", old)
    assert await registry.identify("vm-7", new) is old

    assert await registry.remove("vm-7", old) is False
    assert await registry.get("vm-7") is new
    assert await registry.remove("vm-7", new) is True
    assert await registry.get("vm-7") is None


@pytest.mark.asyncio
async def test_push_without_channel_returns_false(registry):
    assert await registry.push("vm-7", Envelope(type="payment_approved", machine_id="vm-7")) is False


@pytest.mark.asyncio
async def test_push_to_closed_channel_deregisters(registry, make_channel):
    ch = make_channel()
    await registry.identify("vm-7", ch)
    await ch.close()

    assert await registry.push("vm-7", Envelope(type="payment_approved", machine_id="vm-7")) is False
    assert await registry.get("vm-7") is None


@pytest.mark.asyncio
async def test_failed_send_deregisters(registry, make_channel):
    ch = make_channel(fail_send=True)
    await registry.identify("vm-7", ch)

    assert await registry.push("vm-7", Envelope(type="payment_approved", machine_id="vm-7")) is False
    assert await registry.get("vm-7") is None


@pytest.mark.asyncio
async def test_slow_send_times_out(make_channel):
    registry = DeliveryRegistry(send_timeout=0.01)
    ch = make_channel()
    await registry.identify("vm-7", ch)

    async def hang(data):
        await asyncio.sleep(1)

    ch.send_json = hang
    assert await registry.push("vm-7", Envelope(type="payment_approved", machine_id="vm-7")) is False


@pytest.mark.asyncio
async def test_approval_reaches_identified_machine(delivery, make_channel):
    ch = make_channel()
    await delivery.identify("vm-7", ch)

    assert await delivery.notify_approved(_approved()) is True

    frame = ch.sent[-1]
    assert frame["type"] == "payment_approved"
    assert frame["transaction_id"] == "txn-001"
    assert frame["vending_transaction_id"] == "txn-001"
    assert frame["status"] == "approved"
    assert frame["gateway_payment_id"] == "P1"
    assert frame["ts"].endswith("Z")


@pytest.mark.asyncio
async def test_approval_for_other_machine_is_not_delivered(delivery, make_channel):
    ch = make_channel()
    await delivery.identify("vm-7", ch)

    await delivery.notify_approved(_approved(machine_id="vm-8"))
    assert ch.types() == ["connection_ack"]


@pytest.mark.asyncio
async def test_approval_without_machine_is_skipped(delivery):
    assert await delivery.notify_approved(_approved(machine_id=None)) is False


@pytest.mark.asyncio
async def test_publish_failure_is_reported_not_raised(registry):
    class _DownBroker(InMemoryRealtimeBroker):
        async def publish(self, channel, envelope):
            raise ConnectionError("redis gone")

    svc = DeliveryService(broker=_DownBroker(), registry=registry)
    assert await svc.notify_approved(_approved()) is False


@pytest.mark.asyncio
async def test_published_channel_is_per_machine(registry):
    seen = []

    class _RecordingBroker(InMemoryRealtimeBroker):
        async def publish(self, channel, envelope):
            seen.append(channel)

    svc = DeliveryService(broker=_RecordingBroker(), registry=registry)
    await svc.notify_approved(_approved())
    assert seen == [machine_channel("vm-7")] == ["rt:machine:vm-7"]


@pytest.mark.asyncio
async def test_supersede_closes_previous_connection(delivery, make_channel):
    old, new = make_channel(), make_channel()
    await delivery.identify("vm-7", old)
    await delivery.identify("vm-7", new)

    assert old.closed_code == SUPERSEDED_CLOSE_CODE
    assert new.closed_code is None

    # the displaced socket's cleanup must not unregister the new one
    await delivery.disconnect("vm-7", old)
    await delivery.notify_approved(_approved())
    assert new.types()[-1] == "payment_approved"
    assert "payment_approved" not in old.types()


@pytest.mark.asyncio
async def test_identify_message_binds_connection(delivery, make_channel):
    ch = make_channel()
    machine_id = await delivery.handle_message(None, ch, {"type": "identify", "machine_id": "vm-7"})

    assert machine_id == "vm-7"
    assert ch.sent[-1]["type"] == "identification_ack"
    assert await delivery.registry.get("vm-7") is ch


@pytest.mark.asyncio
async def test_identify_message_requires_machine_id(delivery, make_channel):
    ch = make_channel()
    assert await delivery.handle_message(None, ch, {"type": "identify"}) is None
    assert ch.sent[-1]["type"] == "error"
    assert ch.sent[-1]["message"] == "machine_id is required"


@pytest.mark.asyncio
async def test_second_identify_on_same_connection_is_rejected(delivery, make_channel):
    ch = make_channel()
    await delivery.identify("vm-7", ch)

    machine_id = await delivery.handle_message("vm-7", ch, {"type": "identify", "machine_id": "vm-8"})

    assert machine_id == "vm-7"
    assert ch.sent[-1]["message"] == "Connection already identified"
    assert await delivery.registry.get("vm-8") is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "msg_type, reply",
    [("ping", "pong"), ("ping_from_client", "pong_to_client")],
)
async def test_client_pings_are_answered(delivery, make_channel, msg_type, reply):
    ch = make_channel()
    await delivery.handle_message("vm-7", ch, {"type": msg_type})
    assert ch.types() == [reply]


@pytest.mark.asyncio
@pytest.mark.parametrize("msg", [{"type": "pong"}, {"type": "dance"}, ["not", "an", "object"]])
async def test_other_messages_are_ignored(delivery, make_channel, msg):
    ch = make_channel()
    assert await delivery.handle_message("vm-7", ch, msg) == "vm-7"
    assert ch.sent == []
