import asyncio

import pytest

from tablebill.models import OrderStatus
from tablebill.services.aggregator import build_table_bill
from tablebill.services.billing import BillingStateMachine, NoopReason, PayOperation
from tablebill.services.store.base import OrderFilter, StoreError
from tests.factories import order_values

pytestmark = pytest.mark.anyio


async def unpaid(store, **conditions):
    return await store.query(OrderFilter(restaurant_id="r1", is_paid=False, **conditions))


async def seed_table_five(store):
    await store.insert(order_values(session_id="S1", total=120.0, status=OrderStatus.COMPLETED))
    await store.insert(order_values(session_id="S1", total=80.0, status=OrderStatus.COMPLETED))
    return await store.insert(order_values(session_id=None, total=50.0, status=OrderStatus.PENDING))


async def test_table_five_gated_pay(store, billing):
    loose = await seed_table_five(store)

    result = await billing.pay_table_gated("r1", "5")
    assert result.success is True
    assert result.noop is True
    assert result.reason == NoopReason.ORDERS_INCOMPLETE.value
    assert len(await unpaid(store, table_number="5")) == 3

    await store.update(loose.id, {"status": OrderStatus.COMPLETED})
    result = await billing.pay_table_gated("r1", "5")

    assert result.success is True
    assert result.noop is False
    assert result.updated == 3
    assert await unpaid(store, table_number="5") == []
    bill = build_table_bill("r1", "5", await unpaid(store, table_number="5"))
    assert bill.all_paid is True


async def test_pay_session_is_ungated(store, billing):
    await store.insert(
        order_values(table_number="8", session_id="S2", total=60.0, status=OrderStatus.PREPARING)
    )

    result = await billing.pay_session("r1", "S2")

    assert result.success is True
    assert result.operation == PayOperation.SESSION
    assert result.updated == 1
    (order,) = await store.query(OrderFilter(restaurant_id="r1", session_id="S2"))
    assert order.is_paid is True
    assert order.status == OrderStatus.PREPARING.value


async def test_pay_session_twice_is_idempotent(store, billing):
    await store.insert(order_values(session_id="S3", total=10.0))
    await store.insert(order_values(session_id="S3", total=15.0))

    first = await billing.pay_session("r1", "S3")
    second = await billing.pay_session("r1", "S3")

    assert first.updated == 2
    assert second.success is True
    assert second.noop is True
    assert second.reason == NoopReason.NOTHING_TO_PAY.value
    assert await unpaid(store, session_id="S3") == []


async def test_pay_session_leaves_other_sessions(store, billing):
    await store.insert(order_values(session_id="A", total=10.0))
    await store.insert(order_values(session_id="B", total=20.0))
    await store.insert(order_values(restaurant_id="r2", session_id="A", total=30.0))

    await billing.pay_session("r1", "A")

    assert [o.session_id for o in await unpaid(store)] == ["B"]
    other = await store.query(OrderFilter(restaurant_id="r2", is_paid=False))
    assert len(other) == 1


async def test_override_pays_regardless_of_status(store, billing):
    for status in (OrderStatus.PENDING, OrderStatus.PREPARING, OrderStatus.CANCELLED):
        await store.insert(order_values(table_number="3", session_id=None, status=status))

    result = await billing.pay_table_override("r1", "3", payment_method="cash")

    assert result.success is True
    assert result.updated == 3
    assert all(o.payment_method == "cash" for o in result.paid_orders)
    assert await unpaid(store, table_number="3") == []


async def test_gated_pay_on_empty_table_is_noop(billing):
    result = await billing.pay_table_gated("r1", "9")

    assert result.success is True
    assert result.noop is True
    assert result.reason == NoopReason.NOTHING_TO_PAY.value


async def test_cancelled_order_blocks_gated_pay(store, billing):
    await store.insert(order_values(status=OrderStatus.COMPLETED))
    await store.insert(order_values(status=OrderStatus.CANCELLED))

    assert await billing.can_pay_table("r1", "5") is False
    result = await billing.pay_table_gated("r1", "5")
    assert result.reason == NoopReason.ORDERS_INCOMPLETE.value


async def test_can_pay_table(store, billing):
    assert await billing.can_pay_table("r1", "5") is False
    await store.insert(order_values(status=OrderStatus.COMPLETED))
    assert await billing.can_pay_table("r1", "5") is True


async def test_concurrent_pay_never_double_settles(store):
    settled = []
    billing = BillingStateMachine(store, settlement_sink=settled.append)
    for _ in range(3):
        await store.insert(order_values(status=OrderStatus.COMPLETED))

    results = await asyncio.gather(
        billing.pay_table_gated("r1", "5"),
        billing.pay_table_gated("r1", "5"),
        billing.pay_table_override("r1", "5"),
    )

    assert all(r.success for r in results)
    assert sum(r.updated for r in results) == 3
    await billing.drain()
    assert sum(len(r.paid_orders) for r in settled) == 3


async def test_sink_failure_does_not_fail_payment(store):
    def broken_sink(result):
        raise RuntimeError("broker down")

    billing = BillingStateMachine(store, settlement_sink=broken_sink)
    await store.insert(order_values(session_id="S4"))

    result = await billing.pay_session("r1", "S4")

    assert result.success is True
    assert result.updated == 1
    await billing.drain()


async def test_store_failure_is_reported(billing, monkeypatch):
    async def unavailable(*args, **kwargs):
        raise StoreError("connection refused")

    monkeypatch.setattr(billing.store, "bulk_update", unavailable)

    result = await billing.pay_session("r1", "S1")

    assert result.success is False
    assert result.error_message == "connection refused"
    assert result.to_dict()["updated"] == 0


async def test_order_arriving_after_gate_check_stays_unpaid(store, billing, monkeypatch):
    await store.insert(order_values(session_id="S1", status=OrderStatus.COMPLETED))
    count = store.count
    late = []

    async def count_then_new_order(order_filter):
        blocking = await count(order_filter)
        late.append(await store.insert(order_values(session_id="S5", status=OrderStatus.PENDING)))
        return blocking

    monkeypatch.setattr(store, "count", count_then_new_order)

    result = await billing.pay_table_gated("r1", "5")

    assert result.updated == 1
    (still_open,) = await unpaid(store, table_number="5")
    assert still_open.id == late[0].id


async def test_slow_sink_does_not_hold_up_payment(store):
    release = asyncio.Event()
    settled = []

    async def stalled_sink(result):
        await release.wait()
        settled.append(result)

    billing = BillingStateMachine(store, settlement_sink=stalled_sink)
    await store.insert(order_values(session_id="S6"))

    result = await asyncio.wait_for(billing.pay_session("r1", "S6"), timeout=2)

    assert result.updated == 1
    assert settled == []
    release.set()
    await billing.drain()
    assert settled == [result]
