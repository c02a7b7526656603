from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from tablebill.models import OrderStatus, OrderType
from tablebill.schemas import OrderCreate, OrderLineCreate, OrderUpdate, RestaurantStats
from tablebill.services.orders import (
    OrderLockedError,
    OrderNotFoundError,
    calculate_order_totals,
)
from tablebill.services.store.base import StoreError

pytestmark = pytest.mark.anyio

KRA_PAO = {
    "menu_item_id": "m1",
    "name": "Pad Kra Pao",
    "quantity": 2,
    "price": {"price_type": "chicken_pork", "amount": 80.0},
    "selected_addons": [{"name": "Fried egg", "price": 10.0}],
}
TOM_YUM = {
    "menu_item_id": "m2",
    "name": "Tom Yum",
    "quantity": 1,
    "price": {"price_type": "seafood", "amount": 120.0},
    "selected_size": {"name": "Large", "price": 150.0},
}


def placement(**fields) -> OrderCreate:
    data = {"table_number": "5", "device_id": "phone-a", "items": [KRA_PAO, TOM_YUM]}
    data.update(fields)
    return OrderCreate(**data)


async def test_calculate_order_totals():
    lines = [OrderLineCreate(**KRA_PAO), OrderLineCreate(**TOM_YUM)]

    totals = calculate_order_totals(lines, tax_rate=0.05, discount=6.5)

    assert [item["item_total"] for item in totals["items"]] == [180.0, 150.0]
    assert totals["items"][1]["price"]["price_type"] == "seafood"
    assert totals["subtotal"] == 330.0
    assert totals["tax"] == 16.5
    assert totals["total"] == 340.0


async def test_price_variant_is_tagged():
    with pytest.raises(ValidationError):
        OrderLineCreate(**{**KRA_PAO, "price": {"price_type": "beef", "amount": 1.0}})


async def test_placement_validation():
    with pytest.raises(ValidationError):
        placement(table_number=None)
    with pytest.raises(ValidationError):
        placement(device_id=None)
    with pytest.raises(ValidationError):
        placement(order_type=OrderType.PHONE, session_id="S1", device_id=None)


async def test_qr_order_gets_device_session(order_service, resolver):
    order = await order_service.place_order("r1", placement())

    assert order.session_id == await resolver.peek("phone-a", "5")
    assert order.status == OrderStatus.PENDING.value
    assert order.is_paid is False
    assert order.total == 346.5
    assert order.order_number.endswith(f"-{order.id:04d}")


async def test_same_device_same_session(order_service):
    first = await order_service.place_order("r1", placement())
    second = await order_service.place_order("r1", placement())

    assert first.session_id == second.session_id


async def test_explicit_session_wins(order_service):
    order = await order_service.place_order("r1", placement(session_id="S9"))

    assert order.session_id == "S9"


async def test_counter_order_has_no_session(order_service):
    order = await order_service.place_order(
        "r1", placement(order_type=OrderType.COUNTER, table_number=None, device_id=None)
    )

    assert order.session_id is None
    assert order.table_number is None
    assert order.order_type == OrderType.COUNTER.value


async def test_customer_takeaway_order_keeps_device_session(order_service, resolver, billing):
    takeaway = placement(order_type=OrderType.COUNTER, table_number=None)

    first = await order_service.place_order("r1", takeaway)
    second = await order_service.place_order("r1", takeaway)
    seated = await order_service.place_order("r1", placement())

    assert first.session_id == await resolver.peek("phone-a", None)
    assert second.session_id == first.session_id
    assert seated.session_id != first.session_id
    assert first.table_number is None

    result = await billing.pay_session("r1", first.session_id)
    assert result.updated == 2


async def test_takeaway_order_with_resolved_token(order_service):
    order = await order_service.place_order(
        "r1",
        placement(order_type=OrderType.COUNTER, table_number=None, device_id=None, session_id="S-take"),
    )

    assert order.session_id == "S-take"


async def test_update_status_stamps_time(order_service):
    order = await order_service.place_order("r1", placement())

    accepted = await order_service.update_status(order.id, OrderStatus.ACCEPTED)
    completed = await order_service.update_status(order.id, OrderStatus.COMPLETED)

    assert accepted.accepted_at is not None
    assert completed.status == OrderStatus.COMPLETED.value
    assert completed.completed_at is not None
    assert completed.accepted_at == accepted.accepted_at


async def test_paid_order_is_locked(order_service, billing):
    order = await order_service.place_order("r1", placement(session_id="S1"))
    await billing.pay_session("r1", "S1")

    with pytest.raises(OrderLockedError):
        await order_service.update_status(order.id, OrderStatus.CANCELLED)
    with pytest.raises(OrderLockedError):
        await order_service.update_fields(order.id, OrderUpdate(discount=5.0))


async def test_unknown_order(order_service):
    with pytest.raises(OrderNotFoundError):
        await order_service.update_status(999, OrderStatus.READY)
    with pytest.raises(OrderNotFoundError):
        await order_service.get_order(999)
    with pytest.raises(OrderNotFoundError):
        await order_service.delete_order(999)


async def test_update_fields_recomputes_totals(order_service):
    order = await order_service.place_order("r1", placement())

    discounted = await order_service.update_fields(order.id, OrderUpdate(discount=16.5))
    assert discounted.total == 330.0
    assert discounted.subtotal == 330.0

    fewer = await order_service.update_fields(order.id, OrderUpdate(items=[TOM_YUM]))
    assert fewer.subtotal == 150.0
    assert fewer.tax == 7.5
    assert fewer.discount == 16.5
    assert fewer.total == 141.0

    noted = await order_service.update_fields(order.id, OrderUpdate(internal_notes="no chili"))
    assert noted.internal_notes == "no chili"
    assert noted.total == 141.0


async def test_delete_order(order_service):
    order = await order_service.place_order("r1", placement())

    await order_service.delete_order(order.id)

    with pytest.raises(OrderNotFoundError):
        await order_service.get_order(order.id)


async def test_pending_queue_includes_accepted(order_service):
    first = await order_service.place_order("r1", placement())
    second = await order_service.place_order("r1", placement())
    third = await order_service.place_order("r1", placement())
    await order_service.update_status(first.id, OrderStatus.ACCEPTED)
    await order_service.update_status(third.id, OrderStatus.READY)

    queue = await order_service.list_orders("r1", status="pending")
    ready = await order_service.list_orders("r1", status="ready")

    assert [o.id for o in queue] == [first.id, second.id]
    assert [o.id for o in ready] == [third.id]
    assert len(await order_service.list_orders("r1")) == 3


async def test_start_of_business_day(order_service):
    evening_utc = datetime(2024, 5, 1, 20, 0, tzinfo=timezone.utc)

    start = order_service.start_of_business_day(evening_utc)

    # 03:00 on May 2 in Bangkok, so the day started at 17:00 UTC on May 1
    assert start == datetime(2024, 5, 1, 17, 0, tzinfo=timezone.utc)


async def test_restaurant_stats(order_service):
    first = await order_service.place_order("r1", placement())
    second = await order_service.place_order("r1", placement())
    await order_service.place_order("r2", placement())
    await order_service.update_status(first.id, OrderStatus.COMPLETED)

    stats = await order_service.restaurant_stats("r1")

    assert stats.total_orders == 2
    assert stats.today_orders == 2
    assert stats.pending_orders == 1
    assert stats.completed_today == 1
    assert stats.today_revenue == round(first.total + second.total, 2)


async def test_stats_survive_store_failure(order_service, monkeypatch):
    async def unavailable(*args, **kwargs):
        raise StoreError("timeout")

    monkeypatch.setattr(order_service.store, "query", unavailable)

    assert await order_service.restaurant_stats("r1") == RestaurantStats()


async def test_store_health(store):
    assert await store.health_check() is True
