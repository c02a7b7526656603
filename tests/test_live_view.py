import pytest

from tablebill.models import OrderStatus
from tablebill.schemas import TableBill, TableGrid
from tablebill.services.billing import BillingStateMachine
from tablebill.services.desk import BillingDesk
from tablebill.services.store.base import ChangeEvent, StoreError
from tests.factories import order_values

pytestmark = pytest.mark.anyio


async def test_get_bill_before_attach_is_empty(live_view):
    bill = live_view.get_bill("r1", "5")

    assert bill.groups == []
    assert bill.all_paid is True


async def test_attach_pushes_current_bill(store, live_view):
    await store.insert(order_values(session_id="S1", total=40.0))
    views = []

    await live_view.attach("r1", views.append, table_number="5")

    assert len(views) == 1
    assert isinstance(views[0], TableBill)
    assert views[0].table_total == 40.0
    assert live_view.get_bill("r1", "5") == views[0]


async def test_insert_triggers_recompute(store, live_view):
    views = []
    await live_view.attach("r1", views.append, table_number="5")

    await store.insert(order_values(session_id="S1", total=120.0))
    await store.insert(order_values(session_id=None, total=50.0))
    await live_view.wait_idle()

    bill = live_view.get_bill("r1", "5")
    assert bill.table_total == 170.0
    assert [g.session_id for g in bill.groups] == ["S1", None]
    assert views[-1] == bill


async def test_other_tables_do_not_touch_the_bill(store, live_view):
    await live_view.attach("r1", lambda view: None, table_number="5")
    before = live_view.recompute_count("r1", "5")

    await store.insert(order_values(table_number="6"))
    await store.insert(order_values(restaurant_id="r2"))
    await live_view.wait_idle()

    assert live_view.recompute_count("r1", "5") == before


async def test_burst_of_events_coalesces(store, feed, live_view):
    await live_view.attach("r1", lambda view: None, table_number="5")
    before = live_view.recompute_count("r1", "5")

    for _ in range(5):
        await feed.publish(ChangeEvent("r1", "update", "5"))
    await live_view.wait_idle()

    assert live_view.recompute_count("r1", "5") == before + 1


async def test_observers_share_one_subscription(feed, live_view):
    first = await live_view.attach("r1", lambda view: None, table_number="5")
    second = await live_view.attach("r1", lambda view: None, table_number="5")
    assert feed.subscriber_count == 1

    await first.close()
    assert live_view.is_watching("r1", "5")
    assert feed.subscriber_count == 1

    await second.close()
    assert not live_view.is_watching("r1", "5")
    assert feed.subscriber_count == 0


async def test_failing_observer_does_not_block_others(store, live_view):
    views = []

    def broken(view):
        raise RuntimeError("render failed")

    await live_view.attach("r1", broken, table_number="5")
    await live_view.attach("r1", views.append, table_number="5")
    await store.insert(order_values())
    await live_view.wait_idle()

    assert views[-1].table_total == 100.0


async def test_bill_empties_after_payment(store, live_view):
    billing = BillingStateMachine(store)
    desk = BillingDesk("r1", billing, live_view)
    await store.insert(order_values(session_id="S1", status=OrderStatus.COMPLETED))
    await store.insert(order_values(session_id="S2", status=OrderStatus.COMPLETED))
    await live_view.attach("r1", lambda view: None, table_number="5")
    assert len(desk.get_bill("5").groups) == 2

    assert await desk.pay_table_gated("5") is True
    await live_view.wait_idle()

    bill = desk.get_bill("5")
    assert bill.groups == []
    assert bill.all_paid is True
    assert desk.last_result.updated == 2


async def test_detach_does_not_cancel_payment(store, live_view):
    billing = BillingStateMachine(store)
    desk = BillingDesk("r1", billing, live_view)
    await store.insert(order_values(session_id="S7"))
    handle = await live_view.attach("r1", lambda view: None, table_number="5")

    await handle.close()

    assert await desk.pay_table_session("S7") is True
    assert desk.last_result.updated == 1


async def test_grid_scope(store, live_view):
    views = []
    await live_view.attach("r1", views.append)

    await store.insert(order_values(table_number="2", status=OrderStatus.COMPLETED, total=30.0))
    await live_view.wait_idle()

    grid = live_view.get_grid("r1")
    assert isinstance(grid, TableGrid)
    assert len(grid.tables) == 6
    table_two = grid.tables[1]
    assert table_two.table_number == "2"
    assert table_two.total == 30.0
    assert table_two.can_pay is True
    assert views[-1] == grid


async def test_subscribe_failure_leaves_no_scope(store, live_view, monkeypatch):
    async def unavailable(scope, on_change):
        raise StoreError("feed down")

    monkeypatch.setattr(store, "subscribe", unavailable)

    with pytest.raises(StoreError):
        await live_view.attach("r1", lambda view: None, table_number="5")
    assert not live_view.is_watching("r1", "5")
