import asyncio
import threading
import time

import pytest

from tablebill.core.config import Settings
from tablebill.services.billing import BillingStateMachine
from tablebill.tasks import enqueue_settlement, record_settlement
from tests.factories import order_values

pytestmark = pytest.mark.anyio


@pytest.fixture
def dead_broker(monkeypatch):
    """Publishing blocks the way it does while the broker is unreachable."""
    calls = []
    unblock = threading.Event()

    def publish(*args, **kwargs):
        calls.append(kwargs)
        unblock.wait(timeout=10)

    monkeypatch.setattr(record_settlement, "apply_async", publish)
    yield calls
    unblock.set()


async def test_pay_returns_while_broker_is_down(store, dead_broker):
    async def sink(result):
        await enqueue_settlement(result, timeout=0.2)

    billing = BillingStateMachine(store, settlement_sink=sink)
    await store.insert(order_values(session_id="S1"))

    started = time.monotonic()
    result = await billing.pay_session("r1", "S1")
    elapsed = time.monotonic() - started

    assert result.success is True
    assert result.updated == 1
    assert elapsed < 1
    await billing.drain()
    assert len(dead_broker) == 1


async def test_enqueue_gives_up_and_skips_result_backend(store, billing, dead_broker):
    await store.insert(order_values(session_id="S2"))
    result = await billing.pay_session("r1", "S2")

    with pytest.raises(asyncio.TimeoutError):
        await enqueue_settlement(result, timeout=0.1)

    (options,) = dead_broker
    assert options["ignore_result"] is True
    assert options["retry_policy"]["max_retries"] <= 2
    assert options["args"][0]["target"] == "S2"


async def test_ledger_follows_shared_backends_by_default():
    assert Settings(env_mode="development", ledger_enabled=None).ledger_active is False
    assert Settings(env_mode="production", ledger_enabled=None).ledger_active is True
    assert Settings(env_mode="development", ledger_enabled=True).ledger_active is True
