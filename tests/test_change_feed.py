import asyncio

import fakeredis.aioredis
import pytest

from tablebill.services.change_feed.local import LocalChangeFeed
from tablebill.services.change_feed.redis_feed import RedisChangeFeed
from tablebill.services.store.base import ChangeEvent, SubscriptionScope

pytestmark = pytest.mark.anyio


async def test_scope_matching():
    table_five = SubscriptionScope("r1", "5")
    restaurant = SubscriptionScope("r1")

    assert table_five.matches(ChangeEvent("r1", "insert", "5"))
    assert not table_five.matches(ChangeEvent("r1", "insert", "6"))
    assert table_five.matches(ChangeEvent("r1", "update", None))
    assert restaurant.matches(ChangeEvent("r1", "insert", "6"))
    assert not restaurant.matches(ChangeEvent("r2", "insert", "6"))


async def test_event_dict_round_trip():
    event = ChangeEvent("r1", "update", "5", order_ids=(1, 2))

    assert ChangeEvent.from_dict(event.to_dict()) == event


async def test_local_feed_delivers_to_matching_scopes():
    feed = LocalChangeFeed()
    seen = []

    async def on_async(event):
        seen.append(("async", event.table_number))

    await feed.subscribe(SubscriptionScope("r1", "5"), lambda e: seen.append(("sync", e.table_number)))
    await feed.subscribe(SubscriptionScope("r1"), on_async)

    await feed.publish(ChangeEvent("r1", "insert", "6"))
    await feed.publish(ChangeEvent("r1", "insert", "5"))

    assert seen == [("async", "6"), ("sync", "5"), ("async", "5")]


async def test_local_subscription_close_releases():
    feed = LocalChangeFeed()
    seen = []
    subscription = await feed.subscribe(SubscriptionScope("r1"), seen.append)

    await subscription.close()
    await subscription.close()
    await feed.publish(ChangeEvent("r1", "insert", "5"))

    assert subscription.closed
    assert feed.subscriber_count == 0
    assert seen == []


async def test_failing_callback_does_not_stop_others():
    feed = LocalChangeFeed()
    seen = []

    def broken(event):
        raise RuntimeError("observer bug")

    await feed.subscribe(SubscriptionScope("r1"), broken)
    await feed.subscribe(SubscriptionScope("r1"), seen.append)
    await feed.publish(ChangeEvent("r1", "insert", "5"))

    assert len(seen) == 1


async def test_redis_feed_publish_and_subscribe():
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    feed = RedisChangeFeed(client, channel_prefix="test:orders")
    received = asyncio.Queue()

    subscription = await feed.subscribe(SubscriptionScope("r1", "5"), received.put_nowait)
    await feed.publish(ChangeEvent("r1", "insert", "6"))
    await feed.publish(ChangeEvent("r2", "insert", "5"))
    await feed.publish(ChangeEvent("r1", "update", "5", order_ids=(7,)))

    event = await asyncio.wait_for(received.get(), timeout=5)
    assert event == ChangeEvent("r1", "update", "5", order_ids=(7,))
    assert received.empty()

    await subscription.close()
    assert subscription.closed
    assert await feed.health_check() is True
    await feed.close()


async def test_redis_feed_ignores_malformed_messages():
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    feed = RedisChangeFeed(client, channel_prefix="test:orders")
    received = asyncio.Queue()

    subscription = await feed.subscribe(SubscriptionScope("r1"), received.put_nowait)
    await client.publish(feed.channel_for("r1"), "not json")
    await feed.publish(ChangeEvent("r1", "delete", "2"))

    event = await asyncio.wait_for(received.get(), timeout=5)
    assert event.kind == "delete"

    await subscription.close()
    await feed.close()
