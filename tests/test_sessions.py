import re

import fakeredis.aioredis
import pytest

from tablebill.services.sessions.memory import MemorySessionStorage
from tablebill.services.sessions.redis_storage import RedisSessionStorage
from tablebill.services.sessions.resolver import SessionIdentityResolver, generate_session_token

pytestmark = pytest.mark.anyio

TOKEN = re.compile(r"^\d{13}-[0-9a-z]{9}$")


@pytest.fixture(params=["memory", "redis"])
async def storage(request):
    if request.param == "memory":
        yield MemorySessionStorage()
        return
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield RedisSessionStorage(client, key_prefix="test:sessions", ttl_seconds=60)
    await client.aclose()


async def test_token_format():
    token = generate_session_token(now_ms=1714564800000)

    assert token.startswith("1714564800000-")
    assert TOKEN.match(token)
    assert generate_session_token() != generate_session_token()


async def test_resolve_is_stable_per_device_and_table(storage):
    resolver = SessionIdentityResolver(storage)

    first = await resolver.resolve("phone-a", "5")
    again = await resolver.resolve("phone-a", "5")
    other_table = await resolver.resolve("phone-a", "6")
    other_device = await resolver.resolve("phone-b", "5")

    assert TOKEN.match(first)
    assert first == again
    assert len({first, other_table, other_device}) == 3


async def test_missing_table_resolves_to_takeaway(storage):
    resolver = SessionIdentityResolver(storage)

    token = await resolver.resolve("phone-a", None)

    assert resolver.is_takeaway("  ")
    assert resolver.table_key(None) == "session_table_Takeaway"
    assert await resolver.peek("phone-a", "") == token


async def test_clear_starts_a_new_session(storage):
    resolver = SessionIdentityResolver(storage)
    first = await resolver.resolve("phone-a", "5")

    assert await resolver.clear("phone-a", "5") is True
    assert await resolver.peek("phone-a", "5") is None
    assert await resolver.resolve("phone-a", "5") != first


async def test_reset_table_clears_every_device(storage):
    resolver = SessionIdentityResolver(storage)
    await resolver.resolve("phone-a", "5")
    await resolver.resolve("phone-b", "5")
    kept = await resolver.resolve("phone-b", "6")

    assert await resolver.reset_table("5") == 2
    assert await resolver.peek("phone-a", "5") is None
    assert await resolver.peek("phone-b", "6") == kept


async def test_clear_device(storage):
    resolver = SessionIdentityResolver(storage)
    await resolver.resolve("phone-a", "5")
    await resolver.resolve("phone-a", None)

    assert await resolver.clear_device("phone-a") == 2
    assert await resolver.peek("phone-a", "5") is None


async def test_redis_storage_sets_expiry():
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    storage = RedisSessionStorage(client, key_prefix="test:sessions", ttl_seconds=120)

    await storage.write("phone-a", "session_table_5", "tok")

    ttl = await client.ttl("test:sessions:phone-a")
    assert 0 < ttl <= 120
    assert await client.hget("test:sessions:phone-a", "session_table_5") == "tok"
    await client.aclose()
