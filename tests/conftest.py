import os

# The application engine and settings are built at import time
os.environ["ENV_MODE"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["LEDGER_ENABLED"] = "false"

import pytest

from tablebill.core.config import Settings
from tablebill.database import build_engine, build_session_maker, init_db
from tablebill.services.billing import BillingStateMachine
from tablebill.services.change_feed.local import LocalChangeFeed
from tablebill.services.live_view import LiveViewSynchronizer
from tablebill.services.orders import OrderService
from tablebill.services.sessions.memory import MemorySessionStorage
from tablebill.services.sessions.resolver import SessionIdentityResolver
from tablebill.services.store.sql import SqlOrderStore


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def settings() -> Settings:
    return Settings(tax_rate=0.05, table_count=6, business_timezone="Asia/Bangkok")


@pytest.fixture
async def db_engine(tmp_path):
    # File database: every session gets its own connection, like Postgres
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def feed() -> LocalChangeFeed:
    return LocalChangeFeed()


@pytest.fixture
def store(db_engine, feed) -> SqlOrderStore:
    return SqlOrderStore(build_session_maker(db_engine), feed)


@pytest.fixture
def resolver() -> SessionIdentityResolver:
    return SessionIdentityResolver(MemorySessionStorage())


@pytest.fixture
def billing(store) -> BillingStateMachine:
    return BillingStateMachine(store)


@pytest.fixture
def order_service(store, resolver, settings) -> OrderService:
    return OrderService(store, resolver, settings)


@pytest.fixture
async def live_view(store):
    synchronizer = LiveViewSynchronizer(store, table_count=6)
    yield synchronizer
    await synchronizer.close()
