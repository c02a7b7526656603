"""
Order Store Factory

Usage:
    from tablebill.services.store import get_order_store

    store = get_order_store()
    orders = await store.query(OrderFilter(restaurant_id="r1", is_paid=False))
"""

import logging
from functools import lru_cache

from tablebill.services.store.base import (
    BaseOrderStore,
    ChangeEvent,
    OrderFilter,
    StoreError,
    Subscription,
    SubscriptionScope,
)
from tablebill.services.store.sql import SqlOrderStore

logger = logging.getLogger(__name__)


@lru_cache()
def get_order_store() -> BaseOrderStore:
    """
    Get the process-wide order store.

    The store shares the application's session factory and the cached
    change feed, so every writer notifies every local subscriber.
    """
    from tablebill.database import async_session_maker
    from tablebill.services.change_feed import get_change_feed

    feed = get_change_feed()
    logger.info(f"Order Store: SqlOrderStore with {feed.provider_name} change feed")
    return SqlOrderStore(async_session_maker, feed)


def reset_order_store() -> None:
    get_order_store.cache_clear()


__all__ = [
    "get_order_store",
    "reset_order_store",
    "BaseOrderStore",
    "SqlOrderStore",
    "OrderFilter",
    "ChangeEvent",
    "StoreError",
    "Subscription",
    "SubscriptionScope",
]
