"""
                        Services Module

Business logic of the billing model, wired from the configured backends.

Services:
    - store: order persistence and change notifications
    - change_feed: in-process or Redis fan-out of order changes
    - sessions: per-device session identity
    - aggregator: session groups, table bills, table grid
    - billing: payment state transitions
    - live_view: subscription-driven recompute and push
    - orders: placement and staff-side order management
    - ledger: Excel settlement book
"""

import logging
from functools import lru_cache

from tablebill.core.config import get_settings
from tablebill.services.billing import BillingResult, BillingStateMachine
from tablebill.services.live_view import LiveViewSynchronizer
from tablebill.services.orders import OrderService
from tablebill.services.sessions import get_session_resolver
from tablebill.services.store import get_order_store

logger = logging.getLogger(__name__)


@lru_cache()
def get_billing_service() -> BillingStateMachine:
    settings = get_settings()
    sink = None
    if settings.ledger_active:
        from tablebill.tasks import enqueue_settlement

        sink = enqueue_settlement
    return BillingStateMachine(get_order_store(), settlement_sink=sink)


@lru_cache()
def get_live_view() -> LiveViewSynchronizer:
    return LiveViewSynchronizer(get_order_store(), table_count=get_settings().table_count)


@lru_cache()
def get_order_service() -> OrderService:
    return OrderService(get_order_store(), get_session_resolver(), get_settings())


def reset_services() -> None:
    """Clear every cached service instance."""
    from tablebill.services.change_feed import reset_change_feed
    from tablebill.services.sessions import reset_session_resolver
    from tablebill.services.store import reset_order_store

    get_billing_service.cache_clear()
    get_live_view.cache_clear()
    get_order_service.cache_clear()
    reset_order_store()
    reset_change_feed()
    reset_session_resolver()
    logger.debug("Service caches cleared")


__all__ = [
    "get_billing_service",
    "get_live_view",
    "get_order_service",
    "get_order_store",
    "get_session_resolver",
    "reset_services",
    "BillingResult",
    "BillingStateMachine",
    "LiveViewSynchronizer",
    "OrderService",
]
