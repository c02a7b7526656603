"""
Order Lifecycle Service

Everything that happens to an order before it is paid:

- placement (line totals, tax, discount, session attachment)
- fulfillment status changes with their entry timestamps
- staff edits of items / notes / discount
- deletion
- the staff order queue and dashboard counters

Paid orders are frozen: edits and status changes on them raise
``OrderLockedError``.

Version: 1.0.0
"""

import logging
import math
from datetime import datetime, timezone
from typing import Any, Iterable, Optional
from zoneinfo import ZoneInfo

from tablebill.core.config import Settings, get_settings
from tablebill.models import STATUS_TIMESTAMP_FIELDS, OrderStatus
from tablebill.schemas import (
    OrderCreate,
    OrderLineCreate,
    OrderRecord,
    OrderUpdate,
    RestaurantStats,
)
from tablebill.services.sessions.resolver import SessionIdentityResolver
from tablebill.services.store.base import BaseOrderStore, OrderFilter, StoreError

logger = logging.getLogger(__name__)

# The "pending" queue on the staff screen also shows accepted orders
QUEUE_FILTERS = {
    "pending": {OrderStatus.PENDING, OrderStatus.ACCEPTED},
}


class OrderNotFoundError(LookupError):
    def __init__(self, order_id: int):
        super().__init__(f"Order #{order_id} not found")
        self.order_id = order_id


class OrderLockedError(Exception):
    """Raised when trying to change an order that is already paid."""

    def __init__(self, order_id: int):
        super().__init__(f"Order #{order_id} is paid and can no longer be changed")
        self.order_id = order_id


def calculate_order_totals(
    lines: Iterable[OrderLineCreate],
    tax_rate: float,
    discount: float = 0.0,
) -> dict[str, Any]:
    """Resolve lines and compute subtotal, tax, discount and total."""
    resolved = [line.resolve() for line in lines]
    subtotal = round(math.fsum(line.item_total for line in resolved), 2)
    tax = round(subtotal * tax_rate, 2)
    discount = round(discount or 0.0, 2)
    return {
        "items": [line.model_dump(mode="json") for line in resolved],
        "subtotal": subtotal,
        "tax": tax,
        "discount": discount,
        "total": round(subtotal + tax - discount, 2),
    }


class OrderService:
    """
    Order placement and staff-side order management.

    Attributes:
        store: Order store
        resolver: Session resolver used for device-based placements
        settings: Tax rate, timezone and takeaway label
    """

    def __init__(
        self,
        store: BaseOrderStore,
        resolver: SessionIdentityResolver,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.resolver = resolver
        self.settings = settings or get_settings()

    # =========================================================================
    # PLACEMENT
    # =========================================================================

    async def place_order(self, restaurant_id: str, order_data: OrderCreate) -> OrderRecord:
        """
        Create an order.

        Table-service orders always carry a session id: the one supplied,
        or the device's token for that table. A takeaway order from a
        customer's device gets the device's takeaway token. Staff-entered
        counter and phone orders carry none.
        """
        session_id = None
        if order_data.is_table_service:
            session_id = order_data.session_id
            if not session_id:
                session_id = await self.resolver.resolve(
                    order_data.device_id, order_data.table_number
                )
        elif order_data.is_customer_takeaway:
            session_id = order_data.session_id
            if not session_id:
                session_id = await self.resolver.resolve(order_data.device_id, None)

        totals = calculate_order_totals(
            order_data.items, self.settings.tax_rate, order_data.discount
        )
        values = {
            "restaurant_id": restaurant_id,
            "order_type": order_data.order_type,
            "table_number": order_data.table_number,
            "session_id": session_id,
            "customer_name": order_data.customer_name,
            "customer_phone": order_data.customer_phone,
            "customer_notes": order_data.customer_notes,
            "payment_method": order_data.payment_method,
            "status": OrderStatus.PENDING,
            "is_paid": False,
            **totals,
        }
        return await self.store.insert(values)

    # =========================================================================
    # CHANGES
    # =========================================================================

    async def update_status(self, order_id: int, status: OrderStatus) -> OrderRecord:
        """Set the status and stamp the time the order entered it."""
        status = OrderStatus(status)
        patch: dict[str, Any] = {"status": status}
        stamp = STATUS_TIMESTAMP_FIELDS.get(status)
        if stamp:
            patch[stamp] = datetime.now(timezone.utc)

        record = await self._update_unpaid(order_id, patch)
        logger.info(f"Order #{order_id} → {status.value}")
        return record

    async def update_fields(self, order_id: int, changes: OrderUpdate) -> OrderRecord:
        """
        Staff edit of an unpaid order.

        When items or discount change, totals are recomputed from the
        lines so ``total == subtotal + tax - discount`` keeps holding.
        """
        patch: dict[str, Any] = changes.model_dump(
            include={"customer_notes", "internal_notes"}, exclude_unset=True
        )

        if changes.items is not None or changes.discount is not None:
            current = await self.store.get(order_id)
            if current is None:
                raise OrderNotFoundError(order_id)
            if current.is_paid:
                raise OrderLockedError(order_id)

            if changes.items is not None:
                lines = changes.items
            else:
                lines = [OrderLineCreate.model_validate(item) for item in current.items]
            discount = changes.discount if changes.discount is not None else (current.discount or 0.0)
            patch.update(calculate_order_totals(lines, self.settings.tax_rate, discount))

        if not patch:
            record = await self.store.get(order_id)
            if record is None:
                raise OrderNotFoundError(order_id)
            return record

        return await self._update_unpaid(order_id, patch)

    async def delete_order(self, order_id: int) -> None:
        if not await self.store.delete(order_id):
            raise OrderNotFoundError(order_id)

    async def _update_unpaid(self, order_id: int, patch: dict[str, Any]) -> OrderRecord:
        record = await self.store.update(order_id, patch, unpaid_only=True)
        if record is not None:
            return record
        # Nothing matched: unknown id, or paid in the meantime
        current = await self.store.get(order_id)
        if current is None:
            raise OrderNotFoundError(order_id)
        raise OrderLockedError(order_id)

    # =========================================================================
    # READS
    # =========================================================================

    async def get_order(self, order_id: int) -> OrderRecord:
        record = await self.store.get(order_id)
        if record is None:
            raise OrderNotFoundError(order_id)
        return record

    async def list_orders(
        self,
        restaurant_id: str,
        status: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[OrderRecord]:
        """
        Staff order queue, oldest first (FIFO).

        ``status="pending"`` also includes accepted orders.
        """
        statuses: set = set()
        if status:
            statuses = QUEUE_FILTERS.get(status) or {OrderStatus(status)}
        return await self.store.query(
            OrderFilter(restaurant_id=restaurant_id, statuses=statuses),
            limit=limit,
        )

    def start_of_business_day(self, now: Optional[datetime] = None) -> datetime:
        """Local midnight in the business timezone, as an aware UTC datetime."""
        tz = ZoneInfo(self.settings.business_timezone)
        local_now = (now or datetime.now(timezone.utc)).astimezone(tz)
        local_midnight = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
        return local_midnight.astimezone(timezone.utc)

    async def restaurant_stats(
        self,
        restaurant_id: str,
        now: Optional[datetime] = None,
    ) -> RestaurantStats:
        """
        Dashboard counters.

        A store failure yields zeroed counters rather than an error so the
        dashboard keeps rendering.
        """
        try:
            today = await self.store.query(
                OrderFilter(
                    restaurant_id=restaurant_id,
                    created_from=self.start_of_business_day(now),
                )
            )
            pending = await self.store.count(
                OrderFilter(restaurant_id=restaurant_id, statuses={OrderStatus.PENDING})
            )
            total = await self.store.count(OrderFilter(restaurant_id=restaurant_id))
        except StoreError as e:
            logger.error(f"Error fetching restaurant stats for {restaurant_id}: {e}")
            return RestaurantStats()

        return RestaurantStats(
            pending_orders=pending,
            today_orders=len(today),
            completed_today=sum(1 for o in today if o.status == OrderStatus.COMPLETED.value),
            today_revenue=round(math.fsum(o.total or 0.0 for o in today), 2),
            total_orders=total,
        )
