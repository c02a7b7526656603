"""Builders for orders used across the test modules."""

import itertools
from datetime import datetime, timezone

from tablebill.models import OrderStatus, OrderType
from tablebill.schemas import OrderRecord

_ids = itertools.count(1)


def order_values(
    restaurant_id: str = "r1",
    table_number: str = "5",
    session_id: str = "S1",
    status: OrderStatus = OrderStatus.PENDING,
    total: float = 100.0,
    **extra,
) -> dict:
    """Column values for a raw store insert."""
    values = {
        "restaurant_id": restaurant_id,
        "order_type": OrderType.QR,
        "table_number": table_number,
        "session_id": session_id,
        "items": [],
        "subtotal": total,
        "tax": 0.0,
        "discount": 0.0,
        "total": total,
        "status": status,
        "is_paid": False,
    }
    values.update(extra)
    return values


def make_record(minute: int = 0, **fields) -> OrderRecord:
    """In-memory order for pure aggregation tests."""
    data = {
        "id": next(_ids),
        "restaurant_id": "r1",
        "table_number": "5",
        "status": OrderStatus.PENDING.value,
        "total": 0.0,
        "created_at": datetime(2024, 5, 1, 12, minute, tzinfo=timezone.utc),
    }
    data.update(fields)
    return OrderRecord(**data)
