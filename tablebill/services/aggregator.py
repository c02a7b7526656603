"""
Order Aggregator

Pure functions that turn a flat list of orders into session groups,
table bills and the staff table grid. Nothing here is stored: every
view is recomputed from the current order set on each change.

Rules:
    - Orders sharing a ``session_id`` form one group.
    - An order without a session id is a group of its own; two
      session-less orders are never merged just because they share a
      table (they may be unrelated counter sales).
    - Members and groups are ordered by creation time, oldest first.
    - Missing or malformed amounts count as zero.
    - An empty group, and an empty table, are paid.
"""

import math
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Sequence

from tablebill.models import OrderStatus
from tablebill.schemas import OrderRecord, SessionGroup, TableBill, TableGrid, TableSummary


def order_amount(value: Any) -> float:
    """Monetary field as float, zero when absent or unreadable."""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        amount = float(value)
    except (TypeError, ValueError):
        return 0.0
    return amount if math.isfinite(amount) else 0.0


def _creation_key(order: OrderRecord) -> tuple:
    created = order.created_at
    if created is not None and created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    # Rows without a timestamp sort last, ties break on id
    return (created is None, created or datetime.min.replace(tzinfo=timezone.utc), order.id or 0)


def sort_by_creation(orders: Iterable[OrderRecord]) -> list[OrderRecord]:
    return sorted(orders, key=_creation_key)


def sum_totals(orders: Iterable[OrderRecord]) -> float:
    return math.fsum(order_amount(o.total) for o in orders)


def make_group(session_id: Optional[str], orders: Sequence[OrderRecord]) -> SessionGroup:
    members = sort_by_creation(orders)
    return SessionGroup(
        session_id=session_id,
        orders=members,
        total=sum_totals(members),
        is_paid=all(o.is_paid for o in members),
    )


def group_by_session(orders: Iterable[OrderRecord]) -> list[SessionGroup]:
    """
    Group orders into sessions.

    Groups come out in the order their first member was created.
    """
    buckets: dict[str, list[OrderRecord]] = {}
    groups: list[tuple[Optional[str], list[OrderRecord]]] = []

    for order in sort_by_creation(orders):
        if not order.session_id:
            groups.append((None, [order]))
            continue
        bucket = buckets.get(order.session_id)
        if bucket is None:
            bucket = buckets[order.session_id] = []
            groups.append((order.session_id, bucket))
        bucket.append(order)

    return [make_group(session_id, members) for session_id, members in groups]


def build_table_bill(
    restaurant_id: str,
    table_number: str,
    orders: Iterable[OrderRecord],
) -> TableBill:
    """
    Bill for one table from the orders given (normally its unpaid ones).
    """
    groups = group_by_session(orders)
    return TableBill(
        restaurant_id=restaurant_id,
        table_number=str(table_number),
        groups=groups,
        table_total=math.fsum(g.total for g in groups),
        all_paid=all(g.is_paid for g in groups),
        computed_at=datetime.now(timezone.utc),
    )


def _table_sort_key(table_number: str) -> tuple:
    return (0, int(table_number), "") if table_number.isdigit() else (1, 0, table_number)


def summarize_tables(
    orders: Iterable[OrderRecord],
    table_count: int = 0,
) -> list[TableSummary]:
    """
    Staff table grid.

    Only unpaid orders carrying a table number count. Tables
    ``1..table_count`` are always present; any other table number seen
    in the orders is appended. A table can be paid (gated) once it has
    orders and every one of them is completed.
    """
    per_table: dict[str, list[OrderRecord]] = {str(n): [] for n in range(1, table_count + 1)}
    for order in orders:
        if order.is_paid or not order.table_number:
            continue
        per_table.setdefault(str(order.table_number), []).append(order)

    summaries = []
    for table_number in sorted(per_table, key=_table_sort_key):
        members = per_table[table_number]
        all_completed = bool(members) and all(
            o.status == OrderStatus.COMPLETED.value for o in members
        )
        summaries.append(
            TableSummary(
                table_number=table_number,
                total=sum_totals(members),
                order_count=len(members),
                all_completed=all_completed,
                can_pay=all_completed,
            )
        )
    return summaries


def build_table_grid(
    restaurant_id: str,
    orders: Iterable[OrderRecord],
    table_count: int = 0,
) -> TableGrid:
    return TableGrid(
        restaurant_id=restaurant_id,
        tables=summarize_tables(orders, table_count),
        computed_at=datetime.now(timezone.utc),
    )
