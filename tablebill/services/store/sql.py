"""
SQLAlchemy Order Store

Order store backed by the ``orders`` table through an async session
factory. Every write is one statement followed by a commit, then a
change event is published on the configured change feed.

Bulk updates use ``UPDATE ... RETURNING`` so the caller learns exactly
which rows its own statement changed. Two staff members paying the
same table at the same moment therefore see one update with N rows
and one with zero rows, never N rows twice.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tablebill.models import Order
from tablebill.schemas import OrderRecord
from tablebill.services.change_feed.base import BaseChangeFeed
from tablebill.services.store.base import (
    BaseOrderStore,
    ChangeCallback,
    ChangeEvent,
    OrderFilter,
    StoreError,
    Subscription,
    SubscriptionScope,
)

logger = logging.getLogger(__name__)


def _conditions(order_filter: OrderFilter) -> list:
    """Translate an ``OrderFilter`` into SQLAlchemy WHERE clauses."""
    conds = []
    if order_filter.restaurant_id is not None:
        conds.append(Order.restaurant_id == order_filter.restaurant_id)
    if order_filter.order_id is not None:
        conds.append(Order.id == order_filter.order_id)
    if order_filter.table_number is not None:
        conds.append(Order.table_number == order_filter.table_number)
    if order_filter.session_id is not None:
        conds.append(Order.session_id == order_filter.session_id)
    if order_filter.is_paid is not None:
        conds.append(Order.is_paid.is_(order_filter.is_paid))
    if order_filter.statuses:
        conds.append(Order.status.in_(list(order_filter.statuses)))
    if order_filter.exclude_statuses:
        conds.append(Order.status.not_in(list(order_filter.exclude_statuses)))
    if order_filter.order_type is not None:
        conds.append(Order.order_type == order_filter.order_type)
    if order_filter.has_table is True:
        conds.append(Order.table_number.is_not(None))
    elif order_filter.has_table is False:
        conds.append(Order.table_number.is_(None))
    if order_filter.created_from is not None:
        conds.append(Order.created_at >= order_filter.created_from)
    return conds


class SqlOrderStore(BaseOrderStore):
    """
    Order store over an ``async_sessionmaker``.

    Attributes:
        session_maker: Factory for ``AsyncSession`` objects
        change_feed: Where committed changes are announced
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        change_feed: BaseChangeFeed,
    ):
        self.session_maker = session_maker
        self.change_feed = change_feed

    @property
    def backend_name(self) -> str:
        return "sqlalchemy"

    # =========================================================================
    # READS
    # =========================================================================

    async def query(
        self,
        order_filter: OrderFilter,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[OrderRecord]:
        if descending:
            ordering = (Order.created_at.desc(), Order.id.desc())
        else:
            ordering = (Order.created_at.asc(), Order.id.asc())
        stmt = select(Order).where(*_conditions(order_filter)).order_by(*ordering)
        if limit is not None:
            stmt = stmt.limit(limit)

        try:
            async with self.session_maker() as session:
                result = await session.execute(stmt)
                return [OrderRecord.model_validate(o) for o in result.scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"Order query failed: {e}")
            raise StoreError("order query failed") from e

    async def count(self, order_filter: OrderFilter) -> int:
        stmt = select(func.count(Order.id)).where(*_conditions(order_filter))
        try:
            async with self.session_maker() as session:
                result = await session.execute(stmt)
                return result.scalar() or 0
        except SQLAlchemyError as e:
            logger.error(f"Order count failed: {e}")
            raise StoreError("order count failed") from e

    async def get(self, order_id: int) -> Optional[OrderRecord]:
        try:
            async with self.session_maker() as session:
                order = await session.get(Order, order_id)
                return OrderRecord.model_validate(order) if order else None
        except SQLAlchemyError as e:
            logger.error(f"Order lookup #{order_id} failed: {e}")
            raise StoreError(f"order #{order_id} lookup failed") from e

    # =========================================================================
    # WRITES
    # =========================================================================

    async def insert(self, values: dict[str, Any]) -> OrderRecord:
        values = {k: v for k, v in values.items() if k not in ("id", "created_at", "order_number")}
        try:
            async with self.session_maker() as session:
                order = Order(**values)
                session.add(order)
                await session.flush()  # obtain order.id and created_at
                order.order_number = f"{order.created_at:%y%m%d}-{order.id:04d}"
                await session.commit()
                record = OrderRecord.model_validate(order)
        except SQLAlchemyError as e:
            logger.error(f"Order insert failed: {e}")
            raise StoreError("order insert failed") from e

        logger.info(
            f"Order #{record.id} ({record.order_number}) created for "
            f"{record.restaurant_id} table {record.table_number or '-'}"
        )
        await self.change_feed.publish(
            ChangeEvent(
                restaurant_id=record.restaurant_id,
                kind="insert",
                table_number=record.table_number,
                order_ids=(record.id,),
            )
        )
        return record

    async def bulk_update(
        self,
        order_filter: OrderFilter,
        patch: dict[str, Any],
    ) -> list[OrderRecord]:
        if order_filter.restaurant_id is None:
            raise ValueError("bulk updates must be scoped to a restaurant")

        values = {**patch, "updated_at": datetime.now(timezone.utc)}
        stmt = (
            update(Order)
            .where(*_conditions(order_filter))
            .values(**values)
            .returning(Order.id)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self.session_maker() as session:
                result = await session.execute(stmt)
                ids = [row.id for row in result.all()]
                await session.commit()
                if not ids:
                    return []
                result = await session.execute(
                    select(Order).where(Order.id.in_(ids)).order_by(Order.created_at, Order.id)
                )
                changed = [OrderRecord.model_validate(o) for o in result.scalars().all()]
        except SQLAlchemyError as e:
            logger.error(f"Bulk update on {order_filter} failed: {e}")
            raise StoreError("bulk update failed") from e

        logger.info(f"Bulk update changed {len(changed)} order(s) for {order_filter.restaurant_id}")
        await self.change_feed.publish(
            ChangeEvent(
                restaurant_id=order_filter.restaurant_id,
                kind="update",
                table_number=order_filter.table_number,
                order_ids=tuple(o.id for o in changed),
            )
        )
        return changed

    async def update(
        self,
        order_id: int,
        patch: dict[str, Any],
        unpaid_only: bool = True,
    ) -> Optional[OrderRecord]:
        conds = [Order.id == order_id]
        if unpaid_only:
            conds.append(Order.is_paid.is_(False))
        values = {**patch, "updated_at": datetime.now(timezone.utc)}
        try:
            async with self.session_maker() as session:
                result = await session.execute(
                    update(Order)
                    .where(*conds)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
                if result.rowcount == 0:
                    return None
                order = await session.get(Order, order_id, populate_existing=True)
                record = OrderRecord.model_validate(order)
        except SQLAlchemyError as e:
            logger.error(f"Update of order #{order_id} failed: {e}")
            raise StoreError(f"order #{order_id} update failed") from e

        await self.change_feed.publish(
            ChangeEvent(
                restaurant_id=record.restaurant_id,
                kind="update",
                table_number=record.table_number,
                order_ids=(record.id,),
            )
        )
        return record

    async def delete(self, order_id: int) -> bool:
        try:
            async with self.session_maker() as session:
                result = await session.execute(
                    delete(Order)
                    .where(Order.id == order_id)
                    .returning(Order.restaurant_id, Order.table_number)
                )
                row = result.one_or_none()
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Delete of order #{order_id} failed: {e}")
            raise StoreError(f"order #{order_id} delete failed") from e

        if row is None:
            return False
        logger.info(f"Order #{order_id} deleted")
        await self.change_feed.publish(
            ChangeEvent(
                restaurant_id=row.restaurant_id,
                kind="delete",
                table_number=row.table_number,
                order_ids=(order_id,),
            )
        )
        return True

    # =========================================================================
    # NOTIFICATIONS
    # =========================================================================

    async def subscribe(
        self,
        scope: SubscriptionScope,
        on_change: ChangeCallback,
    ) -> Subscription:
        return await self.change_feed.subscribe(scope, on_change)

    async def health_check(self) -> bool:
        try:
            async with self.session_maker() as session:
                await session.execute(select(func.count(Order.id)))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Order store health check failed: {e}")
            return False
