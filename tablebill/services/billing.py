"""
Billing State Machine

Payment state of an order only ever moves ``unpaid → paid``. Three
operations drive that transition, each a single filter-then-set update
evaluated live in the store at execution time:

    pay_session          every order of one session, any status
    pay_table_gated      completed unpaid orders of a table, only when
                         no unpaid order of the table is still open
    pay_table_override   every unpaid order of a table, any status

Business mismatches (nothing to pay, table not ready) are successful
no-ops. Only store faults produce ``success=False``; callers should
re-fetch before retrying because they cannot know what was applied.

Version: 1.0.0
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

from tablebill.models import OrderStatus
from tablebill.schemas import OrderRecord
from tablebill.services.store.base import BaseOrderStore, OrderFilter, StoreError

logger = logging.getLogger(__name__)


class PayOperation(str, Enum):
    SESSION = "pay_session"
    TABLE_GATED = "pay_table_gated"
    TABLE_OVERRIDE = "pay_table_override"


class NoopReason(str, Enum):
    NOTHING_TO_PAY = "nothing_to_pay"
    ORDERS_INCOMPLETE = "orders_incomplete"


@dataclass
class BillingResult:
    """
    Standardized result of a pay operation.

    Attributes:
        success: False only when the store failed
        operation: Which pay operation ran
        restaurant_id: Restaurant the operation was scoped to
        target: Session id or table number
        paid_orders: Orders this call moved to paid
        noop: True when nothing changed
        reason: Why nothing changed, for no-ops
        error_message: Store failure description
    """
    success: bool
    operation: PayOperation
    restaurant_id: str
    target: str
    paid_orders: list[OrderRecord] = field(default_factory=list)
    noop: bool = False
    reason: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def updated(self) -> int:
        return len(self.paid_orders)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": self.success,
            "operation": self.operation.value,
            "updated": self.updated,
            "noop": self.noop,
            "reason": self.reason,
            "error_message": self.error_message,
        }


SettlementSink = Callable[[BillingResult], Union[Awaitable[None], None]]


class BillingStateMachine:
    """
    Legal payment transitions over an order store.

    Holds no state of its own; every decision is made against the
    store at the moment the operation runs.

    Attributes:
        store: Order store to filter and update
        settlement_sink: Called in the background with every result that
            paid something; the pay call never waits for it
    """

    def __init__(
        self,
        store: BaseOrderStore,
        settlement_sink: Optional[SettlementSink] = None,
    ):
        self.store = store
        self.settlement_sink = settlement_sink
        self._pending: set[asyncio.Task] = set()

    # =========================================================================
    # PAY OPERATIONS
    # =========================================================================

    async def pay_session(
        self,
        restaurant_id: str,
        session_id: str,
        payment_method: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> BillingResult:
        """
        Mark every order of a session paid, regardless of status.

        A customer settles the session as a unit; an item still being
        prepared does not block checkout.
        """
        target = OrderFilter(restaurant_id=restaurant_id, session_id=session_id, is_paid=False)
        return await self._pay(
            PayOperation.SESSION,
            restaurant_id,
            session_id,
            target,
            self._patch(payment_method, transaction_id),
        )

    async def pay_table_gated(
        self,
        restaurant_id: str,
        table_number: str,
        payment_method: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> BillingResult:
        """
        Mark a table paid once all of its unpaid orders are completed.

        No-op while any unpaid order of the table is in another status.
        The update itself also filters on ``completed``, so an order
        placed between the check and the write stays unpaid.
        """
        operation = PayOperation.TABLE_GATED
        open_orders = OrderFilter(
            restaurant_id=restaurant_id,
            table_number=table_number,
            is_paid=False,
            exclude_statuses={OrderStatus.COMPLETED},
        )
        try:
            blocking = await self.store.count(open_orders)
        except StoreError as e:
            return self._failed(operation, restaurant_id, table_number, e)

        if blocking:
            logger.info(
                f"Gated pay for {restaurant_id} table {table_number} skipped: "
                f"{blocking} order(s) not completed"
            )
            return BillingResult(
                success=True,
                operation=operation,
                restaurant_id=restaurant_id,
                target=table_number,
                noop=True,
                reason=NoopReason.ORDERS_INCOMPLETE.value,
            )

        target = OrderFilter(
            restaurant_id=restaurant_id,
            table_number=table_number,
            is_paid=False,
            statuses={OrderStatus.COMPLETED},
        )
        return await self._pay(
            operation,
            restaurant_id,
            table_number,
            target,
            self._patch(payment_method, transaction_id),
        )

    async def pay_table_override(
        self,
        restaurant_id: str,
        table_number: str,
        payment_method: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> BillingResult:
        """
        Administrative override: mark every unpaid order of a table paid.

        For walkouts, comps and other manual settlements.
        """
        target = OrderFilter(restaurant_id=restaurant_id, table_number=table_number, is_paid=False)
        logger.warning(f"Override pay requested for {restaurant_id} table {table_number}")
        return await self._pay(
            PayOperation.TABLE_OVERRIDE,
            restaurant_id,
            table_number,
            target,
            self._patch(payment_method, transaction_id),
        )

    # =========================================================================
    # AFFORDANCES
    # =========================================================================

    async def can_pay_table(self, restaurant_id: str, table_number: str) -> bool:
        """Whether the gated pay button should be enabled."""
        unpaid = OrderFilter(restaurant_id=restaurant_id, table_number=table_number, is_paid=False)
        if not await self.store.count(unpaid):
            return False
        open_orders = OrderFilter(
            restaurant_id=restaurant_id,
            table_number=table_number,
            is_paid=False,
            exclude_statuses={OrderStatus.COMPLETED},
        )
        return await self.store.count(open_orders) == 0

    # =========================================================================
    # HELPERS
    # =========================================================================

    @staticmethod
    def _patch(payment_method: Optional[str], transaction_id: Optional[str]) -> dict[str, Any]:
        patch: dict[str, Any] = {"is_paid": True}
        if payment_method:
            patch["payment_method"] = payment_method
        if transaction_id:
            patch["payment_transaction_id"] = transaction_id
        return patch

    async def _pay(
        self,
        operation: PayOperation,
        restaurant_id: str,
        target_id: str,
        target: OrderFilter,
        patch: dict[str, Any],
    ) -> BillingResult:
        try:
            paid = await self.store.bulk_update(target, patch)
        except StoreError as e:
            return self._failed(operation, restaurant_id, target_id, e)

        if not paid:
            logger.debug(f"{operation.value} {restaurant_id}/{target_id}: nothing to pay")
            return BillingResult(
                success=True,
                operation=operation,
                restaurant_id=restaurant_id,
                target=target_id,
                noop=True,
                reason=NoopReason.NOTHING_TO_PAY.value,
            )

        result = BillingResult(
            success=True,
            operation=operation,
            restaurant_id=restaurant_id,
            target=target_id,
            paid_orders=paid,
        )
        logger.info(f"{operation.value} {restaurant_id}/{target_id}: {result.updated} order(s) paid")
        self._settle(result)
        return result

    def _settle(self, result: BillingResult) -> None:
        """Hand the result to the sink in the background."""
        if self.settlement_sink is None:
            return
        task = asyncio.create_task(self._run_sink(result))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _run_sink(self, result: BillingResult) -> None:
        try:
            outcome = self.settlement_sink(result)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            # Payment is already committed; the ledger is best effort
            logger.exception(f"Settlement sink failed for {result.operation.value} {result.target}")

    async def drain(self) -> None:
        """Wait for settlements handed to the sink so far."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    @staticmethod
    def _failed(
        operation: PayOperation,
        restaurant_id: str,
        target_id: str,
        error: StoreError,
    ) -> BillingResult:
        logger.error(f"{operation.value} {restaurant_id}/{target_id} failed: {error}")
        return BillingResult(
            success=False,
            operation=operation,
            restaurant_id=restaurant_id,
            target=target_id,
            error_message=str(error),
        )
