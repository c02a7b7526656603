"""
Live View Synchronizer

Bridges order change notifications to the aggregator and pushes fresh
views to every attached observer:

    table scope      (restaurant, table) → TableBill of unpaid orders
    restaurant scope (restaurant)        → TableGrid for the staff screen

Each scope owns one store subscription, shared by all of its
observers, released when the last observer detaches. A change triggers
a full re-fetch and recompute. At most one recompute runs per scope;
events arriving meanwhile mark the scope dirty and cause exactly one
follow-up run, so the last published view always reflects the latest
fetch.

Detaching only stops display refreshes. Pay operations run through the
billing service and are never tied to a view's lifetime.
"""

import asyncio
import inspect
import itertools
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Union

from tablebill.schemas import TableBill, TableGrid
from tablebill.services.aggregator import build_table_bill, build_table_grid
from tablebill.services.store.base import (
    BaseOrderStore,
    ChangeEvent,
    OrderFilter,
    StoreError,
    Subscription,
    SubscriptionScope,
)

logger = logging.getLogger(__name__)

View = Union[TableBill, TableGrid]
Observer = Callable[[View], Union[Awaitable[None], None]]


@dataclass
class _ScopeState:
    scope: SubscriptionScope
    observers: dict[int, Observer] = field(default_factory=dict)
    subscription: Optional[Subscription] = None
    task: Optional[asyncio.Task] = None
    dirty: bool = False
    snapshot: Optional[View] = None
    recomputes: int = 0


class ViewHandle:
    """Returned by ``attach``; closing it detaches the observer."""

    def __init__(self, synchronizer: "LiveViewSynchronizer", scope: SubscriptionScope, key: int):
        self.synchronizer = synchronizer
        self.scope = scope
        self.key = key
        self.closed = False

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self.synchronizer.detach(self)


class LiveViewSynchronizer:
    """
    Keeps aggregated views current for attached observers.

    Attributes:
        store: Order store to query and subscribe to
        table_count: Tables always present on the staff grid
    """

    def __init__(self, store: BaseOrderStore, table_count: int = 0):
        self.store = store
        self.table_count = table_count
        self._scopes: dict[SubscriptionScope, _ScopeState] = {}
        self._keys = itertools.count(1)

    # =========================================================================
    # OBSERVERS
    # =========================================================================

    async def attach(
        self,
        restaurant_id: str,
        observer: Observer,
        table_number: Optional[str] = None,
    ) -> ViewHandle:
        """
        Register ``observer`` for a scope and push it a fresh view.

        The first observer of a scope opens the store subscription.
        """
        scope = SubscriptionScope(restaurant_id, table_number)
        state = self._scopes.get(scope)
        if state is None:
            state = _ScopeState(scope=scope)
            self._scopes[scope] = state
            try:
                state.subscription = await self.store.subscribe(
                    scope, lambda event: self._on_change(state, event)
                )
            except Exception:
                del self._scopes[scope]
                raise
            logger.info(f"Live view opened for {self._describe(scope)}")

        key = next(self._keys)
        state.observers[key] = observer
        handle = ViewHandle(self, scope, key)

        if state.snapshot is not None:
            await self._notify(observer, state.snapshot)
        await self._refresh(state)
        return handle

    async def detach(self, handle: ViewHandle) -> None:
        state = self._scopes.get(handle.scope)
        if state is None:
            return
        state.observers.pop(handle.key, None)
        if state.observers:
            return

        # Last observer gone: release store-side resources
        del self._scopes[handle.scope]
        if state.task is not None and not state.task.done():
            state.task.cancel()
        if state.subscription is not None:
            await state.subscription.close()
        logger.info(f"Live view closed for {self._describe(handle.scope)}")

    # =========================================================================
    # SYNCHRONOUS VIEWS
    # =========================================================================

    def get_bill(self, restaurant_id: str, table_number: str) -> TableBill:
        """Last recomputed bill, or an empty one before the first recompute."""
        state = self._scopes.get(SubscriptionScope(restaurant_id, table_number))
        if state is not None and isinstance(state.snapshot, TableBill):
            return state.snapshot
        return TableBill(restaurant_id=restaurant_id, table_number=str(table_number))

    def get_grid(self, restaurant_id: str) -> TableGrid:
        state = self._scopes.get(SubscriptionScope(restaurant_id))
        if state is not None and isinstance(state.snapshot, TableGrid):
            return state.snapshot
        return build_table_grid(restaurant_id, [], self.table_count)

    def is_watching(self, restaurant_id: str, table_number: Optional[str] = None) -> bool:
        return SubscriptionScope(restaurant_id, table_number) in self._scopes

    def has_bill(self, restaurant_id: str, table_number: str) -> bool:
        """Whether a recomputed bill is held for the table."""
        state = self._scopes.get(SubscriptionScope(restaurant_id, table_number))
        return state is not None and isinstance(state.snapshot, TableBill)

    def recompute_count(self, restaurant_id: str, table_number: Optional[str] = None) -> int:
        state = self._scopes.get(SubscriptionScope(restaurant_id, table_number))
        return state.recomputes if state else 0

    # =========================================================================
    # RECOMPUTE
    # =========================================================================

    async def compute(self, scope: SubscriptionScope) -> View:
        """Full fetch and aggregation for a scope."""
        if scope.table_number is not None:
            orders = await self.store.query(
                OrderFilter(
                    restaurant_id=scope.restaurant_id,
                    table_number=scope.table_number,
                    is_paid=False,
                )
            )
            return build_table_bill(scope.restaurant_id, scope.table_number, orders)

        orders = await self.store.query(
            OrderFilter(restaurant_id=scope.restaurant_id, is_paid=False, has_table=True)
        )
        return build_table_grid(scope.restaurant_id, orders, self.table_count)

    def _on_change(self, state: _ScopeState, event: Optional[ChangeEvent]) -> None:
        state.dirty = True
        if state.task is None or state.task.done():
            state.task = asyncio.create_task(self._run(state))

    async def _refresh(self, state: _ScopeState) -> None:
        self._on_change(state, None)
        await self._wait(state)

    async def _run(self, state: _ScopeState) -> None:
        while state.dirty and state.observers:
            state.dirty = False
            try:
                view = await self.compute(state.scope)
            except StoreError as e:
                # Keep showing the last view; the next event retries
                logger.warning(f"Recompute for {self._describe(state.scope)} failed: {e}")
                continue
            state.snapshot = view
            state.recomputes += 1
            for observer in list(state.observers.values()):
                await self._notify(observer, view)

    @staticmethod
    async def _wait(state: _ScopeState) -> None:
        task = state.task
        if task is not None and not task.done():
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                if not task.cancelled():
                    raise

    async def wait_idle(self) -> None:
        """Wait until no recompute is running in any scope."""
        while True:
            pending = [
                s.task for s in self._scopes.values() if s.task is not None and not s.task.done()
            ]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    @staticmethod
    async def _notify(observer: Observer, view: View) -> None:
        try:
            result = observer(view)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Live view observer failed")

    @staticmethod
    def _describe(scope: SubscriptionScope) -> str:
        if scope.table_number is None:
            return f"{scope.restaurant_id} (all tables)"
        return f"{scope.restaurant_id} table {scope.table_number}"

    async def close(self) -> None:
        """Detach everything and release every subscription."""
        for scope, state in list(self._scopes.items()):
            state.observers.clear()
            if state.task is not None and not state.task.done():
                state.task.cancel()
            if state.subscription is not None:
                await state.subscription.close()
        self._scopes.clear()
