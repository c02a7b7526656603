"""
Order Store Abstract Base Class

Defines the contract every order store must honour. The billing and
aggregation layers only ever talk to this interface:

    - query(filter)              -> current orders matching a filter
    - insert(values)             -> new order with server-assigned id
    - bulk_update(filter, patch) -> filter-then-set, used for payments
    - subscribe(scope, callback) -> "something changed" notifications

There is no read-modify-write of totals anywhere: every mutation is a
single statement filtered in the store, which is the only concurrency
primitive the billing model relies on.

Version: 1.0.0
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

from tablebill.models import OrderStatus, OrderType
from tablebill.schemas import OrderRecord


class StoreError(Exception):
    """The store could not be reached or rejected the request."""


@dataclass(frozen=True)
class OrderFilter:
    """
    Conjunction of optional conditions over orders.

    ``None`` means "don't filter on this field". ``statuses`` and
    ``exclude_statuses`` are sets of allowed / forbidden statuses.
    """
    restaurant_id: Optional[str] = None
    order_id: Optional[int] = None
    table_number: Optional[str] = None
    session_id: Optional[str] = None
    is_paid: Optional[bool] = None
    statuses: frozenset = field(default_factory=frozenset)
    exclude_statuses: frozenset = field(default_factory=frozenset)
    order_type: Optional[OrderType] = None
    has_table: Optional[bool] = None
    created_from: Optional[datetime] = None

    def __post_init__(self):
        # Accept any iterable of statuses from callers
        object.__setattr__(self, "statuses", _status_set(self.statuses))
        object.__setattr__(self, "exclude_statuses", _status_set(self.exclude_statuses))


def _status_set(values: Iterable[Union[OrderStatus, str]]) -> frozenset:
    return frozenset(OrderStatus(v) for v in values)


@dataclass(frozen=True)
class ChangeEvent:
    """
    Notification that orders of a restaurant changed.

    Carries no guarantee beyond "something changed": subscribers must
    re-query. ``table_number`` is ``None`` when the writer did not know
    which tables were touched.
    """
    restaurant_id: str
    kind: str  # insert | update | delete
    table_number: Optional[str] = None
    order_ids: tuple = ()

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "restaurant_id": self.restaurant_id,
            "kind": self.kind,
            "table_number": self.table_number,
            "order_ids": list(self.order_ids),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ChangeEvent":
        return cls(
            restaurant_id=data["restaurant_id"],
            kind=data.get("kind", "update"),
            table_number=data.get("table_number"),
            order_ids=tuple(data.get("order_ids") or ()),
        )


@dataclass(frozen=True)
class SubscriptionScope:
    """A restaurant, optionally narrowed to one table."""
    restaurant_id: str
    table_number: Optional[str] = None

    def matches(self, event: ChangeEvent) -> bool:
        if event.restaurant_id != self.restaurant_id:
            return False
        if self.table_number is None or event.table_number is None:
            return True
        return event.table_number == self.table_number


ChangeCallback = Callable[[ChangeEvent], Union[Awaitable[None], None]]


class Subscription(ABC):
    """Disposable handle returned by ``subscribe``."""

    @property
    @abstractmethod
    def closed(self) -> bool:
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release the subscription. Safe to call more than once."""
        pass


class BaseOrderStore(ABC):
    """
    Abstract base class for order stores.

    Implementations raise ``StoreError`` for any I/O fault and never
    for business-state mismatches (an update matching nothing simply
    affects zero rows).
    """

    @property
    @abstractmethod
    def backend_name(self) -> str:
        pass

    @abstractmethod
    async def query(
        self,
        order_filter: OrderFilter,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[OrderRecord]:
        """
        Return orders matching ``order_filter`` sorted by ``created_at``.

        Args:
            order_filter: Conditions to apply
            descending: Newest first instead of oldest first
            limit: Maximum number of rows
        """
        pass

    @abstractmethod
    async def count(self, order_filter: OrderFilter) -> int:
        pass

    @abstractmethod
    async def get(self, order_id: int) -> Optional[OrderRecord]:
        pass

    @abstractmethod
    async def insert(self, values: dict[str, Any]) -> OrderRecord:
        """
        Create one order.

        The store assigns ``id``, ``order_number`` and ``created_at``.
        """
        pass

    @abstractmethod
    async def bulk_update(
        self,
        order_filter: OrderFilter,
        patch: dict[str, Any],
    ) -> list[OrderRecord]:
        """
        Apply ``patch`` to every order matching ``order_filter``.

        Returns:
            The orders the statement actually changed, as they are
            after the update. Empty when nothing matched.
        """
        pass

    @abstractmethod
    async def update(
        self,
        order_id: int,
        patch: dict[str, Any],
        unpaid_only: bool = True,
    ) -> Optional[OrderRecord]:
        """
        Apply ``patch`` to a single order.

        Returns ``None`` when no row matched (unknown id, or already
        paid while ``unpaid_only`` is set).
        """
        pass

    @abstractmethod
    async def delete(self, order_id: int) -> bool:
        pass

    @abstractmethod
    async def subscribe(
        self,
        scope: SubscriptionScope,
        on_change: ChangeCallback,
    ) -> Subscription:
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        pass
