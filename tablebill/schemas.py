"""
Pydantic Schemas for Request/Response Validation

Covers:
- Order placement with tagged price variants
- Stored order records (permissive, historical rows must still load)
- Session groups, table bills and the staff table grid
- Payment and status-change requests

Version: 1.0.0
"""

from datetime import datetime
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tablebill.models import TABLE_SERVICE_TYPES, OrderStatus, OrderType


# =============================================================================
# PRICE VARIANTS
# =============================================================================

class StandardPrice(BaseModel):
    """Regular menu price."""
    model_config = ConfigDict(frozen=True)

    price_type: Literal["standard"] = "standard"
    amount: float = Field(..., ge=0, examples=[80.0])


class SeafoodPrice(BaseModel):
    """Price when the dish is made with seafood."""
    model_config = ConfigDict(frozen=True)

    price_type: Literal["seafood"] = "seafood"
    amount: float = Field(..., ge=0, examples=[120.0])


class ChickenOrPorkPrice(BaseModel):
    """Price when the dish is made with chicken or pork."""
    model_config = ConfigDict(frozen=True)

    price_type: Literal["chicken_pork"] = "chicken_pork"
    amount: float = Field(..., ge=0, examples=[90.0])


PriceVariant = Annotated[
    Union[StandardPrice, SeafoodPrice, ChickenOrPorkPrice],
    Field(discriminator="price_type"),
]


class PricedOption(BaseModel):
    """A size or add-on with its own price."""
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, max_length=100, examples=["Large"])
    price: float = Field(default=0.0, ge=0, examples=[20.0])


# =============================================================================
# ORDER LINES
# =============================================================================

class OrderLineCreate(BaseModel):
    """Single line as submitted by the customer or staff."""
    menu_item_id: str = Field(..., min_length=1, examples=["b7c1"])
    name: str = Field(..., min_length=1, max_length=200, examples=["Pad Kra Pao"])
    quantity: int = Field(..., ge=1, le=99, examples=[2])
    price: PriceVariant
    selected_size: Optional[PricedOption] = None
    selected_addons: List[PricedOption] = Field(default_factory=list)
    special_instructions: Optional[str] = Field(None, max_length=300)

    @property
    def unit_price(self) -> float:
        """A selected size replaces the variant price."""
        if self.selected_size is not None:
            return self.selected_size.price
        return self.price.amount

    @property
    def line_total(self) -> float:
        addons = sum(addon.price for addon in self.selected_addons)
        return round((self.unit_price + addons) * self.quantity, 2)

    def resolve(self) -> "OrderLine":
        """Freeze the line with its computed total."""
        return OrderLine(**self.model_dump(), item_total=self.line_total)


class OrderLine(OrderLineCreate):
    """Line as carried on a stored order. Immutable once created."""
    model_config = ConfigDict(frozen=True)

    item_total: float = Field(..., ge=0)


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class OrderCreate(BaseModel):
    """Request schema for placing a new order."""

    order_type: OrderType = Field(default=OrderType.QR, examples=["qr"])
    table_number: Optional[str] = Field(None, max_length=20, examples=["5"])

    # Either an already-resolved session token, or the device it should be
    # resolved for. Table-service orders and customer takeaway orders carry
    # a session; staff-entered counter and phone orders do not.
    session_id: Optional[str] = Field(None, max_length=64)
    device_id: Optional[str] = Field(None, max_length=128)

    customer_name: Optional[str] = Field(None, max_length=100)
    customer_phone: Optional[str] = Field(None, max_length=20)
    customer_notes: Optional[str] = Field(None, max_length=500)

    items: List[OrderLineCreate] = Field(..., min_length=1)
    discount: float = Field(default=0.0, ge=0)
    payment_method: Optional[str] = Field(None, max_length=50)

    @field_validator("table_number")
    @classmethod
    def strip_table(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        return v or None

    @model_validator(mode="after")
    def check_placement(self) -> "OrderCreate":
        if self.is_table_service:
            if not self.table_number:
                raise ValueError("table_number is required for table-service orders")
            if not self.session_id and not self.device_id:
                raise ValueError("table-service orders need a session_id or device_id")
        elif self.session_id and self.order_type != OrderType.COUNTER:
            raise ValueError("session_id is only valid for table-service and takeaway orders")
        return self

    @property
    def is_table_service(self) -> bool:
        return self.order_type in TABLE_SERVICE_TYPES

    @property
    def is_customer_takeaway(self) -> bool:
        """Counter order sent from a customer's own device."""
        return self.order_type == OrderType.COUNTER and bool(self.session_id or self.device_id)


class OrderStatusUpdate(BaseModel):
    """Move an order to a new fulfillment status."""
    status: OrderStatus


class OrderUpdate(BaseModel):
    """Staff edit of an unpaid order. Totals are re-derived."""
    items: Optional[List[OrderLineCreate]] = Field(None, min_length=1)
    discount: Optional[float] = Field(None, ge=0)
    customer_notes: Optional[str] = Field(None, max_length=500)
    internal_notes: Optional[str] = Field(None, max_length=500)


class PaymentDetails(BaseModel):
    """Free-form payment annotation, no provider contract implied."""
    payment_method: Optional[str] = Field(None, max_length=50, examples=["cash"])
    transaction_id: Optional[str] = Field(None, max_length=100)


class SessionResolveRequest(BaseModel):
    device_id: str = Field(..., min_length=1, max_length=128)
    table_number: Optional[str] = Field(None, max_length=20)


# =============================================================================
# STORED RECORDS
# =============================================================================

class OrderRecord(BaseModel):
    """
    Order as read back from the store.

    Money fields are optional on purpose: partial or historical rows
    must load so the aggregator can treat missing amounts as zero.
    """
    model_config = ConfigDict(from_attributes=True)

    id: int
    restaurant_id: str
    order_number: Optional[str] = None
    order_type: str = OrderType.QR.value
    table_number: Optional[str] = None
    session_id: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_notes: Optional[str] = None
    internal_notes: Optional[str] = None
    items: List[Any] = Field(default_factory=list)
    subtotal: Optional[float] = None
    tax: Optional[float] = None
    discount: Optional[float] = None
    total: Optional[float] = None
    status: str = OrderStatus.PENDING.value
    is_paid: bool = False
    payment_method: Optional[str] = None
    payment_transaction_id: Optional[str] = None
    accepted_at: Optional[datetime] = None
    preparing_at: Optional[datetime] = None
    ready_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("order_type", "status", mode="before")
    @classmethod
    def enum_to_value(cls, v: Any) -> Any:
        return getattr(v, "value", v)

    @field_validator("is_paid", mode="before")
    @classmethod
    def paid_default(cls, v: Any) -> bool:
        return bool(v)

    @field_validator("items", mode="before")
    @classmethod
    def items_default(cls, v: Any) -> Any:
        return v or []


class OrderListResponse(BaseModel):
    """Response for listing multiple orders."""
    total: int
    orders: List[OrderRecord]


# =============================================================================
# AGGREGATES
# =============================================================================

class SessionGroup(BaseModel):
    """Orders of one dining session (or one session-less order)."""
    session_id: Optional[str]
    orders: List[OrderRecord]
    total: float
    is_paid: bool


class TableBill(BaseModel):
    """Bill for one table: all of its unpaid sessions."""
    restaurant_id: str
    table_number: str
    groups: List[SessionGroup] = Field(default_factory=list)
    table_total: float = 0.0
    all_paid: bool = True
    computed_at: Optional[datetime] = None


class TableSummary(BaseModel):
    """One tile of the staff table grid."""
    table_number: str
    total: float = 0.0
    order_count: int = 0
    all_completed: bool = False
    can_pay: bool = False


class TableGrid(BaseModel):
    """Staff view of every table of a restaurant."""
    restaurant_id: str
    tables: List[TableSummary] = Field(default_factory=list)
    computed_at: Optional[datetime] = None


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class PayResponse(BaseModel):
    """Outcome of a pay operation."""
    success: bool
    operation: str
    updated: int = 0
    noop: bool = False
    reason: Optional[str] = None
    error_message: Optional[str] = None


class SessionResolveResponse(BaseModel):
    session_id: str
    table_number: str


class RestaurantStats(BaseModel):
    """Dashboard counters."""
    pending_orders: int = 0
    today_orders: int = 0
    completed_today: int = 0
    today_revenue: float = 0.0
    total_orders: int = 0


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    database: str
    change_feed: str
    timestamp: datetime
