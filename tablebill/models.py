"""
SQLAlchemy Database Models

A single ``orders`` table backs the whole billing model. Sessions and
tables are not stored: they are groupings derived from the
``(restaurant_id, table_number, session_id)`` columns of unpaid orders.

Version: 1.0.0
"""

import enum
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, Enum, Float, Index, Integer, String, Text

from tablebill.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, enum.Enum):
    """Fulfillment status workflow."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    PREPARING = "preparing"
    READY = "ready"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


class OrderType(str, enum.Enum):
    """Where the order was placed."""
    QR = "qr"  # customer scanned the table QR code
    TABLE = "table"  # staff entered it for a seated party
    COUNTER = "counter"
    PHONE = "phone"


# Placements that belong to a seated customer session
TABLE_SERVICE_TYPES = frozenset({OrderType.QR, OrderType.TABLE})

# Column receiving a timestamp when an order enters each status
STATUS_TIMESTAMP_FIELDS = {
    OrderStatus.ACCEPTED: "accepted_at",
    OrderStatus.PREPARING: "preparing_at",
    OrderStatus.READY: "ready_at",
    OrderStatus.COMPLETED: "completed_at",
    OrderStatus.CANCELLED: "cancelled_at",
}


class Order(Base):
    """
    A single placed purchase unit.

    ``total`` is the authoritative billable amount and always equals
    ``subtotal + tax - discount``. Once ``is_paid`` is set the row is
    frozen for everything except administrative correction.
    """
    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_unpaid_table", "restaurant_id", "table_number", "is_paid"),
        Index("ix_orders_session", "restaurant_id", "session_id"),
    )

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    restaurant_id = Column(String(64), nullable=False, index=True)
    order_number = Column(String(32), nullable=True)

    # =========================================================================
    # PLACEMENT CONTEXT
    # =========================================================================
    order_type = Column(
        Enum(OrderType, values_callable=lambda e: [m.value for m in e]),
        default=OrderType.QR,
        nullable=False,
    )
    table_number = Column(String(20), nullable=True)
    session_id = Column(String(64), nullable=True)

    # =========================================================================
    # CUSTOMER INFORMATION
    # =========================================================================
    customer_name = Column(String(100), nullable=True)
    customer_phone = Column(String(20), nullable=True)
    customer_notes = Column(Text, nullable=True)
    internal_notes = Column(Text, nullable=True)

    # =========================================================================
    # ORDER DETAILS
    # =========================================================================
    items = Column(JSON, nullable=False, default=list)  # list of order lines

    # =========================================================================
    # PRICING
    # =========================================================================
    subtotal = Column(Float, nullable=False, default=0.0)
    tax = Column(Float, nullable=False, default=0.0)
    discount = Column(Float, nullable=False, default=0.0)
    total = Column(Float, nullable=False, default=0.0)

    # =========================================================================
    # FULFILLMENT
    # =========================================================================
    status = Column(
        Enum(OrderStatus, values_callable=lambda e: [m.value for m in e]),
        default=OrderStatus.PENDING,
        nullable=False,
        index=True,
    )
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    preparing_at = Column(DateTime(timezone=True), nullable=True)
    ready_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    # =========================================================================
    # PAYMENT
    # =========================================================================
    is_paid = Column(Boolean, nullable=False, default=False)
    payment_method = Column(String(50), nullable=True)  # cash, card, transfer...
    payment_transaction_id = Column(String(100), nullable=True)

    # =========================================================================
    # TIMESTAMPS
    # =========================================================================
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=utcnow)

    def __repr__(self):
        return (
            f"<Order #{self.id} - {self.restaurant_id} - table {self.table_number} "
            f"- {self.status.value} - {'paid' if self.is_paid else 'unpaid'}>"
        )
