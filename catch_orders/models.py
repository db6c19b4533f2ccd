"""
SQLAlchemy ORM models for the Orders service.

Defines the database schema for orders, their timeline, the per-day order
number counter, and the inventory records orders reserve stock from.
"""
from datetime import datetime, timezone
from decimal import Decimal
from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import TypeDecorator
from .database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ExactDecimal(TypeDecorator):
    """
    Decimal column stored as text.

    Money and weights must round-trip without float conversion, which
    SQLite's NUMERIC affinity does not guarantee.
    """
    impl = String(40)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return str(Decimal(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Decimal(value)


class InventoryItem(Base):
    """
    Inventory record an order reserves stock from.

    Owned by the catalog; this service only reads it and moves `qty_grams`
    through the atomic reservation functions in `inventory.py`.

    Attributes:
        id (int): Primary key
        sku (str): Stock Keeping Unit
        kind (str): Fish type (e.g. "tilapia", "omena")
        size (int): Size grade
        unit_price (Decimal): Price per kilogram
        qty_grams (int): Available quantity in grams
        is_active (bool): Whether the SKU can be ordered
        created_at (datetime): Timestamp when the item was created
    """
    __tablename__ = "inventory"

    id = Column(Integer, primary_key=True, index=True)
    sku = Column(String, unique=True, index=True, nullable=False)
    kind = Column(String, nullable=False)
    size = Column(Integer, nullable=False)
    unit_price = Column(ExactDecimal, nullable=False)
    qty_grams = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)


class Order(Base):
    """
    Order model representing a customer order in the system.

    Attributes:
        id (str): Primary key, opaque order ID assigned at creation
        order_number (str): Human-readable number, e.g. "ORD-20261019-0001"
        user_id (int): ID of the user who placed the order
        items (list): Line items with sku, kind, size, quantity, unit_price
            and subtotal, decimals stored as strings (JSON)
        total_price (Decimal): Exact sum of the item subtotals
        delivery_address (str): Where the order is delivered
        delivery_fee (Decimal): Flat delivery fee
        notes (str): Customer notes
        operator_notes (str): Notes left by the operator on status changes
        status (str): pending, processing, shipped, delivered or cancelled
        payment_status (str): pending, paid or failed
        estimated_delivery (datetime): Expected delivery time
        actual_delivery (datetime): Set when the order is delivered
        created_at (datetime): Timestamp when the order was created
        updated_at (datetime): Timestamp of the last status change
    """
    __tablename__ = "orders"

    id = Column(String, primary_key=True, index=True)
    order_number = Column(String, unique=True, index=True, nullable=False)
    user_id = Column(Integer, nullable=False, index=True)
    items = Column(JSON().with_variant(JSONB, "postgresql"), nullable=False, default=list)
    total_price = Column(ExactDecimal, nullable=False)
    delivery_address = Column(String(200), nullable=False)
    delivery_fee = Column(ExactDecimal, nullable=False)
    notes = Column(Text, nullable=True)
    operator_notes = Column(Text, nullable=True)
    status = Column(String, nullable=False, default="pending", index=True)
    payment_status = Column(String, nullable=False, default="pending")
    estimated_delivery = Column(DateTime, nullable=True)
    actual_delivery = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)


class OrderEvent(Base):
    """
    OrderEvent model representing historical events in an order's lifecycle.

    Attributes:
        id (int): Primary key, auto-incrementing event ID
        order_id (str): Foreign key to the order
        event_type (str): Type of event ("created" or "status_changed")
        description (str): Human-readable description of the event
        old_value (str): Previous value (for changes, optional)
        new_value (str): New value (for changes, optional)
        user_id (int): ID of the user who triggered the event (optional)
        created_at (datetime): Timestamp when the event occurred
    """
    __tablename__ = "order_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    event_type = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    old_value = Column(String, nullable=True)
    new_value = Column(String, nullable=True)
    user_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class OrderCounter(Base):
    """
    Per-day order number counter.

    Attributes:
        day (date): UTC calendar day the counter belongs to
        last_value (int): Last sequence number handed out for that day
    """
    __tablename__ = "order_counters"

    day = Column(Date, primary_key=True)
    last_value = Column(Integer, nullable=False, default=0)
