"""
Pydantic schemas for request/response validation in the Orders service.

These schemas define the structure of data for API requests and responses,
and the payloads pushed to real-time subscribers.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field, computed_field


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class OrderItemRequest(BaseModel):
    """Schema for a requested line item."""
    sku: str = Field(..., min_length=1, description="Product SKU from inventory")
    quantity: Decimal = Field(..., ge=1, le=10000, decimal_places=3, description="Quantity in kilograms")


class OrderCreate(BaseModel):
    """Schema for creating a new order."""
    items: List[OrderItemRequest] = Field(..., description="Requested line items (1-10)")
    delivery_address: Optional[str] = Field(None, description="Falls back to the owner's default address")
    notes: Optional[str] = Field(None, max_length=500)


class StatusUpdate(BaseModel):
    """Schema for an operator-issued status change."""
    status: OrderStatus
    operator_notes: Optional[str] = Field(None, max_length=500)


class OrderItem(BaseModel):
    """Line item as recorded on the order, prices copied at order time."""
    sku: str
    kind: str
    size: int
    quantity: Decimal
    unit_price: Decimal
    subtotal: Decimal


class Order(BaseModel):
    """
    Schema for order responses, includes all database fields.

    Attributes:
        id (str): Order's unique identifier
        order_number (str): Day-scoped human-readable number
        user_id (int): ID of the user who placed the order
        items (List[OrderItem]): Order line items
        total_price (Decimal): Sum of the item subtotals
        grand_total (Decimal): total_price plus the delivery fee
        status (OrderStatus): Current lifecycle status
        created_at (datetime): When the order was created
    """
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_number: str
    user_id: int
    items: List[OrderItem]
    total_price: Decimal
    delivery_address: str
    delivery_fee: Decimal
    notes: Optional[str] = None
    operator_notes: Optional[str] = None
    status: OrderStatus
    payment_status: PaymentStatus
    estimated_delivery: Optional[datetime] = None
    actual_delivery: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @computed_field
    @property
    def grand_total(self) -> Decimal:
        return self.total_price + self.delivery_fee


class OrderEvent(BaseModel):
    """
    Schema for order timeline events.

    Attributes:
        id (int): Event ID
        order_id (str): Order identifier
        event_type (str): Type of event (created, status_changed)
        description (str): Human-readable event description
        old_value (str): Previous value (optional)
        new_value (str): New value (optional)
        user_id (int): User who triggered the event (optional)
        created_at (datetime): When the event occurred
    """
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: str
    event_type: str
    description: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    user_id: Optional[int] = None
    created_at: datetime


class InventoryRecord(BaseModel):
    """Snapshot of an inventory record as the reservation workflow sees it."""
    sku: str
    kind: str
    size: int
    unit_price: Decimal
    available: Decimal
    is_active: bool


class OrderUpdateEvent(BaseModel):
    """Payload pushed to `order-<orderId>` when the status changes."""
    orderId: str
    orderNumber: str
    status: OrderStatus
    updatedAt: datetime


class NewOrderEvent(BaseModel):
    """Payload pushed to the operator room when an order is created."""
    orderId: str
    orderNumber: str
    totalPrice: Decimal
    ownerId: int


class MonthlyTrend(BaseModel):
    year: int
    month: int
    orders: int
    revenue: Decimal


class OrderSummary(BaseModel):
    """
    Order statistics for operators.

    Revenue and the average exclude cancelled orders; monthly_trends covers
    the 12 most recent months with orders, newest first.
    """
    total_orders: int
    total_revenue: Decimal
    avg_order_value: Decimal
    status_breakdown: dict
    monthly_trends: List[MonthlyTrend] = []


class UserStatistics(BaseModel):
    total_orders: int
    total_spent: Decimal
    avg_order_value: Decimal


class FavoriteItem(BaseModel):
    kind: str
    size: int
    total_quantity: Decimal
    order_count: int


class OrderHistory(BaseModel):
    """A customer's recent orders with their spending and most ordered items."""
    recent_orders: List[Order]
    statistics: UserStatistics
    favorite_items: List[FavoriteItem]
