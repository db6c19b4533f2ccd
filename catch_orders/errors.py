"""
Typed failures raised by the order core.

Each error carries the HTTP status it maps to and a `detail` payload; the
routes in `main.py` turn them into `HTTPException` responses.
"""
from decimal import Decimal
from typing import Any, Dict, List, Optional


def format_kg(value: Decimal) -> str:
    """Render a weight without trailing zeros or exponent (Decimal('5.000') -> '5')."""
    return format(Decimal(value).normalize(), "f")


class OrderError(Exception):
    """Base class for order-processing failures."""
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    @property
    def detail(self) -> Any:
        return self.message


class ValidationError(OrderError):
    """Malformed input: item count, quantity bounds, address length."""
    status_code = 400

    def __init__(self, errors: List[Dict[str, str]]):
        self.errors = errors
        summary = "; ".join(f"{e['field']}: {e['message']}" for e in errors)
        super().__init__(f"Validation failed: {summary}")

    @property
    def detail(self) -> Any:
        return {"message": "Validation failed", "errors": self.errors}


class SkuNotFound(OrderError):
    status_code = 404

    def __init__(self, sku: str):
        self.sku = sku
        super().__init__(f"SKU '{sku}' not found")


class InsufficientStock(OrderError):
    status_code = 400

    def __init__(self, sku: str, available: Decimal, requested: Decimal, label: Optional[str] = None):
        self.sku = sku
        self.available = available
        self.requested = requested
        subject = label or f"SKU '{sku}'"
        super().__init__(
            f"Insufficient stock for {subject}. "
            f"Available: {format_kg(available)}, Requested: {format_kg(requested)}"
        )

    @property
    def detail(self) -> Any:
        return {
            "message": self.message,
            "sku": self.sku,
            "available": format_kg(self.available),
            "requested": format_kg(self.requested),
        }


class InvalidTransition(OrderError):
    status_code = 400

    def __init__(self, current: str, attempted: str):
        self.current = current
        self.attempted = attempted
        super().__init__(f"Cannot change status from {current} to {attempted}")


class OrderNotFound(OrderError):
    status_code = 404

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__("Order not found")


class StorageUnavailable(OrderError):
    """Persistence or counter failure; safe for the caller to retry."""
    status_code = 500
    retryable = True
