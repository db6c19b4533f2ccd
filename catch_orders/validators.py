"""
Business validation for order requests.

Schema constraints cover types and per-field bounds; these checks cover the
rules that span fields and collect every problem into one ValidationError.
"""
from decimal import Decimal
from typing import Dict, List, Optional
from . import schemas
from .errors import ValidationError

MIN_ITEMS = 1
MAX_ITEMS = 10
MIN_QUANTITY = Decimal("1")
MAX_QUANTITY = Decimal("10000")
MIN_ADDRESS_LENGTH = 10
MAX_ADDRESS_LENGTH = 200
MAX_NOTES_LENGTH = 500


def validate_order_items(items: List[schemas.OrderItemRequest]) -> List[Dict[str, str]]:
    """
    Validate requested line items.

    Duplicate SKUs are allowed; each stays its own line item.

    Args:
        items: Requested line items

    Returns:
        List of {field, message} problems, empty if valid
    """
    errors = []
    if len(items) < MIN_ITEMS or len(items) > MAX_ITEMS:
        errors.append({
            "field": "items",
            "message": f"Order must have between {MIN_ITEMS} and {MAX_ITEMS} items",
        })

    for index, item in enumerate(items):
        if item.quantity < MIN_QUANTITY:
            errors.append({"field": f"items.{index}.quantity", "message": "Quantity must be at least 1 kg"})
        elif item.quantity > MAX_QUANTITY:
            errors.append({"field": f"items.{index}.quantity", "message": f"Quantity exceeds maximum ({MAX_QUANTITY})"})
        elif item.quantity.as_tuple().exponent < -3:
            errors.append({"field": f"items.{index}.quantity", "message": "Quantity is limited to whole grams"})

    return errors


def validate_delivery_address(address: Optional[str]) -> List[Dict[str, str]]:
    if address is None:
        return [{"field": "delivery_address", "message": "Delivery address is required"}]
    length = len(address.strip())
    if length < MIN_ADDRESS_LENGTH or length > MAX_ADDRESS_LENGTH:
        return [{
            "field": "delivery_address",
            "message": f"Delivery address must be between {MIN_ADDRESS_LENGTH} and {MAX_ADDRESS_LENGTH} characters",
        }]
    return []


def validate_order_request(
    items: List[schemas.OrderItemRequest],
    delivery_address: Optional[str],
    notes: Optional[str] = None,
) -> None:
    """
    Validate a whole order request.

    Raises:
        ValidationError: listing every field-level problem found
    """
    errors = validate_order_items(items)
    errors.extend(validate_delivery_address(delivery_address))
    if notes is not None and len(notes) > MAX_NOTES_LENGTH:
        errors.append({"field": "notes", "message": f"Notes cannot exceed {MAX_NOTES_LENGTH} characters"})
    if errors:
        raise ValidationError(errors)
