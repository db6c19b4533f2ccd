"""
Order ledger: database operations on orders and their timeline.

Orders are inserted once, with their number, and afterwards only change
through `apply_status_change`. Nothing here deletes an order.
"""
import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from . import models, numbering

logger = logging.getLogger(__name__)


def get_order(db: Session, order_id: str) -> Optional[models.Order]:
    """
    Retrieve a single order by ID.

    Args:
        db: Database session
        order_id: ID of the order to retrieve

    Returns:
        Order object or None if not found
    """
    return db.query(models.Order).filter(models.Order.id == order_id).first()


def get_orders(
    db: Session,
    user_id: Optional[int] = None,
    status: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
) -> List[models.Order]:
    """
    Retrieve orders, newest first, with pagination.

    Args:
        db: Database session
        user_id: Only return this user's orders if given
        status: Only return orders in this status if given
        skip: Number of records to skip (offset)
        limit: Maximum number of records to return

    Returns:
        List of Order objects
    """
    query = db.query(models.Order)
    if user_id is not None:
        query = query.filter(models.Order.user_id == user_id)
    if status is not None:
        query = query.filter(models.Order.status == status)
    return query.order_by(models.Order.created_at.desc()).offset(skip).limit(limit).all()


def get_order_timeline(db: Session, order_id: str) -> List[models.OrderEvent]:
    return (
        db.query(models.OrderEvent)
        .filter(models.OrderEvent.order_id == order_id)
        .order_by(models.OrderEvent.created_at.asc(), models.OrderEvent.id.asc())
        .all()
    )


def detached_copy(order: models.Order, **changes) -> models.Order:
    """Copy an order's column values into a new, session-less Order."""
    values = {column.key: getattr(order, column.key) for column in models.Order.__table__.columns}
    values.update(changes)
    return models.Order(**values)


def log_order_event(
    db: Session,
    order_id: str,
    event_type: str,
    description: str,
    old_value: str = None,
    new_value: str = None,
    user_id: int = None
) -> None:
    """
    Add an event to the order timeline.

    Does not commit; the event belongs to the caller's transaction so it is
    written together with the change it describes.
    """
    db.add(models.OrderEvent(
        order_id=order_id,
        event_type=event_type,
        description=description,
        old_value=old_value,
        new_value=new_value,
        user_id=user_id
    ))


def create_order(
    db: Session,
    user_id: int,
    items: List[Dict[str, str]],
    total_price: Decimal,
    delivery_address: str,
    delivery_fee: Decimal,
    notes: Optional[str],
    created_at: datetime,
    estimated_delivery: datetime,
) -> models.Order:
    """
    Number and insert a new pending order.

    The counter increment, the order row and its "created" event commit in
    one transaction; on failure all three roll back together.

    Args:
        db: Database session
        user_id: Owner of the order
        items: Line items with decimals already serialized as strings
        total_price: Exact sum of the item subtotals

    Returns:
        Created Order object

    Once the commit succeeds this never raises: if re-reading the stored row
    fails, a detached copy of what was written is returned instead.

    Raises:
        SQLAlchemyError: if the insert fails (after rolling back)
    """
    try:
        order_number = numbering.next_order_number(db, created_at.date())
        db_order = models.Order(
            id=uuid.uuid4().hex,
            order_number=order_number,
            user_id=user_id,
            items=items,
            total_price=total_price,
            delivery_address=delivery_address,
            delivery_fee=delivery_fee,
            notes=notes,
            status="pending",
            payment_status="pending",
            estimated_delivery=estimated_delivery,
            created_at=created_at,
            updated_at=created_at,
        )
        db.add(db_order)
        db.flush()
        log_order_event(
            db=db,
            order_id=db_order.id,
            event_type="created",
            description=f"Order {order_number} created with status 'pending'",
            new_value="pending",
            user_id=user_id,
        )
        written = detached_copy(db_order)
        db.commit()
    except Exception:
        db.rollback()
        raise
    try:
        db.refresh(db_order)
    except SQLAlchemyError as e:
        logger.error(f"Order {order_number} was stored but could not be re-read: {e}")
        db.rollback()
        return written
    return db_order


def apply_status_change(
    db: Session,
    order_id: str,
    current_status: str,
    new_status: str,
    updated_at: datetime,
    operator_notes: Optional[str] = None,
    actual_delivery: Optional[datetime] = None,
    user_id: Optional[int] = None,
) -> bool:
    """
    Move an order from `current_status` to `new_status`.

    The UPDATE only matches while the stored status still equals
    `current_status`, so of two concurrent changes to the same order exactly
    one applies.

    Returns:
        True if the change was applied, False if the order was no longer in
        `current_status`
    """
    values = {"status": new_status, "updated_at": updated_at}
    if operator_notes:
        values["operator_notes"] = operator_notes
    if actual_delivery is not None:
        values["actual_delivery"] = actual_delivery

    stmt = (
        update(models.Order)
        .where(models.Order.id == order_id, models.Order.status == current_status)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    try:
        result = db.execute(stmt)
        if result.rowcount != 1:
            db.rollback()
            return False
        log_order_event(
            db=db,
            order_id=order_id,
            event_type="status_changed",
            description=f"Status changed from '{current_status}' to '{new_status}'",
            old_value=current_status,
            new_value=new_status,
            user_id=user_id,
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise
    # Drop cached state so the next read sees the committed row
    db.expire_all()
    return True


def count_orders(db: Session, user_id: Optional[int] = None, status: Optional[str] = None) -> int:
    """Count the orders `get_orders` pages through for the same filters."""
    query = db.query(models.Order)
    if user_id is not None:
        query = query.filter(models.Order.user_id == user_id)
    if status is not None:
        query = query.filter(models.Order.status == status)
    return query.count()


def order_summary(db: Session, user_id: Optional[int] = None, months: int = 12) -> dict:
    """
    Count orders and revenue, optionally for a single user.

    Revenue is summed in Python because totals are stored as exact decimal
    text. Cancelled orders are counted but earn nothing.

    Args:
        db: Database session
        user_id: Only summarize this user's orders if given
        months: Number of most recent months kept in monthly_trends

    Returns:
        Dict with total_orders, total_revenue, avg_order_value,
        status_breakdown and monthly_trends (newest month first)
    """
    query = select(models.Order.status, models.Order.total_price, models.Order.created_at)
    if user_id is not None:
        query = query.where(models.Order.user_id == user_id)

    total_orders = 0
    paid_orders = 0
    total_revenue = Decimal("0")
    status_breakdown: Dict[str, int] = {}
    monthly: Dict[Tuple[int, int], dict] = {}
    for status, total_price, created_at in db.execute(query):
        total_orders += 1
        status_breakdown[status] = status_breakdown.get(status, 0) + 1
        month = monthly.setdefault(
            (created_at.year, created_at.month),
            {"year": created_at.year, "month": created_at.month, "orders": 0, "revenue": Decimal("0")},
        )
        month["orders"] += 1
        if status != "cancelled":
            paid_orders += 1
            total_revenue += total_price
            month["revenue"] += total_price

    avg_order_value = total_revenue / paid_orders if paid_orders else Decimal("0")
    return {
        "total_orders": total_orders,
        "total_revenue": total_revenue,
        "avg_order_value": avg_order_value,
        "status_breakdown": status_breakdown,
        "monthly_trends": [monthly[key] for key in sorted(monthly, reverse=True)[:months]],
    }


def favorite_items(db: Session, user_id: int, limit: int = 5) -> List[dict]:
    """
    A user's most ordered fish, grouped by kind and size.

    Returns:
        Up to `limit` dicts with kind, size, total_quantity and order_count
        (number of line items), largest total quantity first
    """
    groups: Dict[Tuple[str, int], dict] = {}
    orders = db.execute(select(models.Order.items).where(models.Order.user_id == user_id)).scalars()
    for items in orders:
        for line in items:
            key = (line["kind"], int(line["size"]))
            group = groups.setdefault(
                key, {"kind": key[0], "size": key[1], "total_quantity": Decimal("0"), "order_count": 0}
            )
            group["total_quantity"] += Decimal(line["quantity"])
            group["order_count"] += 1
    ranked = sorted(groups.values(), key=lambda g: (-g["total_quantity"], g["kind"], g["size"]))
    return ranked[:limit]
