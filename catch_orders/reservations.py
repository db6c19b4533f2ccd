"""
Order creation: validate every item, reserve all stock, record the order.

Reservation is all-or-nothing. Availability is checked for every item before
any stock is touched; then each item is taken with an atomic conditional
decrement. If any decrement fails because a concurrent order got there first,
the decrements already applied for this order are released before the
failure is reported. A caller therefore sees either a persisted order with all
of its stock reserved, or an error with no stock consumed and no order row.
"""
import logging
import os
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Optional, Tuple
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from . import crud, inventory, models, notifier as notifications, schemas, validators
from .errors import InsufficientStock, SkuNotFound, StorageUnavailable

logger = logging.getLogger(__name__)

DELIVERY_FEE = Decimal(os.getenv("DELIVERY_FEE", "100"))
ESTIMATED_DELIVERY_DAYS = int(os.getenv("ESTIMATED_DELIVERY_DAYS", "3"))

AddressResolver = Callable[[int], Awaitable[Optional[str]]]


def price_items(
    requested: List[schemas.OrderItemRequest],
    records: List[schemas.InventoryRecord],
) -> Tuple[List[schemas.OrderItem], Decimal]:
    """
    Build priced line items and their exact total.

    Args:
        requested: Items as requested, in order
        records: Inventory record for each requested item

    Returns:
        Tuple of (line items, total price)
    """
    items = []
    total = Decimal("0")
    for request, record in zip(requested, records):
        subtotal = request.quantity * record.unit_price
        items.append(schemas.OrderItem(
            sku=record.sku,
            kind=record.kind,
            size=record.size,
            quantity=request.quantity,
            unit_price=record.unit_price,
            subtotal=subtotal,
        ))
        total += subtotal
    return items, total


def serialize_items(items: List[schemas.OrderItem]) -> List[Dict[str, str]]:
    # Decimals as strings for JSON storage
    return [item.model_dump(mode="json") for item in items]


class ReservationWorkflow:
    """
    Creates orders against shared inventory.

    Args:
        session_factory: Opens the database session each creation runs in
        notifier: Receives the "new order" event; optional
        address_resolver: Looks up an owner's default delivery address when
            a request omits one
        clock: Returns the current naive UTC time
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        notifier: Optional[notifications.Notifier] = None,
        address_resolver: Optional[AddressResolver] = None,
        clock: Callable[[], datetime] = models.utcnow,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.address_resolver = address_resolver
        self.clock = clock

    async def create_order(
        self,
        user_id: int,
        items: List[schemas.OrderItemRequest],
        delivery_address: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> models.Order:
        """
        Validate, reserve and persist an order, then announce it to operators.

        Raises:
            ValidationError: malformed request
            SkuNotFound: an item references a missing or inactive SKU
            InsufficientStock: not enough stock at validation or reservation time
            StorageUnavailable: the database failed; nothing was kept
        """
        if not delivery_address and self.address_resolver is not None:
            delivery_address = await self.address_resolver(user_id)
        validators.validate_order_request(items, delivery_address, notes)

        # The blocking database work runs to completion in a worker thread
        # even if the requesting client goes away.
        order = await run_in_threadpool(
            self._reserve_and_record, user_id, items, delivery_address.strip(), notes
        )
        await notifications.notify_new_order(self.notifier, order)
        return order

    def _reserve_and_record(
        self,
        user_id: int,
        items: List[schemas.OrderItemRequest],
        delivery_address: str,
        notes: Optional[str],
    ) -> models.Order:
        with self.session_factory() as db:
            records = self._check_availability(db, items)
            line_items, total_price = price_items(items, records)
            self._reserve_all(db, items, records)

            now = self.clock()
            # create_order only raises before its commit, so a release here
            # never takes stock away from a stored order.
            try:
                order = crud.create_order(
                    db,
                    user_id=user_id,
                    items=serialize_items(line_items),
                    total_price=total_price,
                    delivery_address=delivery_address,
                    delivery_fee=DELIVERY_FEE,
                    notes=notes,
                    created_at=now,
                    estimated_delivery=now + timedelta(days=ESTIMATED_DELIVERY_DAYS),
                )
            except (SQLAlchemyError, StorageUnavailable) as e:
                logger.error(f"Failed to record order for user {user_id}, releasing stock: {e}")
                self._release(db, list(zip(items, records)))
                if isinstance(e, StorageUnavailable):
                    raise
                raise StorageUnavailable("Failed to record order") from e

        logger.info(f"Order {order.order_number} created for user {user_id}: total {total_price}")
        return order

    def _check_availability(
        self, db: Session, items: List[schemas.OrderItemRequest]
    ) -> List[schemas.InventoryRecord]:
        records = []
        for item in items:
            record = inventory.read(db, item.sku)
            if record is None or not record.is_active:
                logger.warning(f"Order rejected: SKU '{item.sku}' not found or inactive")
                raise SkuNotFound(item.sku)
            if record.available < item.quantity:
                logger.warning(
                    f"Order rejected: SKU '{item.sku}' has {record.available}kg, {item.quantity}kg requested"
                )
                raise InsufficientStock(
                    item.sku, record.available, item.quantity,
                    label=f"{record.kind} size {record.size}",
                )
            records.append(record)
        return records

    def _reserve_all(
        self,
        db: Session,
        items: List[schemas.OrderItemRequest],
        records: List[schemas.InventoryRecord],
    ) -> None:
        reserved = []
        for item, record in zip(items, records):
            try:
                taken = inventory.conditional_decrement(db, item.sku, item.quantity)
            except StorageUnavailable:
                self._release(db, reserved)
                raise
            if not taken:
                logger.warning(
                    f"Stock for SKU '{item.sku}' was taken concurrently; "
                    f"rolling back {len(reserved)} reserved items"
                )
                self._release(db, reserved)
                current = inventory.read(db, item.sku)
                available = current.available if current is not None else Decimal("0")
                raise InsufficientStock(
                    item.sku, available, item.quantity,
                    label=f"{record.kind} size {record.size}",
                )
            reserved.append((item, record))
            logger.info(f"Reserved {item.quantity}kg of SKU '{item.sku}'")

    def _release(self, db: Session, reserved: List[Tuple[schemas.OrderItemRequest, schemas.InventoryRecord]]) -> None:
        for item, _ in reserved:
            try:
                inventory.release(db, item.sku, item.quantity)
                logger.info(f"Rollback: released {item.quantity}kg of SKU '{item.sku}'")
            except StorageUnavailable as e:
                logger.error(f"Rollback failed for SKU '{item.sku}' ({item.quantity}kg): {e}")
