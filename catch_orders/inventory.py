"""
Inventory store operations used by the reservation workflow.

Available stock is only ever changed through `conditional_decrement` and its
compensating `release`. Both are single SQL UPDATE statements, so the
availability check and the write happen atomically in the database rather
than as a read-modify-write in Python.
"""
import logging
from decimal import Decimal
from typing import Optional
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from . import models, schemas
from .errors import StorageUnavailable

logger = logging.getLogger(__name__)

GRAMS_PER_KG = 1000


def to_grams(quantity: Decimal) -> int:
    return int(Decimal(quantity) * GRAMS_PER_KG)


def to_kg(grams: int) -> Decimal:
    return Decimal(grams).scaleb(-3)


def read(db: Session, sku: str) -> Optional[schemas.InventoryRecord]:
    """
    Read an inventory record by SKU.

    Args:
        db: Database session
        sku: SKU to look up

    Returns:
        InventoryRecord or None if the SKU does not exist
    """
    try:
        item = db.execute(
            select(models.InventoryItem).where(models.InventoryItem.sku == sku)
        ).scalar_one_or_none()
    except SQLAlchemyError as e:
        logger.error(f"Inventory read failed for SKU '{sku}': {e}")
        raise StorageUnavailable("Inventory store unavailable") from e

    if item is None:
        return None
    return schemas.InventoryRecord(
        sku=item.sku,
        kind=item.kind,
        size=item.size,
        unit_price=item.unit_price,
        available=to_kg(item.qty_grams),
        is_active=item.is_active,
    )


def conditional_decrement(db: Session, sku: str, quantity: Decimal) -> bool:
    """
    Decrement stock only if at least `quantity` is available.

    Args:
        db: Database session
        sku: SKU to decrement
        quantity: Kilograms to take

    Returns:
        True if the stock was taken, False if there was not enough of it
        (or the SKU disappeared / was deactivated meanwhile)
    """
    grams = to_grams(quantity)
    stmt = (
        update(models.InventoryItem)
        .where(
            models.InventoryItem.sku == sku,
            models.InventoryItem.is_active.is_(True),
            models.InventoryItem.qty_grams >= grams,
        )
        .values(qty_grams=models.InventoryItem.qty_grams - grams)
        .execution_options(synchronize_session=False)
    )
    try:
        result = db.execute(stmt)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Inventory decrement failed for SKU '{sku}': {e}")
        raise StorageUnavailable("Inventory store unavailable") from e
    return result.rowcount == 1


def release(db: Session, sku: str, quantity: Decimal) -> None:
    """
    Give back stock taken by `conditional_decrement`.

    Only used to compensate a reservation that could not be completed.
    """
    grams = to_grams(quantity)
    stmt = (
        update(models.InventoryItem)
        .where(models.InventoryItem.sku == sku)
        .values(qty_grams=models.InventoryItem.qty_grams + grams)
        .execution_options(synchronize_session=False)
    )
    try:
        db.execute(stmt)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Inventory release failed for SKU '{sku}': {e}")
        raise StorageUnavailable("Inventory store unavailable") from e
