"""
Day-scoped order numbers: ORD-YYYYMMDD-NNNN.

The sequence comes from a per-day counter row that is incremented and read
back inside the caller's transaction. The upsert takes the row lock, so two
concurrent callers can never observe the same value.
"""
import re
from datetime import date
from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session
from . import models
from .errors import StorageUnavailable

ORDER_NUMBER_PATTERN = re.compile(r"^ORD-\d{8}-\d{4}$")
MAX_SEQUENCE = 9999

_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def format_order_number(day: date, sequence: int) -> str:
    return f"ORD-{day.strftime('%Y%m%d')}-{sequence:04d}"


def parse_order_number(order_number: str) -> tuple[date, int]:
    """Split an order number back into its day and sequence."""
    if not ORDER_NUMBER_PATTERN.match(order_number):
        raise ValueError(f"Malformed order number: {order_number!r}")
    _, day_part, seq_part = order_number.split("-")
    day = date(int(day_part[:4]), int(day_part[4:6]), int(day_part[6:]))
    return day, int(seq_part)


def increment_counter(db: Session, day: date) -> int:
    """
    Atomically increment the counter for `day` and return the new value.

    Does not commit; the value is only consumed once the caller's
    transaction commits.
    """
    dialect = db.get_bind().dialect.name
    insert = _UPSERT_DIALECTS.get(dialect)
    if insert is None:
        raise StorageUnavailable(f"Order counter not supported on {dialect}")

    stmt = insert(models.OrderCounter).values(day=day, last_value=1)
    stmt = stmt.on_conflict_do_update(
        index_elements=[models.OrderCounter.day],
        set_={"last_value": models.OrderCounter.last_value + 1},
    )
    db.execute(stmt)
    return db.execute(
        select(models.OrderCounter.last_value).where(models.OrderCounter.day == day)
    ).scalar_one()


def next_order_number(db: Session, day: date) -> str:
    sequence = increment_counter(db, day)
    if sequence > MAX_SEQUENCE:
        raise StorageUnavailable(f"Order numbers for {day.isoformat()} are exhausted")
    return format_order_number(day, sequence)
