"""
Shared fixtures: a fresh SQLite database per test, inventory helpers and
recording subscribers for the notifier.
"""
import os
import tempfile

# Point the service at SQLite before any catch_orders module reads the env.
_IMPORT_DB_DIR = tempfile.mkdtemp(prefix="catch-orders-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(_IMPORT_DB_DIR, 'import.db')}")
os.environ.setdefault("NOTIFIER_BACKEND", "rooms")

from datetime import datetime
from decimal import Decimal

import pytest
from jose import jwt
from sqlalchemy import update
from sqlalchemy.orm import sessionmaker

from catch_orders import auth, inventory, models, schemas
from catch_orders.database import make_engine
from catch_orders.notifier import RoomNotifier
from catch_orders.reservations import ReservationWorkflow
from catch_orders.transitions import TransitionEngine

FIXED_NOW = datetime(2026, 10, 19, 9, 30, 0)
ADDRESS = "456 New Street, Nairobi, Kenya"


class RecordingSubscriber:
    """Stands in for a WebSocket connection."""

    def __init__(self):
        self.messages = []

    async def send_json(self, data):
        self.messages.append(data)


class BrokenSubscriber:
    async def send_json(self, data):
        raise ConnectionError("socket closed")


class FailingNotifier:
    async def publish(self, topic, event, payload):
        raise ConnectionError("broker down")


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'orders.db'}")
    models.Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def add_sku(session_factory):
    def _add(sku, kind="tilapia", size=4, unit_price="800", stock="50", is_active=True):
        with session_factory() as db:
            db.add(models.InventoryItem(
                sku=sku,
                kind=kind,
                size=size,
                unit_price=Decimal(unit_price),
                qty_grams=inventory.to_grams(Decimal(stock)),
                is_active=is_active,
            ))
            db.commit()
    return _add


@pytest.fixture
def stock_of(session_factory):
    def _stock(sku):
        with session_factory() as db:
            return inventory.read(db, sku).available
    return _stock


@pytest.fixture
def set_status(session_factory):
    """Force an order into a status, bypassing the state machine."""
    def _set(order_id, status):
        with session_factory() as db:
            db.execute(update(models.Order).where(models.Order.id == order_id).values(status=status))
            db.commit()
    return _set


@pytest.fixture
def rooms():
    return RoomNotifier()


@pytest.fixture
def workflow(session_factory, rooms):
    return ReservationWorkflow(session_factory, notifier=rooms, clock=lambda: FIXED_NOW)


@pytest.fixture
def engine(session_factory, rooms):
    return TransitionEngine(session_factory, notifier=rooms, clock=lambda: FIXED_NOW)


def item(sku, quantity):
    return schemas.OrderItemRequest(sku=sku, quantity=Decimal(str(quantity)))


def make_token(user_id, role="client", email=None):
    claims = {"sub": str(user_id), "email": email or f"user{user_id}@example.com", "role": role}
    return jwt.encode(claims, auth.SECRET_KEY, algorithm=auth.ALGORITHM)
