"""
Order status state machine.

    pending -> processing -> shipped -> delivered
       |           |
       +-----------+--> cancelled

delivered and cancelled are terminal. Cancelling does not return stock to
inventory.
"""
import logging
from datetime import datetime
from typing import Callable, Dict, FrozenSet, Optional
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from . import crud, models, notifier as notifications
from .errors import InvalidTransition, OrderNotFound, StorageUnavailable
from .schemas import OrderStatus

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if not targets)


def can_transition(current: str, new: str) -> bool:
    try:
        return OrderStatus(new) in ALLOWED_TRANSITIONS[OrderStatus(current)]
    except ValueError:
        return False


def check_transition(current: str, new: str) -> None:
    """Raise InvalidTransition unless `current -> new` is an edge of the graph."""
    if not can_transition(current, new):
        raise InvalidTransition(str(current), str(new))


class TransitionEngine:
    """
    Applies operator status changes to existing orders.

    The change is committed first and published second; a failed publish
    is logged and the change stands.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        notifier: Optional[notifications.Notifier] = None,
        clock: Callable[[], datetime] = models.utcnow,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.clock = clock

    async def transition(
        self,
        order_id: str,
        new_status: OrderStatus,
        operator_notes: Optional[str] = None,
        actor_id: Optional[int] = None,
    ) -> models.Order:
        """
        Move an order to `new_status`.

        Raises:
            OrderNotFound: no such order
            InvalidTransition: the change is not allowed from the current status
            StorageUnavailable: the database failed; the status is unchanged
        """
        new_status = OrderStatus(new_status)
        order = await run_in_threadpool(self._apply, order_id, new_status, operator_notes, actor_id)
        await notifications.notify_order_updated(self.notifier, order)
        return order

    def _apply(
        self,
        order_id: str,
        new_status: OrderStatus,
        operator_notes: Optional[str],
        actor_id: Optional[int],
    ) -> models.Order:
        with self.session_factory() as db:
            try:
                order = crud.get_order(db, order_id)
                if order is None:
                    raise OrderNotFound(order_id)
                current = order.status
                check_transition(current, new_status.value)

                now = self.clock()
                changes = {"status": new_status.value, "updated_at": now}
                if operator_notes:
                    changes["operator_notes"] = operator_notes
                if new_status == OrderStatus.DELIVERED:
                    changes["actual_delivery"] = now
                changed = crud.detached_copy(order, **changes)

                applied = crud.apply_status_change(
                    db,
                    order_id=order_id,
                    current_status=current,
                    new_status=new_status.value,
                    updated_at=now,
                    operator_notes=operator_notes,
                    actual_delivery=changes.get("actual_delivery"),
                    user_id=actor_id,
                )
                if not applied:
                    # Another change landed first; judge this one against it.
                    order = crud.get_order(db, order_id)
                    logger.warning(
                        f"Order {order_id} changed concurrently from '{current}' to '{order.status}'"
                    )
                    raise InvalidTransition(order.status, new_status.value)
            except SQLAlchemyError as e:
                logger.error(f"Status change for order {order_id} failed: {e}")
                raise StorageUnavailable("Failed to update order status") from e

            # Committed from here on; a failed re-read must not report the change as lost.
            try:
                order = crud.get_order(db, order_id)
            except SQLAlchemyError as e:
                logger.error(f"Order {order_id} status was stored but could not be re-read: {e}")
                order = changed

        logger.info(f"Order {order.order_number} status updated to {order.status}")
        return order
