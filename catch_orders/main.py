"""
Orders Service API

This module implements a FastAPI-based service for placing fresh-fish orders
against shared inventory and moving them through their delivery lifecycle,
with PostgreSQL persistence and real-time notifications over WebSockets.

Endpoints:
    GET /: List orders (own orders; admins see all)
    GET /stats/summary: Order counts and revenue (admin only)
    GET /user/history: Recent orders, spending and favourite items of the caller
    GET /{order_id}: Get a single order by ID
    GET /{order_id}/timeline: Lifecycle events of an order
    POST /: Create an order, reserving its stock
    PUT /{order_id}/status: Change an order's status (admin only)
    GET /healthz: Health check endpoint for orchestration systems
    WS /ws: Real-time order rooms

Attributes:
    app (FastAPI): The FastAPI application instance configured with the title "orders-service"
"""
import asyncio
import contextlib
import logging
import os
from typing import List, Optional
from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, WebSocket, WebSocketDisconnect, status
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from jose import JWTError
from sqlalchemy.orm import Session

from . import auth, crud, models, notifier as notifications, schemas
from .clients import users_client
from .database import SessionLocal, engine, get_db
from .errors import OrderError
from .reservations import ReservationWorkflow
from .transitions import TransitionEngine

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

# Create database tables
models.Base.metadata.create_all(bind=engine)


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    relay = None
    if isinstance(app.state.notifier, notifications.RedisNotifier):
        relay = asyncio.create_task(
            notifications.relay_from_redis(app.state.notifier.client, app.state.rooms)
        )
        logger.info("Relaying order events from Redis")
    yield
    if relay is not None:
        relay.cancel()
        try:
            await relay
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Redis relay had stopped with an error: {e}")


app = FastAPI(title="orders-service", lifespan=lifespan)
app.state.session_factory = SessionLocal
app.state.rooms = notifications.RoomNotifier()
app.state.notifier = notifications.create_notifier(app.state.rooms)


def get_notifier(request: Request) -> notifications.Notifier:
    return request.app.state.notifier


def raise_http(error: OrderError):
    raise HTTPException(status_code=error.status_code, detail=error.detail) from error


def ensure_can_view(order: models.Order, current_user: auth.CurrentUser, action: str = "access") -> None:
    if not current_user.is_admin and order.user_id != current_user.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Not authorized to {action} this order"
        )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Report malformed request bodies as 400 with field-level detail."""
    errors = [
        {"field": ".".join(str(part) for part in error["loc"][1:]), "message": error["msg"]}
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": {"message": "Validation failed", "errors": errors}},
    )


@app.get("/healthz", response_model=dict)
def health():
    """
    Health check endpoint for the orders service.

    Returns:
        dict: {"status": "healthy"} when the service is operational.
    """
    return {"status": "healthy"}


@app.get("/", response_model=List[schemas.Order])
def list_orders(
    response: Response,
    status_filter: Optional[schemas.OrderStatus] = Query(None, alias="status"),
    skip: int = Query(0, ge=0),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    List orders, newest first (authenticated users see their own, admins see all).

    Args:
        status_filter: Only orders in this status (query parameter "status")
        skip: Number of records to skip (default: 0)
        limit: Maximum number of records to return (default: 10, max: 100)

    Headers:
        X-Total-Count: Orders matching the filter across all pages
        X-Skip, X-Limit: The page that was returned
    """
    user_id = None if current_user.is_admin else current_user.id
    status_value = status_filter.value if status_filter else None
    response.headers["X-Total-Count"] = str(crud.count_orders(db, user_id=user_id, status=status_value))
    response.headers["X-Skip"] = str(skip)
    response.headers["X-Limit"] = str(limit)
    return crud.get_orders(db, user_id=user_id, status=status_value, skip=skip, limit=limit)


@app.get("/stats/summary", response_model=schemas.OrderSummary)
def get_summary(
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """
    Order statistics across all customers (admin only).

    Returns:
        total_orders, total_revenue and avg_order_value (cancelled orders
        excluded), a count per status and the last 12 months of activity
    """
    return crud.order_summary(db)


@app.get("/user/history", response_model=schemas.OrderHistory)
def get_order_history(
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.require_client)
):
    """
    The caller's 20 most recent orders, spending statistics and top 5 items.
    """
    summary = crud.order_summary(db, user_id=current_user.id)
    return {
        "recent_orders": crud.get_orders(db, user_id=current_user.id, limit=20),
        "statistics": {
            "total_orders": summary["total_orders"],
            "total_spent": summary["total_revenue"],
            "avg_order_value": summary["avg_order_value"],
        },
        "favorite_items": crud.favorite_items(db, current_user.id),
    }


@app.get("/{order_id}", response_model=schemas.Order)
def get_order(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Get a single order by ID (owner or admin).

    Raises:
        HTTPException: 403 if not authorized
        HTTPException: 404 if order not found
    """
    db_order = crud.get_order(db, order_id=order_id)
    if db_order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    ensure_can_view(db_order, current_user)
    return db_order


@app.get("/{order_id}/timeline", response_model=List[schemas.OrderEvent])
def get_order_timeline(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user)
):
    """
    Get the timeline of events for an order (owner or admin).

    Returns:
        List of order events in chronological order
    """
    db_order = crud.get_order(db, order_id=order_id)
    if db_order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    ensure_can_view(db_order, current_user, action="view the timeline of")
    return crud.get_order_timeline(db, order_id)


@app.post("/", response_model=schemas.Order, status_code=status.HTTP_201_CREATED)
async def create_order(
    order: schemas.OrderCreate,
    request: Request,
    current_user: auth.CurrentUser = Depends(auth.require_client)
):
    """
    Create an order for the current user, reserving stock for every item.

    The delivery address falls back to the user's default from the Users
    service. Operators in the admin room are notified once the order is
    recorded.

    Raises:
        HTTPException: 400 on validation failure or insufficient stock
        HTTPException: 404 if an item references an unknown SKU
        HTTPException: 403 if the role is neither client nor admin
        HTTPException: 500 if storage is unavailable (safe to retry)
    """
    async def default_address(user_id: int) -> Optional[str]:
        return await users_client.get_default_address(user_id, token=current_user.token)

    workflow = ReservationWorkflow(
        session_factory=request.app.state.session_factory,
        notifier=get_notifier(request),
        address_resolver=default_address,
    )
    try:
        db_order = await workflow.create_order(
            user_id=current_user.id,
            items=order.items,
            delivery_address=order.delivery_address,
            notes=order.notes,
        )
    except OrderError as e:
        logger.warning(f"Order creation by user {current_user.id} failed: {e.message}")
        raise_http(e)
    logger.info(f"New order created: {db_order.order_number} by {current_user.email}")
    return db_order


@app.put("/{order_id}/status", response_model=schemas.Order)
async def update_order_status(
    order_id: str,
    update: schemas.StatusUpdate,
    request: Request,
    current_user: auth.CurrentUser = Depends(auth.require_admin)
):
    """
    Change an order's status (admin only).

    Subscribers of the order's room receive an orderUpdate event after the
    change is stored.

    Raises:
        HTTPException: 400 if the transition is not allowed
        HTTPException: 404 if order not found
    """
    transition_engine = TransitionEngine(
        session_factory=request.app.state.session_factory,
        notifier=get_notifier(request),
    )
    try:
        db_order = await transition_engine.transition(
            order_id,
            update.status,
            operator_notes=update.operator_notes,
            actor_id=current_user.id,
        )
    except OrderError as e:
        logger.warning(f"Status change of order {order_id} by admin {current_user.email} failed: {e.message}")
        raise_http(e)
    return db_order


def _load_order(session_factory, order_id: str) -> Optional[models.Order]:
    with session_factory() as db:
        return crud.get_order(db, order_id)


async def handle_room_message(websocket: WebSocket, user: auth.CurrentUser, message: dict) -> None:
    """
    Apply one join/leave control message from a WebSocket client.

    Messages:
        {"action": "join-order-room", "orderId": ...}   owner or admin
        {"action": "leave-order-room", "orderId": ...}
        {"action": "join-admin-room"}                    admin only
    """
    rooms: notifications.RoomNotifier = websocket.app.state.rooms
    action = message.get("action")

    if action == "join-admin-room":
        if not user.is_admin:
            await websocket.send_json(notifications.envelope("error", {"message": "Admin privileges required"}))
            return
        rooms.join(notifications.ADMIN_ROOM, websocket)
        await websocket.send_json(notifications.envelope("joined", {"room": notifications.ADMIN_ROOM}))
        return

    if action in ("join-order-room", "leave-order-room"):
        order_id = str(message.get("orderId") or "")
        room = notifications.order_room(order_id)
        if action == "leave-order-room":
            rooms.leave(room, websocket)
            await websocket.send_json(notifications.envelope("left", {"room": room}))
            return
        order = await run_in_threadpool(_load_order, websocket.app.state.session_factory, order_id)
        if order is None or (not user.is_admin and order.user_id != user.id):
            await websocket.send_json(notifications.envelope("error", {"message": "Order not found"}))
            return
        rooms.join(room, websocket)
        await websocket.send_json(notifications.envelope("joined", {"room": room}))
        return

    await websocket.send_json(notifications.envelope("error", {"message": f"Unknown action: {action}"}))


@app.websocket("/ws")
async def order_events(websocket: WebSocket, token: str = ""):
    """
    Real-time order events.

    Authenticate with ?token=<jwt>, then join rooms with control messages.
    Events arrive as {"event": "orderUpdate" | "newOrder", "data": {...}}.
    Nothing is replayed: fetch current state over HTTP after joining.
    """
    try:
        user = auth.decode_token(token)
    except (JWTError, ValueError) as e:
        logger.warning(f"Rejected WebSocket connection: {e}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    logger.info(f"User {user.id} connected to order events")
    rooms: notifications.RoomNotifier = websocket.app.state.rooms
    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                await websocket.send_json(notifications.envelope("error", {"message": "Messages must be JSON"}))
                continue
            if not isinstance(message, dict):
                await websocket.send_json(notifications.envelope("error", {"message": "Messages must be objects"}))
                continue
            await handle_room_message(websocket, user, message)
    except WebSocketDisconnect:
        logger.info(f"User {user.id} disconnected from order events")
    finally:
        rooms.leave_all(websocket)
