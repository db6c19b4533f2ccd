"""
Real-time order notifications.

Publishing is fire-and-forget: nothing is persisted, acknowledged or
retried, and a subscriber that joins after an event was published never sees
it. Clients that need current state read it through the REST API.

Two transports implement the same `publish(topic, event, payload)` call:

- RoomNotifier: in-process rooms of live WebSocket connections.
- RedisNotifier: publishes to Redis channels named after the topic, so every
  service process can relay events to its own connections
  (see `relay_from_redis`).
"""
import asyncio
import json
import logging
import os
from typing import Any, Dict, Optional, Protocol, Set
import redis.asyncio as redis
from . import models, schemas

logger = logging.getLogger(__name__)

ADMIN_ROOM = "admin-room"
ORDER_ROOM_PREFIX = "order-"
ORDER_UPDATE = "orderUpdate"
NEW_ORDER = "newOrder"

NOTIFIER_BACKEND = os.getenv("NOTIFIER_BACKEND", "rooms")
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
SEND_TIMEOUT = float(os.getenv("NOTIFIER_SEND_TIMEOUT", "5"))


def order_room(order_id: str) -> str:
    return f"{ORDER_ROOM_PREFIX}{order_id}"


class Subscriber(Protocol):
    """Anything that can receive a JSON message, e.g. a Starlette WebSocket."""

    async def send_json(self, data: Any) -> None:
        ...


class Notifier(Protocol):
    async def publish(self, topic: str, event: str, payload: Dict[str, Any]) -> None:
        ...


def envelope(event: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    return {"event": event, "data": payload}


class RoomNotifier:
    """Topic rooms held in memory by this process."""

    def __init__(self, send_timeout: float = SEND_TIMEOUT):
        self._rooms: Dict[str, Set[Subscriber]] = {}
        self.send_timeout = send_timeout

    def join(self, topic: str, subscriber: Subscriber) -> None:
        self._rooms.setdefault(topic, set()).add(subscriber)
        logger.info(f"Subscriber joined room: {topic}")

    def leave(self, topic: str, subscriber: Subscriber) -> None:
        members = self._rooms.get(topic)
        if not members:
            return
        members.discard(subscriber)
        if not members:
            del self._rooms[topic]
        logger.info(f"Subscriber left room: {topic}")

    def leave_all(self, subscriber: Subscriber) -> None:
        for topic in list(self._rooms):
            if subscriber in self._rooms[topic]:
                self.leave(topic, subscriber)

    def subscribers(self, topic: str) -> Set[Subscriber]:
        return set(self._rooms.get(topic, ()))

    async def publish(self, topic: str, event: str, payload: Dict[str, Any]) -> None:
        members = self.subscribers(topic)
        if not members:
            return
        message = envelope(event, payload)
        results = await asyncio.gather(
            *(asyncio.wait_for(member.send_json(message), self.send_timeout) for member in members),
            return_exceptions=True,
        )
        for member, result in zip(members, results):
            if isinstance(result, Exception):
                logger.error(f"Dropping subscriber from {topic} after failed send: {result!r}")
                self.leave_all(member)
        logger.info(f"Published {event} to {topic} ({len(members)} subscribers)")


class RedisNotifier:
    """Publishes events to Redis channels named after the topic."""

    def __init__(self, client=None, url: str = REDIS_URL):
        if client is None:
            client = redis.from_url(url, decode_responses=True)
        self.client = client

    async def publish(self, topic: str, event: str, payload: Dict[str, Any]) -> None:
        await self.client.publish(topic, json.dumps(envelope(event, payload)))


async def relay_from_redis(client, rooms: RoomNotifier) -> None:
    """
    Forward events published by any process into this process's rooms.

    Runs until cancelled.
    """
    pubsub = client.pubsub()
    await pubsub.psubscribe(f"{ORDER_ROOM_PREFIX}*", ADMIN_ROOM)
    try:
        async for message in pubsub.listen():
            if message.get("type") not in ("message", "pmessage"):
                continue
            try:
                body = json.loads(message["data"])
            except (TypeError, ValueError) as e:
                logger.error(f"Ignoring malformed relay message: {e}")
                continue
            if not isinstance(body, dict) or "event" not in body or "data" not in body:
                logger.error(f"Ignoring relay message without an event envelope on {message.get('channel')}")
                continue
            await rooms.publish(message["channel"], body["event"], body["data"])
    finally:
        await pubsub.aclose()


def create_notifier(rooms: RoomNotifier, backend: str = NOTIFIER_BACKEND) -> Notifier:
    if backend == "redis":
        return RedisNotifier()
    return rooms


def order_update_payload(order: models.Order) -> Dict[str, Any]:
    event = schemas.OrderUpdateEvent(
        orderId=order.id,
        orderNumber=order.order_number,
        status=order.status,
        updatedAt=order.updated_at,
    )
    return event.model_dump(mode="json")


def new_order_payload(order: models.Order) -> Dict[str, Any]:
    event = schemas.NewOrderEvent(
        orderId=order.id,
        orderNumber=order.order_number,
        totalPrice=order.total_price,
        ownerId=order.user_id,
    )
    return event.model_dump(mode="json")


async def publish_safely(notifier: Optional[Notifier], topic: str, event: str, payload: Dict[str, Any]) -> bool:
    """
    Publish without letting a transport failure reach the caller.

    Returns:
        True if the transport accepted the event
    """
    if notifier is None:
        return False
    try:
        await notifier.publish(topic, event, payload)
        return True
    except Exception as e:
        logger.error(f"Failed to publish {event} to {topic}: {e}")
        return False


async def notify_order_updated(notifier: Optional[Notifier], order: models.Order) -> bool:
    return await publish_safely(notifier, order_room(order.id), ORDER_UPDATE, order_update_payload(order))


async def notify_new_order(notifier: Optional[Notifier], order: models.Order) -> bool:
    return await publish_safely(notifier, ADMIN_ROOM, NEW_ORDER, new_order_payload(order))
