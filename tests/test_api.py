"""
Tests for the HTTP and WebSocket API.
"""
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from catch_orders import main
from catch_orders.clients import users_client
from catch_orders.database import get_db
from catch_orders.errors import StorageUnavailable
from catch_orders.notifier import RoomNotifier
from catch_orders.reservations import ReservationWorkflow

from conftest import ADDRESS, make_token

CLIENT_ID = 7
OTHER_ID = 8
ADMIN_ID = 1


@pytest.fixture
def client(session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    saved = (main.app.state.session_factory, main.app.state.rooms, main.app.state.notifier)
    rooms = RoomNotifier()
    main.app.dependency_overrides[get_db] = override_get_db
    main.app.state.session_factory = session_factory
    main.app.state.rooms = rooms
    main.app.state.notifier = rooms
    with TestClient(main.app) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()
    main.app.state.session_factory, main.app.state.rooms, main.app.state.notifier = saved


def headers(user_id=CLIENT_ID, role="client"):
    return {"Authorization": f"Bearer {make_token(user_id, role)}"}


ADMIN = {"user_id": ADMIN_ID, "role": "admin"}


def place(client, items, user_id=CLIENT_ID, **extra):
    body = {"items": items, "delivery_address": ADDRESS, **extra}
    return client.post("/", json=body, headers=headers(user_id))


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "healthy"}


def test_create_order(client, add_sku, stock_of):
    add_sku("A", unit_price="800", stock="50")

    response = place(client, [{"sku": "A", "quantity": 2}], notes="Please call before delivery")

    assert response.status_code == 201
    order = response.json()
    assert order["status"] == "pending"
    assert order["payment_status"] == "pending"
    assert order["user_id"] == CLIENT_ID
    assert Decimal(order["total_price"]) == Decimal("1600")
    assert Decimal(order["grand_total"]) == Decimal("1700")
    assert order["order_number"].startswith("ORD-")
    assert order["items"][0]["kind"] == "tilapia"
    assert order["notes"] == "Please call before delivery"
    assert stock_of("A") == Decimal("48")


def test_create_order_errors(client, add_sku, stock_of):
    add_sku("C", kind="catfish", size=6, unit_price="1000", stock="5")

    insufficient = place(client, [{"sku": "C", "quantity": 10}])
    assert insufficient.status_code == 400
    assert insufficient.json()["detail"]["available"] == "5"
    assert insufficient.json()["detail"]["requested"] == "10"
    assert stock_of("C") == Decimal("5")

    assert place(client, [{"sku": "NOPE", "quantity": 1}]).status_code == 404
    assert place(client, [{"sku": "C", "quantity": 1}] * 11).status_code == 400

    too_light = place(client, [{"sku": "C", "quantity": 0.5}])
    assert too_light.status_code == 400
    assert too_light.json()["detail"]["errors"][0]["field"] == "items.0.quantity"


def test_create_order_uses_default_address(client, add_sku, monkeypatch):
    add_sku("A")

    async def fake_default_address(user_id, token=None, transport=None):
        return "123 Client Street, Nairobi, Kenya"

    monkeypatch.setattr(users_client, "get_default_address", fake_default_address)

    response = client.post("/", json={"items": [{"sku": "A", "quantity": 1}]}, headers=headers())
    assert response.status_code == 201
    assert response.json()["delivery_address"] == "123 Client Street, Nairobi, Kenya"


def test_invalid_token_is_rejected(client):
    response = client.get("/", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401


def test_orders_are_private_to_owner_and_admin(client, add_sku):
    add_sku("A")
    order_id = place(client, [{"sku": "A", "quantity": 1}]).json()["id"]
    place(client, [{"sku": "A", "quantity": 1}], user_id=OTHER_ID)

    assert client.get(f"/{order_id}", headers=headers()).status_code == 200
    assert client.get(f"/{order_id}", headers=headers(OTHER_ID)).status_code == 403
    assert client.get(f"/{order_id}", headers=headers(**ADMIN)).status_code == 200
    assert client.get("/missing", headers=headers()).status_code == 404

    assert [o["user_id"] for o in client.get("/", headers=headers()).json()] == [CLIENT_ID]
    assert len(client.get("/", headers=headers(**ADMIN)).json()) == 2


def test_status_update_flow(client, add_sku):
    add_sku("A")
    order_id = place(client, [{"sku": "A", "quantity": 1}]).json()["id"]
    url = f"/{order_id}/status"

    assert client.put(url, json={"status": "processing"}, headers=headers()).status_code == 403

    invalid = client.put(url, json={"status": "delivered"}, headers=headers(**ADMIN))
    assert invalid.status_code == 400
    assert invalid.json()["detail"] == "Cannot change status from pending to delivered"

    for status in ("processing", "shipped"):
        assert client.put(url, json={"status": status}, headers=headers(**ADMIN)).status_code == 200
    delivered = client.put(url, json={"status": "delivered", "operator_notes": "Signed by guard"}, headers=headers(**ADMIN))
    assert delivered.status_code == 200
    assert delivered.json()["status"] == "delivered"
    assert delivered.json()["actual_delivery"] is not None
    assert delivered.json()["operator_notes"] == "Signed by guard"

    assert client.put("/missing/status", json={"status": "processing"}, headers=headers(**ADMIN)).status_code == 404

    timeline = client.get(f"/{order_id}/timeline", headers=headers()).json()
    assert [e["event_type"] for e in timeline] == ["created", "status_changed", "status_changed", "status_changed"]

    filtered = client.get("/", params={"status": "delivered"}, headers=headers(**ADMIN)).json()
    assert [o["id"] for o in filtered] == [order_id]


def test_summary_is_admin_only(client, add_sku):
    add_sku("A")
    place(client, [{"sku": "A", "quantity": 2}])

    assert client.get("/stats/summary", headers=headers()).status_code == 403
    summary = client.get("/stats/summary", headers=headers(**ADMIN)).json()
    assert summary["total_orders"] == 1
    assert Decimal(summary["total_revenue"]) == Decimal("1600")
    assert summary["status_breakdown"] == {"pending": 1}
    assert Decimal(summary["avg_order_value"]) == Decimal("1600")
    assert len(summary["monthly_trends"]) == 1
    assert summary["monthly_trends"][0]["orders"] == 1
    assert Decimal(summary["monthly_trends"][0]["revenue"]) == Decimal("1600")


def test_list_reports_pagination_headers(client, add_sku):
    add_sku("A")
    for _ in range(3):
        place(client, [{"sku": "A", "quantity": 1}])
    place(client, [{"sku": "A", "quantity": 1}], user_id=OTHER_ID)

    page = client.get("/", params={"skip": 1, "limit": 1}, headers=headers())
    assert len(page.json()) == 1
    assert page.headers["X-Total-Count"] == "3"
    assert page.headers["X-Skip"] == "1"
    assert page.headers["X-Limit"] == "1"
    assert client.get("/", headers=headers(**ADMIN)).headers["X-Total-Count"] == "4"


def test_order_history(client, add_sku, session_factory):
    add_sku("A", kind="tilapia", size=4, unit_price="800")
    add_sku("B", kind="catfish", size=6, unit_price="1000")
    place(client, [{"sku": "A", "quantity": 2}, {"sku": "B", "quantity": 1}])
    place(client, [{"sku": "A", "quantity": 3}])
    cancelled = place(client, [{"sku": "B", "quantity": 1}]).json()
    client.put(f"/{cancelled['id']}/status", json={"status": "cancelled"}, headers=headers(**ADMIN))
    place(client, [{"sku": "B", "quantity": 5}], user_id=OTHER_ID)

    history = client.get("/user/history", headers=headers()).json()

    assert len(history["recent_orders"]) == 3
    assert history["recent_orders"][0]["id"] == cancelled["id"]
    assert history["statistics"]["total_orders"] == 3
    assert Decimal(history["statistics"]["total_spent"]) == Decimal("5000")
    assert Decimal(history["statistics"]["avg_order_value"]) == Decimal("2500")
    assert [(f["kind"], f["size"], Decimal(f["total_quantity"]), f["order_count"]) for f in history["favorite_items"]] == [
        ("tilapia", 4, Decimal("5"), 2),
        ("catfish", 6, Decimal("2"), 2),
    ]


def test_only_customer_roles_may_order(client, add_sku):
    add_sku("A")
    courier = {"Authorization": f"Bearer {make_token(9, 'courier')}"}

    assert client.post("/", json={"items": [{"sku": "A", "quantity": 1}], "delivery_address": ADDRESS}, headers=courier).status_code == 403
    assert client.get("/user/history", headers=courier).status_code == 403
    assert place(client, [{"sku": "A", "quantity": 1}], user_id=ADMIN_ID).status_code == 201


def test_storage_failure_is_a_retryable_500(client, add_sku, monkeypatch):
    add_sku("A")

    def unavailable(self, *args):
        raise StorageUnavailable("Failed to record order")

    monkeypatch.setattr(ReservationWorkflow, "_reserve_and_record", unavailable)

    response = place(client, [{"sku": "A", "quantity": 1}])
    assert response.status_code == 500
    assert response.json()["detail"] == "Failed to record order"
    assert StorageUnavailable.retryable is True


def test_admin_room_receives_new_orders(client, add_sku):
    add_sku("A")
    token = make_token(ADMIN_ID, "admin")

    with client.websocket_connect(f"/ws?token={token}") as ws:
        ws.send_json({"action": "join-admin-room"})
        assert ws.receive_json() == {"event": "joined", "data": {"room": "admin-room"}}

        order = place(client, [{"sku": "A", "quantity": 2}]).json()

        message = ws.receive_json()
        assert message["event"] == "newOrder"
        assert message["data"] == {
            "orderId": order["id"],
            "orderNumber": order["order_number"],
            "totalPrice": "1600",
            "ownerId": CLIENT_ID,
        }


def test_order_room_receives_status_updates(client, add_sku):
    add_sku("A")
    order = place(client, [{"sku": "A", "quantity": 1}]).json()

    with client.websocket_connect(f"/ws?token={make_token(CLIENT_ID)}") as ws:
        ws.send_json({"action": "join-order-room", "orderId": order["id"]})
        assert ws.receive_json()["event"] == "joined"

        client.put(f"/{order['id']}/status", json={"status": "processing"}, headers=headers(**ADMIN))

        message = ws.receive_json()
        assert message["event"] == "orderUpdate"
        assert message["data"]["orderId"] == order["id"]
        assert message["data"]["status"] == "processing"

        ws.send_json({"action": "leave-order-room", "orderId": order["id"]})
        assert ws.receive_json()["event"] == "left"


def test_room_access_is_checked(client, add_sku):
    add_sku("A")
    order = place(client, [{"sku": "A", "quantity": 1}]).json()

    with client.websocket_connect(f"/ws?token={make_token(OTHER_ID)}") as ws:
        ws.send_json({"action": "join-admin-room"})
        assert ws.receive_json()["event"] == "error"
        ws.send_json({"action": "join-order-room", "orderId": order["id"]})
        assert ws.receive_json()["event"] == "error"
        ws.send_json({"action": "dance"})
        assert ws.receive_json()["data"]["message"] == "Unknown action: dance"


def test_websocket_requires_valid_token(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws?token=bad") as ws:
            ws.receive_json()
