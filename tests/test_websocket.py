"""
WebSocket signals of the table and kitchen channels.

These run the real application lifespan on an in-memory database through
Starlette's TestClient, seeding the menu through the client's portal.
The outbox tests drive the signal queue directly with stand-in sockets.
"""

import asyncio
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from tableorder import main
from tableorder.core.config import ChangeFeedBackend
from tableorder.services.cart import CartStore


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(main.settings, "database_url", "sqlite+aiosqlite://")
    monkeypatch.setattr(main.settings, "change_feed", ChangeFeedBackend.LOCAL)
    with TestClient(main.app) as client:
        yield client


@pytest.fixture
def seeded(client):
    store = main.app.state.store
    restaurant = client.portal.call(store.create_restaurant, "川味小馆", "chuan")
    beef = client.portal.call(
        store.create_menu_item, restaurant.id, "热菜", "红烧牛肉", Decimal("28.00")
    )
    soup = client.portal.call(
        lambda: store.create_menu_item(restaurant.id, "汤", "酸辣汤", Decimal("12.00"), is_available=False)
    )
    return {"restaurant": restaurant, "beef": beef, "soup": soup}


def receive_until(websocket, signal, predicate=lambda message: True, limit=10):
    for _ in range(limit):
        message = websocket.receive_json()
        if message["type"] == signal and predicate(message):
            return message
    raise AssertionError(f"No {signal} signal within {limit} messages")


def test_cart_channel(client, seeded):
    beef = seeded["beef"]
    with client.websocket_connect("/ws/r/chuan/tables/A3") as ws:
        first = ws.receive_json()
        assert first["type"] == "cart-changed"
        assert first["lines"] == []

        ws.send_json({"action": "add", "menu_item_id": beef.id, "quantity": 2})
        changed = receive_until(ws, "cart-changed", lambda m: m["total_item_count"] == 2)
        assert Decimal(str(changed["total_amount"])) == Decimal("56.00")

        ws.send_json({"action": "checkout", "notes": "快一点"})
        succeeded = receive_until(ws, "checkout-succeeded")
        assert isinstance(succeeded["order_id"], int)


def test_cart_channel_reports_errors(client, seeded):
    with client.websocket_connect("/ws/r/chuan/tables/A3") as ws:
        ws.receive_json()

        ws.send_json({"action": "add", "menu_item_id": seeded["soup"].id})
        assert receive_until(ws, "cart-error")["message"] == "酸辣汤 is not available"

        ws.send_json({"action": "dance"})
        assert receive_until(ws, "cart-error")["message"] == "Invalid command"

        ws.send_json({"action": "checkout"})
        assert receive_until(ws, "checkout-failed")["reason"] == "Nothing to check out"


def test_sessions_at_one_table_share_the_cart(client, seeded):
    beef = seeded["beef"]
    with client.websocket_connect("/ws/r/chuan/tables/A3") as first, \
            client.websocket_connect("/ws/r/chuan/tables/A3") as second:
        first.receive_json()
        second.receive_json()

        first.send_json({"action": "add", "menu_item_id": beef.id})
        changed = receive_until(second, "cart-changed", lambda m: m["total_item_count"] == 1)
        assert changed["lines"][0]["menu_item"]["name"] == "红烧牛肉"


def test_kitchen_channel(client, seeded):
    beef = seeded["beef"]
    with client.websocket_connect("/ws/r/chuan/kitchen") as kitchen, \
            client.websocket_connect("/ws/r/chuan/tables/B2") as table:
        assert kitchen.receive_json()["type"] == "order-queue-changed"
        table.receive_json()

        table.send_json({"action": "add", "menu_item_id": beef.id})
        table.send_json({"action": "checkout"})
        order_id = receive_until(table, "checkout-succeeded")["order_id"]

        arrived = receive_until(kitchen, "new-order-arrived")
        assert arrived["order_id"] == order_id

        kitchen.send_json({"action": "advance", "order_id": order_id})
        changed = receive_until(
            kitchen,
            "order-queue-changed",
            lambda m: m["orders"] and m["orders"][0]["status"] == "preparing",
        )
        assert changed["counts"] == {"pending": 0, "preparing": 1, "served": 0}

        kitchen.send_json({"action": "advance", "order_id": order_id, "status": "completed"})
        error = receive_until(kitchen, "order-queue-error")
        assert "next status is served" in error["message"]


def test_unknown_restaurant_is_refused(client, seeded):
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect("/ws/r/nowhere/kitchen"):
            pass
    assert exc.value.code == 4404


def test_cart_channel_cannot_touch_another_table(client, seeded):
    store = main.app.state.store
    restaurant, beef = seeded["restaurant"], seeded["beef"]
    with client.websocket_connect("/ws/r/chuan/tables/A4") as neighbour, \
            client.websocket_connect("/ws/r/chuan/tables/A3") as ws:
        neighbour.receive_json()
        ws.receive_json()

        neighbour.send_json({"action": "add", "menu_item_id": beef.id, "quantity": 2})
        line_id = receive_until(neighbour, "cart-changed", lambda m: m["lines"])["lines"][0]["id"]

        ws.send_json({"action": "set_quantity", "line_id": line_id, "quantity": 7})
        assert receive_until(ws, "cart-changed")["lines"] == []
        ws.send_json({"action": "remove", "line_id": line_id})
        assert receive_until(ws, "cart-changed")["lines"] == []

    lines = client.portal.call(store.list_cart_lines, restaurant.id, "A4")
    assert [(line.id, line.quantity) for line in lines] == [(line_id, 2)]


class StalledSocket:
    def __init__(self):
        self.sent = []
        self.release = asyncio.Event()

    async def send_json(self, payload):
        await self.release.wait()
        self.sent.append(payload)


async def test_slow_client_does_not_hold_up_writers(store, feed, menu, cart):
    socket = StalledSocket()
    outbox = main.SignalOutbox(socket)
    async with CartStore(store, feed, menu.restaurant.id, "A3") as watcher:
        watcher.events.on("changed", lambda lines: outbox.send("cart-changed", count=len(lines)))

        await asyncio.wait_for(cart.add(menu.beef, 1), timeout=1)
        await asyncio.wait_for(cart.add(menu.tea, 1), timeout=1)
        assert socket.sent == []

        socket.release.set()
        await asyncio.wait_for(outbox.flush(), timeout=1)
        assert [message["count"] for message in socket.sent] == [1, 2]
    await outbox.close()


async def test_outbox_discards_signals_once_socket_is_gone():
    class ClosedSocket:
        async def send_json(self, payload):
            raise RuntimeError("Cannot call send once a close message has been sent")

    outbox = main.SignalOutbox(ClosedSocket())
    outbox.send("cart-error", message="first")
    outbox.send("cart-error", message="second")

    await asyncio.wait_for(outbox.flush(), timeout=1)
    assert outbox.is_gone
    await outbox.close()
