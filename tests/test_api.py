"""
HTTP surface, driven through httpx against the ASGI app.

Covers:
  - health and root endpoints
  - menu by slug; unknown slug is a 404
  - add / change / remove cart lines per table
  - checkout returns the order id and empties the cart
  - kitchen queue listing and status advance
  - store errors map to 404 / 422 / 503
"""

from decimal import Decimal

import httpx
import pytest

from tableorder.errors import TransientRemoteFailure
from tableorder.main import app


@pytest.fixture
async def client(store, feed, menu):
    app.state.store = store
    app.state.feed = feed
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def money(value) -> Decimal:
    return Decimal(str(value))


class TestRoot:
    async def test_root(self, client):
        response = await client.get("/")
        assert response.status_code == 200
        assert response.json()["health"] == "/health"

    async def test_health(self, client):
        body = (await client.get("/health")).json()
        assert body["status"] == "operational"
        assert body["database"] == body["change_feed"] == "healthy"


class TestMenu:
    async def test_menu(self, client, menu):
        body = (await client.get("/api/r/chuan/menu")).json()

        assert body["restaurant"]["name"] == "川味小馆"
        assert set(body["categories"]) == {"热菜", "饮品", "海鲜"}
        names = [item["name"] for item in body["items"]]
        assert "酸辣汤" not in names
        beef = next(item for item in body["items"] if item["id"] == menu.beef.id)
        assert money(beef["price"]) == Decimal("28.00")

    async def test_unknown_slug(self, client):
        response = await client.get("/api/r/nowhere/menu")
        assert response.status_code == 404
        assert response.json() == {"success": False, "error": "Restaurant not found", "detail": None}


class TestCart:
    async def test_worked_example(self, client, menu):
        await client.post("/api/r/chuan/tables/A3/cart", json={"menu_item_id": menu.beef.id, "quantity": 2})
        response = await client.post(
            "/api/r/chuan/tables/A3/cart",
            json={"menu_item_id": menu.tofu.id, "quantity": 1, "selected_options": {"辣度": "中辣"}},
        )

        body = response.json()
        assert response.status_code == 200
        assert money(body["total_amount"]) == Decimal("71.50")
        assert body["total_item_count"] == 3
        assert [line["menu_item"]["name"] for line in body["lines"]] == ["红烧牛肉", "麻婆豆腐"]

    async def test_tables_are_separate(self, client, menu):
        await client.post("/api/r/chuan/tables/A3/cart", json={"menu_item_id": menu.beef.id})
        body = (await client.get("/api/r/chuan/tables/A4/cart")).json()
        assert body["lines"] == []
        assert body["table_number"] == "A4"

    async def test_invalid_option_is_422(self, client, menu):
        response = await client.post(
            "/api/r/chuan/tables/A3/cart",
            json={"menu_item_id": menu.tofu.id, "selected_options": {"辣度": "爆辣"}},
        )
        assert response.status_code == 422
        assert "not a valid choice" in response.json()["error"]

    async def test_zero_quantity_is_422(self, client, menu):
        response = await client.post(
            "/api/r/chuan/tables/A3/cart", json={"menu_item_id": menu.beef.id, "quantity": 0}
        )
        assert response.status_code == 422

    async def test_foreign_item_is_404(self, client, other_restaurant):
        _, burger = other_restaurant
        response = await client.post("/api/r/chuan/tables/A3/cart", json={"menu_item_id": burger.id})
        assert response.status_code == 404

    async def test_change_and_remove_line(self, client, menu):
        body = (await client.post(
            "/api/r/chuan/tables/A3/cart", json={"menu_item_id": menu.beef.id}
        )).json()
        line_id = body["lines"][0]["id"]

        body = (await client.patch(f"/api/r/chuan/tables/A3/cart/{line_id}", json={"quantity": 4})).json()
        assert body["lines"][0]["quantity"] == 4

        body = (await client.patch(f"/api/r/chuan/tables/A3/cart/{line_id}", json={"quantity": 0})).json()
        assert body["lines"] == []

        response = await client.delete(f"/api/r/chuan/tables/A3/cart/{line_id}")
        assert response.status_code == 200

    async def test_line_of_another_table_is_404(self, client, menu):
        body = (await client.post(
            "/api/r/chuan/tables/A3/cart", json={"menu_item_id": menu.beef.id}
        )).json()
        line_id = body["lines"][0]["id"]

        response = await client.patch(f"/api/r/chuan/tables/A4/cart/{line_id}", json={"quantity": 3})
        assert response.status_code == 404

        await client.delete(f"/api/r/chuan/tables/A4/cart/{line_id}")
        assert len((await client.get("/api/r/chuan/tables/A3/cart")).json()["lines"]) == 1

    async def test_store_outage_is_503(self, client, store, monkeypatch):
        async def unreachable(*args):
            raise TransientRemoteFailure("Could not load cart")

        monkeypatch.setattr(store, "list_cart_lines", unreachable)
        response = await client.get("/api/r/chuan/tables/A3/cart")
        assert response.status_code == 503
        assert response.json()["error"] == "Could not load cart"


class TestCheckoutAndKitchen:
    async def test_checkout_flow(self, client, menu):
        await client.post("/api/r/chuan/tables/A3/cart", json={"menu_item_id": menu.beef.id, "quantity": 2})

        response = await client.post("/api/r/chuan/tables/A3/checkout", json={"notes": "  "})
        assert response.status_code == 201
        order_id = response.json()["order_id"]

        assert (await client.get("/api/r/chuan/tables/A3/cart")).json()["lines"] == []

        queue = (await client.get("/api/r/chuan/kitchen/orders")).json()
        assert [order["id"] for order in queue["orders"]] == [order_id]
        assert queue["orders"][0]["notes"] is None
        assert money(queue["orders"][0]["total_amount"]) == Decimal("56.00")
        assert queue["counts"] == {"pending": 1, "preparing": 0, "served": 0}

        queue = (await client.post(
            f"/api/r/chuan/kitchen/orders/{order_id}/advance", json={"status": "preparing"}
        )).json()
        assert queue["orders"][0]["status"] == "preparing"
        assert [o["id"] for o in queue["buckets"]["preparing"]] == [order_id]

    async def test_empty_checkout_is_422(self, client):
        response = await client.post("/api/r/chuan/tables/A3/checkout", json={})
        assert response.status_code == 422
        assert response.json()["error"] == "Nothing to check out"

    async def test_illegal_advance_is_422(self, client, place_order):
        order_id = await place_order("A1")
        response = await client.post(
            f"/api/r/chuan/kitchen/orders/{order_id}/advance", json={"status": "served"}
        )
        assert response.status_code == 422

    async def test_unknown_order_is_404(self, client):
        response = await client.post("/api/r/chuan/kitchen/orders/999/advance", json={"status": "preparing"})
        assert response.status_code == 404
