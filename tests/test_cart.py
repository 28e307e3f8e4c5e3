"""
Shared table cart.

Covers:
  Lines and totals:
  - worked example: 2 x 28.00 + 1 x 15.50 (中辣) = 71.50, 3 items
  - identical configurations merge; different options stay separate
  - lines are listed oldest first
  - quantity <= 0 removes the line; removing twice is fine

  Validation:
  - zero quantity, sold-out, unavailable and foreign items rejected
  - unknown option group, invalid choice and missing required group rejected
  - rejections record the error and emit it without touching the cart

  Sessions:
  - another session at the same table sees writes through the feed
  - other tables are never affected
  - a session cannot change or remove another table's lines
  - an add racing a checkout lands in the emptied cart
  - closing a session stops its notifications
  - a read that completes after a newer read is discarded
  - a failed read keeps the last-known-good lines
"""

import asyncio
from decimal import Decimal

import pytest

from tableorder.errors import TransientRemoteFailure, ValidationFailure
from tableorder.services.cart import CartStore
from tableorder.status import OrderStatus

MEDIUM = {"辣度": "中辣"}


class TestLinesAndTotals:
    async def test_worked_example(self, cart, menu):
        await cart.add(menu.beef, 2)
        await cart.add(menu.tofu, 1, MEDIUM)

        assert cart.total_amount == Decimal("71.50")
        assert cart.total_item_count == 3
        assert [line.menu_item_id for line in cart.list()] == [menu.beef.id, menu.tofu.id]

    async def test_same_configuration_merges(self, cart, menu):
        await cart.add(menu.beef, 1)
        await cart.add(menu.beef, 2)

        assert len(cart.list()) == 1
        assert cart.list()[0].quantity == 3

    async def test_different_options_stay_separate(self, cart, menu):
        await cart.add(menu.tofu, 1, {"辣度": "微辣"})
        await cart.add(menu.tofu, 1, MEDIUM)
        await cart.add(menu.tofu, 1, {"辣度": "微辣"})

        lines = cart.list()
        assert len(lines) == 2
        assert cart.find_line(menu.tofu.id, {"辣度": "微辣"}).quantity == 2
        assert cart.find_line(menu.tofu.id, MEDIUM).quantity == 1

    async def test_set_quantity(self, cart, menu):
        await cart.add(menu.beef, 1)
        line = cart.list()[0]

        await cart.set_quantity(line.id, 5)
        assert cart.list()[0].quantity == 5
        assert cart.total_amount == Decimal("140.00")

    @pytest.mark.parametrize("quantity", [0, -1])
    async def test_non_positive_quantity_removes(self, cart, menu, quantity):
        await cart.add(menu.beef, 2)
        await cart.set_quantity(cart.list()[0].id, quantity)
        assert cart.list() == []

    async def test_remove_twice(self, cart, menu):
        await cart.add(menu.beef, 1)
        line_id = cart.list()[0].id

        await cart.remove(line_id)
        await cart.remove(line_id)
        assert cart.list() == []
        assert cart.error is None

    async def test_list_returns_a_copy(self, cart, menu):
        await cart.add(menu.beef, 1)
        cart.list().clear()
        assert len(cart.list()) == 1


class TestValidation:
    async def test_zero_quantity(self, cart, menu):
        with pytest.raises(ValidationFailure):
            await cart.add(menu.beef, 0)
        assert cart.list() == []
        assert cart.error == "Quantity must be at least 1"

    async def test_sold_out(self, cart, menu):
        with pytest.raises(ValidationFailure, match="sold out"):
            await cart.add(menu.oysters, 1)

    async def test_unavailable(self, cart, menu):
        with pytest.raises(ValidationFailure, match="not available"):
            await cart.add(menu.soup, 1)

    async def test_foreign_item(self, cart, other_restaurant):
        _, burger = other_restaurant
        with pytest.raises(ValidationFailure):
            await cart.add(burger, 1)

    @pytest.mark.parametrize(
        "options,message",
        [
            ({"辣度": "爆辣"}, "not a valid choice"),
            ({"辣度": "中辣", "甜度": "少糖"}, "no option"),
            ({}, "Please choose"),
        ],
    )
    async def test_bad_options(self, cart, menu, options, message):
        with pytest.raises(ValidationFailure, match=message):
            await cart.add(menu.tofu, 1, options)
        assert cart.list() == []

    async def test_error_is_emitted_and_dismissable(self, cart, menu):
        errors = []
        cart.events.on("error", errors.append)

        with pytest.raises(ValidationFailure):
            await cart.add(menu.oysters, 1)

        assert errors == [f"{menu.oysters.name} is sold out"]
        cart.dismiss_error()
        assert cart.error is None

    async def test_successful_refresh_clears_error(self, cart, menu):
        with pytest.raises(ValidationFailure):
            await cart.add(menu.oysters, 1)
        await cart.add(menu.beef, 1)
        assert cart.error is None


class TestSessions:
    async def test_second_session_sees_writes(self, store, feed, menu, cart):
        changes = []
        async with CartStore(store, feed, menu.restaurant.id, "A3") as other:
            other.events.on("changed", lambda lines: changes.append(len(lines)))
            await cart.add(menu.beef, 2)

            assert [line.quantity for line in other.list()] == [2]
            assert other.total_amount == Decimal("56.00")
            assert changes

            await other.set_quantity(other.list()[0].id, 0)
            assert cart.list() == []

    async def test_concurrent_adds_of_same_configuration_merge(self, store, feed, menu, cart):
        async with CartStore(store, feed, menu.restaurant.id, "A3") as other:
            await asyncio.gather(cart.add(menu.beef, 1), other.add(menu.beef, 1))

            assert len(cart.list()) == 1
            assert cart.list()[0].quantity == 2
            assert other.list() == cart.list()

    async def test_other_tables_unaffected(self, store, feed, menu, cart):
        async with CartStore(store, feed, menu.restaurant.id, "A4") as neighbour:
            changes = []
            neighbour.events.on("changed", changes.append)

            await cart.add(menu.beef, 1)

            assert neighbour.list() == []
            assert changes == []

    async def test_same_table_number_in_other_restaurant_unaffected(
        self, store, feed, menu, cart, other_restaurant
    ):
        restaurant, burger = other_restaurant
        async with CartStore(store, feed, restaurant.id, "A3") as elsewhere:
            await elsewhere.add(burger, 1)
            assert cart.list() == []
            await cart.add(menu.beef, 1)
            assert [line.menu_item_id for line in elsewhere.list()] == [burger.id]

    async def test_lines_of_other_tables_cannot_be_changed(self, store, feed, menu, cart):
        async with CartStore(store, feed, menu.restaurant.id, "A4") as neighbour:
            await neighbour.add(menu.beef, 2)
            line_id = neighbour.list()[0].id

            await cart.set_quantity(line_id, 7)
            await cart.remove(line_id)
            await cart.set_quantity(line_id, 0)

            assert cart.list() == []
            assert cart.error is None
            assert [(line.id, line.quantity) for line in neighbour.list()] == [(line_id, 2)]

    async def test_add_racing_a_checkout_is_not_lost(self, store, feed, menu, cart, monkeypatch):
        await cart.add(menu.beef, 1)
        original = store.insert_cart_line

        async def checkout_first(*args):
            # Another session at the table checks out just before this write lands
            monkeypatch.setattr(store, "insert_cart_line", original)
            await store.checkout_cart(menu.restaurant.id, "A3")
            return await original(*args)

        monkeypatch.setattr(store, "insert_cart_line", checkout_first)
        await cart.add(menu.beef, 3)

        assert [(line.menu_item_id, line.quantity) for line in cart.list()] == [(menu.beef.id, 3)]
        assert cart.error is None
        orders = await store.list_orders(menu.restaurant.id, list(OrderStatus))
        assert [order.item_count for order in orders] == [1]

    async def test_close_stops_notifications(self, store, feed, menu, cart):
        other = await CartStore(store, feed, menu.restaurant.id, "A3").start()
        count = feed.subscription_count
        other.close()
        other.close()

        assert not other.is_subscribed
        assert feed.subscription_count == count - 1
        await cart.add(menu.beef, 1)
        assert other.list() == []

    async def test_stale_read_is_discarded(self, store, menu, cart, monkeypatch):
        await cart.add(menu.beef, 1)

        original = store.list_cart_lines
        gate = asyncio.Event()
        calls = 0

        async def slow_first_read(*args):
            nonlocal calls
            calls += 1
            if calls == 1:
                await gate.wait()
                return []
            return await original(*args)

        monkeypatch.setattr(store, "list_cart_lines", slow_first_read)

        slow = asyncio.create_task(cart.refresh())
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        await cart.refresh()
        gate.set()
        await slow

        assert len(cart.list()) == 1

    async def test_failed_read_keeps_last_known_good(self, store, menu, cart, monkeypatch):
        await cart.add(menu.beef, 1)

        async def unreachable(*args):
            raise TransientRemoteFailure("Could not load cart")

        monkeypatch.setattr(store, "list_cart_lines", unreachable)

        with pytest.raises(TransientRemoteFailure):
            await cart.refresh()
        assert len(cart.list()) == 1
        assert cart.error == "Could not load cart"

    async def test_start_failure_unsubscribes(self, store, feed, menu, monkeypatch):
        async def unreachable(*args):
            raise TransientRemoteFailure("Could not load cart")

        monkeypatch.setattr(store, "list_cart_lines", unreachable)
        session = CartStore(store, feed, menu.restaurant.id, "B1")

        with pytest.raises(TransientRemoteFailure):
            await session.start()
        assert not session.is_subscribed
        assert not session.is_loading
