"""
Shared fixtures: an in-memory SQLite store on the in-process change feed,
seeded with one restaurant and a small menu.
"""

from dataclasses import dataclass
from decimal import Decimal

import pytest

from tableorder.database import create_engine, init_db
from tableorder.schemas import MenuItem, Restaurant
from tableorder.services.cart import CartStore
from tableorder.services.feed import LocalChangeFeed
from tableorder.services.store import SqlRemoteStore

SPICE = {"name": "辣度", "choices": ["不辣", "微辣", "中辣", "特辣"], "required": True}


@dataclass
class Menu:
    restaurant: Restaurant
    beef: MenuItem       # 28.00, no options, unlimited
    tofu: MenuItem       # 15.50, required spice option
    tea: MenuItem        # 6.00, 3 portions left
    oysters: MenuItem    # sold out
    soup: MenuItem       # not available


@pytest.fixture
async def engine():
    engine = create_engine("sqlite+aiosqlite://")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def feed():
    return LocalChangeFeed()


@pytest.fixture
def store(engine, feed):
    return SqlRemoteStore(engine, feed)


@pytest.fixture
async def menu(store) -> Menu:
    restaurant = await store.create_restaurant("川味小馆", "chuan")
    rid = restaurant.id
    return Menu(
        restaurant=restaurant,
        beef=await store.create_menu_item(rid, "热菜", "红烧牛肉", Decimal("28.00")),
        tofu=await store.create_menu_item(rid, "热菜", "麻婆豆腐", Decimal("15.50"), options=[SPICE]),
        tea=await store.create_menu_item(rid, "饮品", "菊花茶", Decimal("6.00"), stock=3),
        oysters=await store.create_menu_item(rid, "海鲜", "生蚝", Decimal("9.90"), stock=0),
        soup=await store.create_menu_item(rid, "汤", "酸辣汤", Decimal("12.00"), is_available=False),
    )


@pytest.fixture
async def other_restaurant(store) -> tuple[Restaurant, MenuItem]:
    restaurant = await store.create_restaurant("Other Place", "other")
    item = await store.create_menu_item(restaurant.id, "Mains", "Burger", Decimal("11.00"))
    return restaurant, item


@pytest.fixture
async def cart(store, feed, menu):
    cart = await CartStore(store, feed, menu.restaurant.id, "A3").start()
    yield cart
    cart.close()


@pytest.fixture
def place_order(store, feed, menu):
    """Fill a table's cart with one line and check it out."""

    async def place(table, item=None, quantity=1, options=None, notes=None) -> int:
        async with CartStore(store, feed, menu.restaurant.id, table) as cart:
            await cart.add(item or menu.beef, quantity, options)
            return await cart.checkout(notes)

    return place
