"""
Demo Seed Script

Creates the "demo" restaurant and its menu in the configured database.
Run from project root: python scripts/seed.py
"""

import argparse
import asyncio
import os
import sys
from decimal import Decimal

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tableorder.core.config import get_settings, setup_logging
from tableorder.database import create_engine, init_db
from tableorder.services.feed import LocalChangeFeed
from tableorder.services.store import SqlRemoteStore

SPICE = {"name": "辣度", "choices": ["不辣", "微辣", "中辣", "特辣"], "required": True}
SUGAR = {"name": "甜度", "choices": ["正常糖", "少糖", "无糖"], "required": False}
SIZE = {"name": "份量", "choices": ["小份", "大份"], "required": True}

MENU = [
    ("热菜", "红烧牛肉", "28.00", -1, []),
    ("热菜", "麻婆豆腐", "15.50", -1, [SPICE]),
    ("热菜", "宫保鸡丁", "32.00", -1, [SPICE]),
    ("凉菜", "拍黄瓜", "9.00", -1, []),
    ("主食", "担担面", "18.00", -1, [SPICE, SIZE]),
    ("主食", "米饭", "2.00", -1, []),
    ("饮品", "菊花茶", "6.00", 500, [SUGAR]),
    ("饮品", "酸梅汤", "8.00", -1, [SUGAR]),
]


async def seed(slug: str, name: str) -> None:
    settings = get_settings()
    engine = create_engine(settings.database_url)
    await init_db(engine)
    store = SqlRemoteStore(engine, LocalChangeFeed())

    try:
        if await store.get_restaurant_by_slug(slug) is not None:
            print(f"⚠️ Restaurant '{slug}' already exists, nothing to do")
            return

        restaurant = await store.create_restaurant(name, slug)
        for category, item_name, price, stock, options in MENU:
            await store.create_menu_item(
                restaurant.id, category, item_name, Decimal(price), stock=stock, options=options
            )
        print(f"✅ Seeded '{slug}' (#{restaurant.id}) with {len(MENU)} menu items")
        print(f"   Menu: http://localhost:{settings.api_port}/api/r/{slug}/menu")
    finally:
        await store.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed a demo restaurant")
    parser.add_argument("--slug", default="demo", help="Restaurant slug")
    parser.add_argument("--name", default="川味小馆", help="Restaurant name")
    args = parser.parse_args()

    setup_logging()
    asyncio.run(seed(args.slug, args.name))
