"""
Store Verification Script

Checks the ordering invariants directly against the database.
Run from project root: python scripts/verify.py

    - every order has at least one line
    - every order total equals the sum of its line totals
    - no cart holds two lines with the same item and options
    - no quantity below 1, no stock below -1
"""

import asyncio
import os
import sys
from collections import Counter
from datetime import datetime
from decimal import Decimal

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import select
from sqlalchemy.orm import selectinload

from tableorder.core.config import get_settings
from tableorder.database import create_engine, create_session_maker
from tableorder.models import CartItem, MenuItem, Order
from tableorder.schemas import to_money
from tableorder.status import ACTIVE_STATUSES


async def verify_store() -> bool:
    """Verify store integrity after a simulation."""
    settings = get_settings()

    print("=" * 60)
    print("🔍 STORE VERIFICATION REPORT")
    print("=" * 60)
    print(f"⏰ Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"🗄️  Database: {settings.database_url}")
    print("=" * 60)

    engine = create_engine(settings.database_url)
    session_maker = create_session_maker(engine)
    problems: list[str] = []

    try:
        async with session_maker() as session:
            orders = (await session.execute(
                select(Order).options(selectinload(Order.items))
            )).scalars().all()
            lines = (await session.execute(select(CartItem))).scalars().all()
            items = (await session.execute(select(MenuItem))).scalars().all()
    finally:
        await engine.dispose()

    # Orders
    for order in orders:
        if not order.items:
            problems.append(f"Order #{order.id} has no lines")
        expected = to_money(sum((Decimal(i.unit_price) * i.quantity for i in order.items), Decimal("0")))
        if to_money(order.total_amount) != expected:
            problems.append(f"Order #{order.id} total {order.total_amount} != lines {expected}")
        if any(i.quantity < 1 for i in order.items):
            problems.append(f"Order #{order.id} has a line with quantity < 1")

    # Carts
    keys = Counter(
        (line.restaurant_id, line.table_number, line.menu_item_id, tuple(sorted(line.selected_options.items())))
        for line in lines
    )
    for key, count in keys.items():
        if count > 1:
            problems.append(f"Cart {key[0]}/{key[1]} holds {count} lines of item #{key[2]} {dict(key[3])}")
    problems.extend(f"Cart line #{line.id} has quantity {line.quantity}" for line in lines if line.quantity < 1)

    # Stock
    problems.extend(f"Menu item #{item.id} has stock {item.stock}" for item in items if item.stock < -1)

    # Statistics
    statuses = Counter(order.status for order in orders)
    revenue = sum((Decimal(order.total_amount) for order in orders), Decimal("0"))
    print(f"\n📊 STATISTICS:")
    print(f"   Total Orders: {len(orders)}")
    print(f"   Active Orders: {sum(statuses[s] for s in ACTIVE_STATUSES)}")
    for status, count in sorted(statuses.items(), key=lambda kv: kv[0].value):
        print(f"      {status.info.label} ({status.value}): {count}")
    print(f"   Open Cart Lines: {len(lines)}")
    print(f"\n💰 REVENUE:")
    print(f"   Total: {to_money(revenue)}")
    if orders:
        print(f"   Average: {to_money(revenue / len(orders))}")

    if problems:
        print(f"\n⚠️ {len(problems)} PROBLEMS:")
        for problem in problems[:20]:
            print(f"   - {problem}")
    else:
        print("\n✅ All invariants hold")

    print("\n" + "=" * 60)
    print("✅ VERIFICATION COMPLETE")
    print("=" * 60)

    return not problems


if __name__ == "__main__":
    sys.exit(0 if asyncio.run(verify_store()) else 1)
