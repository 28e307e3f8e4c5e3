"""
Rush-Hour Simulation Script

Simulates several diners per table hammering the shared carts at once,
then every diner at a table pressing "checkout" together.
Run from project root (API running, menu seeded): python scripts/simulate.py

Expected outcome:
    - each table's cart converges to the sum of what its diners added
    - each table produces exactly one order; the other checkouts fail
      with "Nothing to check out"
"""

import argparse
import asyncio
import random
import sys
import time
from collections import Counter
from datetime import datetime
from decimal import Decimal
from typing import Any

import httpx

# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Configuration
API_BASE_URL = "http://localhost:8001"
SLUG = "demo"
TABLES = 5
DINERS_PER_TABLE = 4
ADDS_PER_DINER = 5

NOTES = [None, "不要香菜", "少盐", "快一点", "打包"]


def pick_configuration(menu: list[dict[str, Any]]) -> dict[str, Any]:
    """Random orderable item with a random valid option selection."""
    item = random.choice([i for i in menu if i["stock"] != 0])
    options = {
        group["name"]: random.choice(group["choices"])
        for group in item["options"]
        if group["choices"] and (group["required"] or random.random() < 0.5)
    }
    return {"menu_item_id": item["id"], "quantity": random.randint(1, 3), "selected_options": options}


# =============================================================================
# DINERS
# =============================================================================

async def diner(
    client: httpx.AsyncClient,
    table: str,
    menu: list[dict[str, Any]],
) -> list[dict[str, Any]]:
    """One diner adding items; returns what was accepted."""
    accepted = []
    for _ in range(ADDS_PER_DINER):
        payload = pick_configuration(menu)
        response = await client.post(f"/api/r/{SLUG}/tables/{table}/cart", json=payload)
        if response.status_code == 200:
            accepted.append(payload)
        await asyncio.sleep(random.uniform(0, 0.05))
    return accepted


async def checkout(client: httpx.AsyncClient, table: str) -> dict[str, Any]:
    start_time = time.time()
    response = await client.post(
        f"/api/r/{SLUG}/tables/{table}/checkout",
        json={"notes": random.choice(NOTES)},
    )
    elapsed = round(time.time() - start_time, 3)
    body = response.json()
    if response.status_code == 201:
        return {"table": table, "success": True, "order_id": body["order_id"], "time": elapsed}
    return {"table": table, "success": False, "error": body.get("error"), "time": elapsed}


async def run_table(client: httpx.AsyncClient, table: str, menu: list[dict[str, Any]]) -> dict[str, Any]:
    added = await asyncio.gather(*[diner(client, table, menu) for _ in range(DINERS_PER_TABLE)])
    expected_items = sum(p["quantity"] for batch in added for p in batch)

    cart = (await client.get(f"/api/r/{SLUG}/tables/{table}/cart")).json()
    converged = cart["total_item_count"] == expected_items

    results = await asyncio.gather(*[checkout(client, table) for _ in range(DINERS_PER_TABLE)])
    return {
        "table": table,
        "expected_items": expected_items,
        "cart_items": cart["total_item_count"],
        "cart_total": Decimal(str(cart["total_amount"])),
        "converged": converged,
        "checkouts": results,
    }


# =============================================================================
# MAIN SIMULATION RUNNER
# =============================================================================

async def run_simulation(tables: int = TABLES) -> dict[str, Any]:
    print("=" * 70)
    print("🔥 RUSH-HOUR SIMULATION - SHARED CARTS")
    print("=" * 70)
    print(f"🍽️  Tables: {tables} x {DINERS_PER_TABLE} diners")
    print(f"🎯 Target: {API_BASE_URL}/api/r/{SLUG}")
    print(f"⏰ Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    start_time = time.time()
    async with httpx.AsyncClient(base_url=API_BASE_URL, timeout=30.0) as client:
        response = await client.get(f"/api/r/{SLUG}/menu")
        if response.status_code != 200:
            print(f"\n❌ Menu not available: {response.text[:100]}")
            print("   Seed it first: python scripts/seed.py")
            return {"success": False}
        menu = response.json()["items"]

        table_names = [f"T{n + 1}" for n in range(tables)]
        outcomes = await asyncio.gather(*[run_table(client, t, menu) for t in table_names])

    total_time = round(time.time() - start_time, 2)

    print("\n" + "=" * 70)
    print("📊 SIMULATION RESULTS")
    print("=" * 70)

    problems = 0
    for outcome in outcomes:
        wins = [r for r in outcome["checkouts"] if r["success"]]
        errors = Counter(r["error"] for r in outcome["checkouts"] if not r["success"])
        ok = outcome["converged"] and len(wins) == 1
        problems += not ok
        print(
            f"{'✅' if ok else '❌'} Table {outcome['table']}: "
            f"{outcome['cart_items']}/{outcome['expected_items']} items, "
            f"total {outcome['cart_total']}, orders {[w['order_id'] for w in wins]}, "
            f"rejected {dict(errors)}"
        )

    print(f"\n⏱️  Total Time: {total_time}s")
    print("\n" + "=" * 70)
    print("🔍 VERIFICATION STEPS")
    print("=" * 70)
    print("1. Run: python scripts/verify.py")
    print(f"2. Watch ws://localhost:8001/ws/r/{SLUG}/kitchen for new-order-arrived")
    print("=" * 70)

    return {"success": problems == 0, "total_time": total_time, "tables": outcomes}


async def test_single_flows() -> bool:
    """Pre-flight checks before the rush."""
    print("\n" + "=" * 70)
    print("🧪 TESTING INDIVIDUAL FLOWS")
    print("=" * 70)

    async with httpx.AsyncClient(base_url=API_BASE_URL, timeout=30.0) as client:
        print("\n1️⃣ Health Check...")
        response = await client.get("/health")
        if response.status_code != 200:
            print(f"   ❌ Failed: {response.text}")
            return False
        data = response.json()
        print(f"   ✅ Status: {data.get('status')}")
        print(f"   Database: {data.get('database')}")
        print(f"   Change feed: {data.get('change_feed')}")

        print("\n2️⃣ Menu Lookup...")
        response = await client.get(f"/api/r/{SLUG}/menu")
        if response.status_code != 200:
            print(f"   ❌ Failed: {response.text[:100]}")
            return False
        body = response.json()
        print(f"   ✅ {body['restaurant']['name']}: {len(body['items'])} items in {len(body['categories'])} categories")

        print("\n3️⃣ Empty Checkout...")
        response = await client.post(f"/api/r/{SLUG}/tables/PREFLIGHT/checkout", json={})
        print(f"   {'✅' if response.status_code == 422 else '⚠️'} {response.json().get('error')}")

    print("\n" + "=" * 70)
    return True


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Rush-Hour Simulation Script")
    parser.add_argument("--tables", type=int, default=TABLES, help="Number of tables")
    parser.add_argument("--slug", default=SLUG, help="Restaurant slug")
    parser.add_argument("--skip-tests", action="store_true", help="Skip individual tests")
    args = parser.parse_args()
    SLUG = args.slug

    if not args.skip_tests:
        success = asyncio.run(test_single_flows())
        if not success:
            print("\n❌ Pre-flight tests failed. Fix issues before running simulation.")
            sys.exit(1)
        print("\n✅ Pre-flight tests passed!")

    summary = asyncio.run(run_simulation(tables=args.tables))
    sys.exit(0 if summary["success"] else 1)
