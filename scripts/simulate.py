"""
Table Traffic Simulation Script

Simulates a busy dinner service against a running API:
    1. Customers on several devices per table place QR orders concurrently
    2. Staff move every order to completed
    3. Several staff members click "pay table" at the same moment

Every order must be paid exactly once: the ``updated`` counts of all
pay clicks for a table add up to its order count.

Run from project root: python scripts/simulate.py

Version: 1.0.0
"""

import argparse
import asyncio
import random
import sys
import time
from datetime import datetime
from typing import Any

import httpx

# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Configuration
API_BASE_URL = "http://localhost:8001"
RESTAURANT_ID = "demo"
TABLES = 8
DEVICES_PER_TABLE = 3
PAY_CLICKS = 4

# Sample menu
MENU_ITEMS = [
    {"menu_item_id": "m1", "name": "Pad Kra Pao", "price": {"price_type": "chicken_pork", "amount": 80.0}},
    {"menu_item_id": "m2", "name": "Tom Yum Goong", "price": {"price_type": "seafood", "amount": 150.0}},
    {"menu_item_id": "m3", "name": "Som Tam", "price": {"price_type": "standard", "amount": 60.0}},
    {"menu_item_id": "m4", "name": "Khao Pad", "price": {"price_type": "chicken_pork", "amount": 70.0}},
    {"menu_item_id": "m5", "name": "Thai Iced Tea", "price": {"price_type": "standard", "amount": 45.0}},
]
ADDONS = [{"name": "Fried egg", "price": 10.0}, {"name": "Extra rice", "price": 15.0}]


def generate_random_items() -> list[dict]:
    """Generate random order lines."""
    items = []
    for _ in range(random.randint(1, 3)):
        item = dict(random.choice(MENU_ITEMS))
        item["quantity"] = random.randint(1, 3)
        if random.random() < 0.3:
            item["selected_addons"] = [random.choice(ADDONS)]
        items.append(item)
    return items


def api(path: str) -> str:
    return f"{API_BASE_URL}/api/restaurants/{RESTAURANT_ID}{path}"


# =============================================================================
# CUSTOMER TRAFFIC
# =============================================================================

async def place_order(
    client: httpx.AsyncClient,
    table: str,
    device_id: str,
) -> dict[str, Any]:
    """Place one QR order from a device."""
    payload = {
        "order_type": "qr",
        "table_number": table,
        "device_id": device_id,
        "items": generate_random_items(),
    }
    start_time = time.time()

    try:
        response = await client.post(api("/orders"), json=payload, timeout=30.0)
        elapsed = round(time.time() - start_time, 3)
        if response.status_code == 201:
            data = response.json()
            return {
                "success": True,
                "order_id": data["id"],
                "table": table,
                "session_id": data["session_id"],
                "total": data["total"],
                "time": elapsed,
            }
        return {"success": False, "table": table, "error": response.text[:100], "time": elapsed}
    except httpx.HTTPError as e:
        elapsed = round(time.time() - start_time, 3)
        return {"success": False, "table": table, "error": str(e)[:100], "time": elapsed}


async def complete_order(client: httpx.AsyncClient, order_id: int) -> bool:
    response = await client.patch(
        f"{API_BASE_URL}/api/orders/{order_id}/status",
        json={"status": "completed"},
        timeout=30.0,
    )
    return response.status_code == 200


async def pay_table(client: httpx.AsyncClient, table: str) -> dict[str, Any]:
    """One staff member pressing the pay button."""
    try:
        response = await client.post(
            api(f"/tables/{table}/pay"), json={"payment_method": "cash"}, timeout=30.0
        )
        if response.status_code == 200:
            return response.json()
        return {"success": False, "updated": 0, "error_message": response.text[:100]}
    except httpx.HTTPError as e:
        return {"success": False, "updated": 0, "error_message": str(e)[:100]}


# =============================================================================
# MAIN SIMULATION RUNNER
# =============================================================================

async def run_simulation(
    tables: int = TABLES,
    devices: int = DEVICES_PER_TABLE,
    clicks: int = PAY_CLICKS,
) -> dict[str, Any]:
    """
    Run the dinner-service simulation.

    Args:
        tables: Number of tables seated
        devices: Customer devices per table, each its own session
        clicks: Simultaneous pay clicks per table
    """
    print("=" * 70)
    print("🔥 TABLE TRAFFIC SIMULATION")
    print("=" * 70)
    print(f"📋 Tables: {tables} × {devices} devices")
    print(f"🎯 Target: {API_BASE_URL} (restaurant {RESTAURANT_ID})")
    print(f"⏰ Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    start_time = time.time()
    table_ids = [str(n) for n in range(1, tables + 1)]

    async with httpx.AsyncClient() as client:
        print("\n🚀 Placing orders from every device...\n")
        tasks = []
        for table in table_ids:
            for d in range(devices):
                device_id = f"sim-{table}-{d}"
                for _ in range(random.randint(1, 3)):
                    tasks.append(place_order(client, table, device_id))
        orders = await asyncio.gather(*tasks)

        placed = [o for o in orders if o["success"]]
        failed = [o for o in orders if not o["success"]]

        print("🍳 Completing orders...\n")
        await asyncio.gather(*(complete_order(client, o["order_id"]) for o in placed))

        print(f"💳 {clicks} simultaneous pay clicks per table...\n")
        clicks_by_table = {}
        for table in table_ids:
            clicks_by_table[table] = asyncio.gather(*(pay_table(client, table) for _ in range(clicks)))
        pay_results = {table: await results for table, results in clicks_by_table.items()}

        bills = {}
        for table in table_ids:
            response = await client.get(api(f"/tables/{table}/bill"))
            bills[table] = response.json() if response.status_code == 200 else None

    total_time = round(time.time() - start_time, 2)

    # Analyze results
    problems = []
    for table in table_ids:
        expected = len([o for o in placed if o["table"] == table])
        paid = sum(r.get("updated", 0) for r in pay_results[table])
        if paid != expected:
            problems.append(f"Table {table}: {paid} paid for {expected} orders")
        bill = bills[table]
        if bill is None or not bill["all_paid"]:
            problems.append(f"Table {table}: bill still open")

    sessions = {o["session_id"] for o in placed}

    print("=" * 70)
    print("📊 SIMULATION RESULTS")
    print("=" * 70)
    print(f"\n✅ Orders placed: {len(placed)}/{len(orders)}")
    print(f"❌ Orders failed: {len(failed)}")
    print(f"🧾 Sessions: {len(sessions)} (expected {tables * devices})")
    print(f"⏱️  Total Time: {total_time}s")

    if placed:
        avg_time = round(sum(o["time"] for o in placed) / len(placed), 3)
        total_revenue = sum(o["total"] for o in placed)
        print("\n📈 Performance Metrics:")
        print(f"   Average Response: {avg_time}s")
        print(f"   Slowest: {max(o['time'] for o in placed)}s")
        print(f"   💰 Total Revenue: {total_revenue:.2f}")

    if failed:
        print("\n⚠️  Failed Order Details (showing first 5):")
        for f in failed[:5]:
            print(f"   Table {f['table']}: {f.get('error', 'Unknown error')}")

    if problems:
        print("\n❌ DOUBLE OR MISSED PAYMENTS:")
        for p in problems:
            print(f"   {p}")
    else:
        print("\n✅ Every order paid exactly once")

    print("\n" + "=" * 70)
    print("🔍 VERIFICATION STEPS")
    print("=" * 70)
    print("1. Check Celery terminal - all settlement tasks should complete")
    print("2. Run: python scripts/verify.py")
    print("=" * 70)

    return {
        "placed": len(placed),
        "failed": len(failed),
        "problems": problems,
        "total_time": total_time,
    }


async def check_health() -> bool:
    """Pre-flight check before the simulation."""
    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(f"{API_BASE_URL}/health")
        except httpx.HTTPError as e:
            print(f"   ❌ API unreachable: {e}")
            return False
    if response.status_code != 200:
        print(f"   ❌ Failed: {response.text}")
        return False
    data = response.json()
    print(f"   ✅ Status: {data.get('status')}")
    print(f"   Database: {data.get('database')}")
    print(f"   Change feed: {data.get('change_feed')}")
    return True


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Table Traffic Simulation")
    parser.add_argument("--tables", type=int, default=TABLES, help="Number of tables")
    parser.add_argument("--devices", type=int, default=DEVICES_PER_TABLE, help="Devices per table")
    parser.add_argument("--clicks", type=int, default=PAY_CLICKS, help="Concurrent pay clicks per table")
    parser.add_argument("--restaurant", default=RESTAURANT_ID, help="Restaurant id")
    args = parser.parse_args()

    RESTAURANT_ID = args.restaurant

    print("\n1️⃣ Health Check...")
    if not asyncio.run(check_health()):
        print("\n❌ Pre-flight check failed. Start the API first.")
        sys.exit(1)

    summary = asyncio.run(run_simulation(args.tables, args.devices, args.clicks))
    sys.exit(1 if summary["problems"] else 0)
