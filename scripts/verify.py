"""
Settlement Ledger Verification Script

Verifies data integrity of the Excel settlement ledger.
Run from project root: python scripts/verify.py

Version: 1.0.0
"""

import argparse
from datetime import datetime
from pathlib import Path

import pandas as pd

from tablebill.services.ledger import SettlementLedger


def verify_ledger(ledger: SettlementLedger) -> bool:
    """Verify the ledger after a simulation. Returns False on any problem."""

    print("=" * 60)
    print("🔍 SETTLEMENT LEDGER REPORT")
    print("=" * 60)
    print(f"⏰ Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"📄 File: {ledger.path}")
    print("=" * 60)

    if not ledger.path.exists():
        print("\n❌ Ledger file not found!")
        print("   Run the simulation first: python scripts/simulate.py")
        return False

    try:
        df = pd.DataFrame(ledger.read_all(), columns=SettlementLedger.COLUMNS)
        print("\n✅ File loaded successfully!")
    except (OSError, ValueError) as e:
        print(f"\n❌ Could not read ledger: {e}")
        return False

    ok = True

    print("\n📊 STATISTICS:")
    print(f"   Settled Orders: {len(df)}")
    print(f"   Restaurants: {df['restaurant_id'].nunique()}")
    print(f"   Sessions: {df['session_id'].nunique()}")

    # Each order may be settled once
    duplicates = df["order_id"].duplicated().sum()
    if duplicates > 0:
        ok = False
        print(f"\n⚠️ {duplicates} order(s) settled more than once!")
        print(df[df["order_id"].duplicated(keep=False)][["order_id", "operation", "settled_at"]].to_string(index=False))
    else:
        print("✅ No duplicate settlements")

    missing_totals = df["total"].isna().sum()
    if missing_totals:
        print(f"⚠️ {missing_totals} row(s) without a total (counted as 0)")

    print("\n🧾 BY OPERATION:")
    for operation, count in df["operation"].value_counts().items():
        print(f"   {operation}: {count}")

    print("\n💰 REVENUE BY TABLE:")
    for restaurant_id in sorted(df["restaurant_id"].dropna().unique()):
        totals = ledger.totals_by_table(restaurant_id)
        print(f"   {restaurant_id}:")
        for table, total in sorted(totals.items()):
            print(f"      Table {table}: {total:.2f}")
    print(f"   Total: {df['total'].fillna(0).sum():.2f}")

    print("\n📋 RECENT SETTLEMENTS:")
    print("-" * 60)
    if len(df) > 0:
        cols = ["order_id", "table_number", "session_id", "total", "operation"]
        print(df[cols].tail(5).to_string(index=False))

    print("\n" + "=" * 60)
    print("✅ VERIFICATION COMPLETE" if ok else "❌ VERIFICATION FAILED")
    print("=" * 60)

    return ok


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Settlement ledger verification")
    parser.add_argument("--file", help="Ledger path (defaults to the configured ledger)")
    args = parser.parse_args()

    if args.file:
        path = Path(args.file)
        ledger = SettlementLedger(path.parent, path.name)
    else:
        ledger = SettlementLedger.from_settings()

    raise SystemExit(0 if verify_ledger(ledger) else 1)
