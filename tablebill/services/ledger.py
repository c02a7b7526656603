"""
Settlement Ledger with Concurrency Control

Excel book of every order that was marked paid, one row per order.
Written by the Celery worker after each successful pay operation.

- The file is guarded by a ``FileLock`` so concurrent workers append
  one at a time.
- Order ids already in the book are skipped, so a retried task, or
  two workers reporting the same order, never double-record it.

Version: 1.0.0
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import pandas as pd
from filelock import FileLock, Timeout

from tablebill.core.config import get_settings

logger = logging.getLogger(__name__)


class SettlementLedger:
    """File-locked Excel settlement book."""

    COLUMNS = [
        "order_id",
        "order_number",
        "restaurant_id",
        "table_number",
        "session_id",
        "operation",
        "order_status",
        "total",
        "payment_method",
        "payment_transaction_id",
        "ordered_at",
        "settled_at",
    ]

    # Identifiers stay text when read back ("07" is not table 7.0)
    TEXT_COLUMNS = {
        "order_number": str,
        "restaurant_id": str,
        "table_number": str,
        "session_id": str,
    }

    def __init__(
        self,
        directory: Path,
        filename: str = "settlements.xlsx",
        lock_timeout: int = 30,
    ):
        self.directory = Path(directory)
        self.path = self.directory / filename
        self.lock_path = self.directory / f"{filename}.lock"
        self.lock_timeout = lock_timeout

    @classmethod
    def from_settings(cls) -> "SettlementLedger":
        settings = get_settings()
        return cls(
            Path(settings.data_directory),
            settings.ledger_filename,
            settings.ledger_lock_timeout,
        )

    def _ensure_dir(self) -> None:
        """Create data directory if needed."""
        if not self.directory.exists():
            self.directory.mkdir(parents=True, exist_ok=True)
            logger.info(f"Created data directory: {self.directory}")

    def _load(self) -> pd.DataFrame:
        """Load existing book or start an empty one."""
        if self.path.exists():
            return pd.read_excel(self.path, engine="openpyxl", dtype=self.TEXT_COLUMNS)
        return pd.DataFrame(columns=self.COLUMNS)

    def record(self, settlement: dict[str, Any]) -> dict[str, Any]:
        """
        Append the orders of one settlement.

        Args:
            settlement: ``{"operation", "restaurant_id", "orders": [...]}``
                where each order is a dict with at least ``id`` and ``total``

        Returns:
            ``{"success", "message", "recorded", "skipped", "settled_at"}``
        """
        self._ensure_dir()
        orders = settlement.get("orders") or []
        result = {
            "success": False,
            "message": "",
            "recorded": 0,
            "skipped": 0,
            "settled_at": None,
        }

        try:
            with FileLock(str(self.lock_path), timeout=self.lock_timeout):
                df = self._load()
                known = set(pd.to_numeric(df["order_id"], errors="coerce").dropna().astype(int))

                settled_at = datetime.now().isoformat()
                rows = []
                for order in orders:
                    order_id = int(order["id"])
                    if order_id in known:
                        result["skipped"] += 1
                        continue
                    known.add(order_id)
                    rows.append({
                        "order_id": order_id,
                        "order_number": order.get("order_number"),
                        "restaurant_id": order.get("restaurant_id", settlement.get("restaurant_id")),
                        "table_number": order.get("table_number"),
                        "session_id": order.get("session_id"),
                        "operation": settlement.get("operation"),
                        "order_status": order.get("status"),
                        "total": order.get("total") or 0.0,
                        "payment_method": order.get("payment_method"),
                        "payment_transaction_id": order.get("payment_transaction_id"),
                        "ordered_at": order.get("created_at"),
                        "settled_at": settled_at,
                    })

                if rows:
                    new_rows = pd.DataFrame(rows, columns=self.COLUMNS)
                    df = new_rows if df.empty else pd.concat([df, new_rows], ignore_index=True)
                    df.to_excel(str(self.path), index=False, engine="openpyxl")

                result["success"] = True
                result["recorded"] = len(rows)
                result["settled_at"] = settled_at
                result["message"] = f"{len(rows)} recorded, {result['skipped']} already present"
                logger.info(f"Settlement {settlement.get('operation')}: {result['message']}")

        except Timeout:
            result["message"] = f"Lock timeout ({self.lock_timeout}s)"
            logger.error(f"Ledger lock timeout for {settlement.get('operation')}")

        return result

    def read_all(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        return self._load().to_dict("records")

    def totals_by_table(self, restaurant_id: Optional[str] = None) -> dict[str, float]:
        """Settled revenue per table (``"-"`` for orders without a table)."""
        if not self.path.exists():
            return {}
        df = self._load()
        if restaurant_id is not None:
            df = df[df["restaurant_id"].astype(str) == restaurant_id]
        tables = df["table_number"].fillna("-").astype(str)
        return {k: round(float(v), 2) for k, v in df.groupby(tables)["total"].sum().items()}

    def clear(self) -> bool:
        """Delete the ledger file and its lock."""
        for f in (self.path, self.lock_path):
            if f.exists():
                f.unlink()
        logger.info("Settlement ledger cleared")
        return True
