# scalper/persistence/state_store.py

from __future__ import annotations

import json
import sqlite3
from typing import Any, Dict, Optional

from scalper.core.errors import PersistenceError
from scalper.persistence.db import DB, utc_now_iso


class StateStore:
    def __init__(self, db: DB):
        self.db = db

    # ---------- PORTFOLIO ----------
    def load_portfolio(self, key: str) -> Optional[Dict[str, Any]]:
        """
        Returns the persisted record {cashBalance, positions, trades, tradeCounter}
        or None when nothing was saved under `key`.
        Raises PersistenceError when the row exists but cannot be read.
        """
        try:
            with self.db.connect() as conn:
                row = conn.execute(
                    "SELECT payload_json FROM portfolio_state WHERE store_key = ?",
                    (key,),
                ).fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"read failed for {key}: {e}") from e

        if not row:
            return None

        try:
            data = json.loads(row["payload_json"])
        except ValueError as e:
            raise PersistenceError(f"corrupt record for {key}: {e}") from e
        if not isinstance(data, dict):
            raise PersistenceError(f"corrupt record for {key}: not an object")
        return data

    def save_portfolio(self, key: str, record: Dict[str, Any]) -> None:
        """UPSERT the whole record (safe across restarts)."""
        payload = json.dumps(record, ensure_ascii=False)
        try:
            with self.db.connect() as conn:
                conn.execute(
                    """
                    INSERT INTO portfolio_state(store_key, payload_json, updated_at)
                    VALUES (?,?,?)
                    ON CONFLICT(store_key) DO UPDATE SET
                        payload_json=excluded.payload_json,
                        updated_at=excluded.updated_at
                    """,
                    (key, payload, utc_now_iso()),
                )
        except sqlite3.Error as e:
            raise PersistenceError(f"write failed for {key}: {e}") from e

    def clear_portfolio(self, key: str) -> None:
        try:
            with self.db.connect() as conn:
                conn.execute("DELETE FROM portfolio_state WHERE store_key = ?", (key,))
        except sqlite3.Error as e:
            raise PersistenceError(f"clear failed for {key}: {e}") from e
