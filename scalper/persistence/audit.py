from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from scalper.ops.context import get_run_id, get_tick_id
from scalper.persistence.db import DB, utc_now_iso
from scalper.persistence.writer import PersistenceWriter

log = logging.getLogger("scalper.audit")


class Audit:
    """
    DB audit is the source of truth.
    Additionally mirrors events to logs/audit.jsonl for tailing.
    run_id / tick_id are picked up from the ops context when not passed.
    """

    def __init__(
        self,
        db: DB,
        jsonl_path: str = "logs/audit.jsonl",
        writer: Optional[PersistenceWriter] = None,
    ):
        self.db = db
        self.writer = writer
        self.jsonl_path = Path(jsonl_path)

        # ensure logs folder + file exist
        try:
            self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
            self.jsonl_path.touch(exist_ok=True)
        except OSError as e:
            # never crash the engine due to audit file issues
            log.warning("audit mirror unavailable at %s: %s", self.jsonl_path, e)

    def start_run(self, run_id: str, mode: str, interval_seconds: float) -> None:
        with self.db.connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO runs(run_id, started_at, mode, interval_seconds) VALUES (?,?,?,?)",
                (run_id, utc_now_iso(), mode, float(interval_seconds)),
            )
        self._write_jsonl(
            {
                "timestamp_utc": utc_now_iso(),
                "event_type": "RUN_START",
                "run_id": run_id,
                "details": {"mode": mode, "interval_seconds": interval_seconds},
            }
        )

    def stop_run(self, run_id: str) -> None:
        with self.db.connect() as conn:
            conn.execute(
                "UPDATE runs SET stopped_at = ? WHERE run_id = ?",
                (utc_now_iso(), run_id),
            )
        self._write_jsonl(
            {
                "timestamp_utc": utc_now_iso(),
                "event_type": "RUN_STOP",
                "run_id": run_id,
                "details": {},
            }
        )

    def event(
        self,
        event_type: str,
        symbol: Optional[str] = None,
        action: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        run_id: Optional[str] = None,
        tick_id: Optional[str] = None,
    ) -> None:
        row = {
            "timestamp_utc": utc_now_iso(),
            "event_type": event_type,
            "run_id": run_id or get_run_id(),
            "tick_id": tick_id or get_tick_id(),
            "symbol": symbol,
            "action": action,
            "details": details or {},
        }
        if self.writer is not None:
            self.writer.submit(f"audit:{event_type}", lambda: self._store(row))
        else:
            self._store(row)

    def _store(self, row: Dict[str, Any]) -> None:
        payload = json.dumps(row["details"], ensure_ascii=False, default=str)

        # 1) DB (source of truth)
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO events(timestamp_utc, run_id, tick_id, symbol, event_type, action, details_json)
                VALUES (?,?,?,?,?,?,?)
                """,
                (
                    row["timestamp_utc"],
                    row["run_id"],
                    row["tick_id"],
                    row["symbol"],
                    row["event_type"],
                    row["action"],
                    payload,
                ),
            )

        # 2) JSONL mirror
        self._write_jsonl(row)

    def tail(self, limit: int = 50) -> list:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM events ORDER BY id DESC LIMIT ?", (int(limit),)
            ).fetchall()
        out = []
        for r in rows:
            d = dict(r)
            try:
                d["details"] = json.loads(d.pop("details_json") or "{}")
            except ValueError:
                d["details"] = {}
            out.append(d)
        return out

    def _write_jsonl(self, obj: Dict[str, Any]) -> None:
        try:
            self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
            with self.jsonl_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(obj, ensure_ascii=False, default=str) + "\n")
        except OSError as e:
            # never crash the trading loop because the mirror write failed
            log.warning("audit mirror write failed: %s", e)
