# reentrybot/persistence/audit.py
from __future__ import annotations

import json
import logging
import sqlite3
from collections import deque
from pathlib import Path
from typing import Any, Dict, List, Optional

from reentrybot.ops.context import get_cycle_id, get_run_id
from reentrybot.persistence.db import DB, utc_now_iso

log = logging.getLogger("reentrybot.audit")


class Audit:
    """
    DB audit is the source of truth.
    Additionally mirrors events to a JSONL file so /runner/audit/tail works.
    run_id / cycle_id default to the ones set in ops.context.
    """

    def __init__(self, db: DB, jsonl_path: str = "logs/audit.jsonl"):
        self.db = db
        self.jsonl_path = Path(jsonl_path)

        try:
            self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
            self.jsonl_path.touch(exist_ok=True)
        except OSError as e:
            log.warning("audit jsonl unavailable (%s): %s", self.jsonl_path, e)

    def start_run(
        self, run_id: str, tp_interval_seconds: int, reentry_interval_seconds: int
    ) -> None:
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO runs(run_id, started_at, tp_interval_seconds, reentry_interval_seconds)
                VALUES (?,?,?,?)
                """,
                (run_id, utc_now_iso(), tp_interval_seconds, reentry_interval_seconds),
            )
        self._write_jsonl(
            _row(
                "RUN_START",
                run_id,
                tp_interval_seconds=tp_interval_seconds,
                reentry_interval_seconds=reentry_interval_seconds,
            )
        )

    def stop_run(self, run_id: str) -> None:
        with self.db.connect() as conn:
            conn.execute("UPDATE runs SET stopped_at = ? WHERE run_id = ?", (utc_now_iso(), run_id))
        self._write_jsonl(_row("RUN_STOP", run_id))

    def event(
        self,
        event_type: str,
        account: Optional[str] = None,
        symbol: Optional[str] = None,
        action: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        run_id: Optional[str] = None,
        cycle_id: Optional[str] = None,
    ) -> None:
        run_id = run_id or get_run_id()
        cycle_id = cycle_id or get_cycle_id()
        ts = utc_now_iso()
        payload = json.dumps(details or {}, ensure_ascii=False, default=str)

        # 1) DB (source of truth)
        try:
            with self.db.connect() as conn:
                conn.execute(
                    """
                    INSERT INTO events(timestamp_utc, run_id, cycle_id, account, symbol, event_type, action, details_json)
                    VALUES (?,?,?,?,?,?,?,?)
                    """,
                    (ts, run_id, cycle_id, account, symbol, event_type, action, payload),
                )
        except sqlite3.Error as e:
            # an audit write must never abort a trading unit
            log.warning("audit db write failed for %s: %s", event_type, e)

        # 2) JSONL mirror
        self._write_jsonl(
            {
                "timestamp_utc": ts,
                "event_type": event_type,
                "run_id": run_id,
                "cycle_id": cycle_id,
                "account": account,
                "symbol": symbol,
                "action": action,
                "details": details or {},
            }
        )

    def tail(self, n: int = 50) -> List[Dict[str, Any]]:
        if not self.jsonl_path.exists():
            return []
        out: List[Dict[str, Any]] = []
        with self.jsonl_path.open("r", encoding="utf-8") as f:
            for line in deque(f, maxlen=max(1, n)):
                line = line.strip()
                if not line:
                    continue
                try:
                    out.append(json.loads(line))
                except json.JSONDecodeError:
                    continue
        return out

    def _write_jsonl(self, obj: Dict[str, Any]) -> None:
        try:
            self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
            with self.jsonl_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(obj, ensure_ascii=False, default=str) + "\n")
        except OSError as e:
            log.warning("audit jsonl write failed: %s", e)


def _row(event_type: str, run_id: str, **details: Any) -> Dict[str, Any]:
    return {
        "timestamp_utc": utc_now_iso(),
        "event_type": event_type,
        "run_id": run_id,
        "details": details,
    }
