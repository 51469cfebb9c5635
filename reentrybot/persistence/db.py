from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

_SCHEMA = (
    # accounts, TP configs, retry policies and pending re-entry records
    """
    CREATE TABLE IF NOT EXISTS kv (
        key TEXT PRIMARY KEY,
        value_json TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    # one row per scheduler start
    """
    CREATE TABLE IF NOT EXISTS runs (
        run_id TEXT PRIMARY KEY,
        started_at TEXT NOT NULL,
        stopped_at TEXT,
        tp_interval_seconds INTEGER NOT NULL,
        reentry_interval_seconds INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp_utc TEXT NOT NULL,
        run_id TEXT,
        cycle_id TEXT,
        account TEXT,
        symbol TEXT,
        event_type TEXT NOT NULL,
        action TEXT,
        details_json TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_events_run ON events(run_id)",
    "CREATE INDEX IF NOT EXISTS idx_events_time ON events(timestamp_utc)",
    "CREATE INDEX IF NOT EXISTS idx_events_account ON events(account)",
)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class DB:
    """
    SQLite file shared by the state store and the audit log.
    Every caller opens its own short-lived connection, so scanner
    threads never share a connection object.
    """

    def __init__(self, path: str = "data/bot.db"):
        self.path = path
        folder = os.path.dirname(self.path)
        if folder:
            os.makedirs(folder, exist_ok=True)
        self._init()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.path, timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def _init(self) -> None:
        conn = sqlite3.connect(self.path, timeout=30)
        try:
            # WAL: readers don't block the unit that is writing
            conn.execute("PRAGMA journal_mode=WAL")
            for stmt in _SCHEMA:
                conn.execute(stmt)
            conn.commit()
        finally:
            conn.close()
