# reentrybot/persistence/state_store.py

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Tuple

from reentrybot.persistence.db import DB, utc_now_iso
from reentrybot.runner.models import (
    AccountCredentials,
    AccountRef,
    ReentryRecord,
    RetryPolicy,
    TakeProfitConfig,
)


# ---------- KEY LAYOUT ----------
def account_key(user_id: str, exchange: str) -> str:
    return f"account:{user_id}:{exchange}"


def tp_config_key(user_id: str, exchange: str) -> str:
    return f"tp_config:{user_id}:{exchange}"


def retry_config_key(user_id: str, exchange: str) -> str:
    return f"retry_config:{user_id}:{exchange}"


def reentry_prefix(user_id: str, exchange: str) -> str:
    return f"reentry:{user_id}:{exchange}:"


def reentry_key(user_id: str, exchange: str, symbol: str) -> str:
    return f"{reentry_prefix(user_id, exchange)}{symbol.upper()}"


def parse_reentry_key(key: str) -> Tuple[AccountRef, str]:
    """reentry:{user}:{exchange}:{symbol} -> (AccountRef, symbol)"""
    parts = key.split(":")
    if len(parts) != 4 or parts[0] != "reentry":
        raise ValueError(f"Not a re-entry key: {key}")
    return AccountRef(parts[1], parts[2]), parts[3]


def _escape_like(s: str) -> str:
    return s.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class StateStore:
    def __init__(self, db: DB):
        self.db = db

    # ---------- RAW KV ----------
    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT value_json FROM kv WHERE key = ?", (key,)
            ).fetchone()
        if not row:
            return None
        return json.loads(row["value_json"])

    def set(self, key: str, value: Dict[str, Any]) -> None:
        """UPSERT (last writer wins)."""
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO kv(key, value_json, updated_at)
                VALUES (?,?,?)
                ON CONFLICT(key) DO UPDATE SET
                    value_json=excluded.value_json,
                    updated_at=excluded.updated_at
                """,
                (key, json.dumps(value, ensure_ascii=False), utc_now_iso()),
            )

    def delete(self, key: str) -> bool:
        with self.db.connect() as conn:
            cur = conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            return cur.rowcount > 0

    def scan_prefix(self, prefix: str) -> List[str]:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT key FROM kv WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
                (_escape_like(prefix) + "%",),
            ).fetchall()
        return [r["key"] for r in rows]

    # ---------- ACCOUNTS ----------
    def save_account(self, creds: AccountCredentials) -> None:
        if not creds.created_at:
            creds.created_at = utc_now_iso()
        self.set(account_key(creds.user_id, creds.exchange), creds.to_dict())

    def load_account(self, user_id: str, exchange: str) -> Optional[AccountCredentials]:
        data = self.get(account_key(user_id, exchange))
        return AccountCredentials.from_dict(data) if data else None

    def list_accounts(self) -> List[AccountCredentials]:
        out: List[AccountCredentials] = []
        for key in self.scan_prefix("account:"):
            data = self.get(key)
            if data:
                out.append(AccountCredentials.from_dict(data))
        return out

    # ---------- TP CONFIG ----------
    def save_tp_config(self, user_id: str, exchange: str, cfg: TakeProfitConfig) -> None:
        cfg.validate()
        if not cfg.set_at:
            cfg.set_at = utc_now_iso()
        self.set(tp_config_key(user_id, exchange), cfg.to_dict())

    def load_tp_config(self, user_id: str, exchange: str) -> Optional[TakeProfitConfig]:
        data = self.get(tp_config_key(user_id, exchange))
        return TakeProfitConfig.from_dict(data) if data else None

    def delete_tp_config(self, user_id: str, exchange: str) -> bool:
        return self.delete(tp_config_key(user_id, exchange))

    # ---------- RETRY POLICY ----------
    def save_retry_policy(self, user_id: str, exchange: str, policy: RetryPolicy) -> None:
        policy.validate()
        if not policy.set_at:
            policy.set_at = utc_now_iso()
        self.set(retry_config_key(user_id, exchange), policy.to_dict())

    def load_retry_policy(self, user_id: str, exchange: str) -> Optional[RetryPolicy]:
        data = self.get(retry_config_key(user_id, exchange))
        return RetryPolicy.from_dict(data) if data else None

    # ---------- RE-ENTRY RECORDS ----------
    def save_reentry(self, user_id: str, exchange: str, rec: ReentryRecord) -> None:
        self.set(reentry_key(user_id, exchange, rec.symbol), rec.to_dict())

    def load_reentry(
        self, user_id: str, exchange: str, symbol: str
    ) -> Optional[ReentryRecord]:
        data = self.get(reentry_key(user_id, exchange, symbol))
        return ReentryRecord.from_dict(data) if data else None

    def delete_reentry(self, user_id: str, exchange: str, symbol: str) -> bool:
        return self.delete(reentry_key(user_id, exchange, symbol))

    def list_reentries(
        self, user_id: Optional[str] = None, exchange: Optional[str] = None
    ) -> List[Tuple[AccountRef, ReentryRecord]]:
        if user_id and exchange:
            prefix = reentry_prefix(user_id, exchange)
        elif user_id:
            prefix = f"reentry:{user_id}:"
        else:
            prefix = "reentry:"

        out: List[Tuple[AccountRef, ReentryRecord]] = []
        for key in self.scan_prefix(prefix):
            data = self.get(key)
            if not data:
                continue
            ref, _ = parse_reentry_key(key)
            out.append((ref, ReentryRecord.from_dict(data)))
        return out

    def delete_reentries(self, user_id: str, exchange: str) -> int:
        """Bulk delete every pending re-entry of one account. Returns count."""
        with self.db.connect() as conn:
            cur = conn.execute(
                "DELETE FROM kv WHERE key LIKE ? ESCAPE '\\'",
                (_escape_like(reentry_prefix(user_id, exchange)) + "%",),
            )
            return cur.rowcount

    def swap_reentry(
        self,
        user_id: str,
        exchange: str,
        expected: ReentryRecord,
        replacement: Optional[ReentryRecord],
    ) -> bool:
        """
        Compare-and-swap on one record: write `replacement` (or delete, when
        None) only if the stored row still equals `expected`.
        Returns False when the row changed or is gone.
        """
        key = reentry_key(user_id, exchange, expected.symbol)
        with self.db.connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("SELECT value_json FROM kv WHERE key = ?", (key,)).fetchone()
            if not row or ReentryRecord.from_dict(json.loads(row["value_json"])) != expected:
                return False
            if replacement is None:
                conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            else:
                conn.execute(
                    "UPDATE kv SET value_json = ?, updated_at = ? WHERE key = ?",
                    (json.dumps(replacement.to_dict(), ensure_ascii=False), utc_now_iso(), key),
                )
        return True
