from __future__ import annotations

import contextvars
import logging
import threading
from collections import defaultdict
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from typing import Any, Callable, Dict, List, Optional, Tuple

from reentrybot.core.config import settings as default_settings
from reentrybot.exchange.base import ExchangeAdapter
from reentrybot.exchange.errors import ExchangeError
from reentrybot.exchange.factory import build_adapter
from reentrybot.execution.reentry import ReentryExecutor
from reentrybot.execution.take_profit import TakeProfitEvaluator
from reentrybot.notify.telegram import Notifier
from reentrybot.persistence.audit import Audit
from reentrybot.persistence.state_store import StateStore, reentry_key
from reentrybot.risk.gate import SafetyGate
from reentrybot.runner.models import AccountCredentials, AccountRef

log = logging.getLogger("reentrybot.runner")

AdapterFactory = Callable[[AccountCredentials], ExchangeAdapter]

SKIPPED = "skipped"
ERROR = "error"

TIMERS = ("take_profit", "reentry", "progress")


class ReentryRunner:
    """
    Owns the per-tick work of the three timers:
      - scan_take_profit: one unit per (user, exchange) with a TP config
      - scan_reentries:   one unit per pending re-entry record
      - send_progress_updates: one unit per (user, exchange) with a TP config

    Units run on one thread pool per timer. Every unit holds a per-key lock (non-blocking;
    a busy key is skipped) and errors never leave the unit.
    """

    def __init__(
        self,
        store: StateStore,
        notifier: Notifier,
        audit: Optional[Audit] = None,
        adapter_factory: AdapterFactory = build_adapter,
        settings=default_settings,
        gate: Optional[SafetyGate] = None,
    ):
        self.store = store
        self.notifier = notifier
        self.audit = audit
        self.adapter_factory = adapter_factory
        self.settings = settings

        self.evaluator = TakeProfitEvaluator(
            store, notifier, audit=audit, min_profit_pct=settings.MIN_POSITION_PROFIT_PCT
        )
        self.executor = ReentryExecutor(
            store,
            gate or SafetyGate.from_settings(settings),
            notifier,
            audit=audit,
            candle_bar=settings.CANDLE_BAR,
            candle_count=settings.CANDLE_COUNT,
        )

        # one pool per timer: a stalled exchange call in one scan never starves the others
        self.pools: Dict[str, ThreadPoolExecutor] = {
            name: ThreadPoolExecutor(
                max_workers=settings.MAX_WORKERS, thread_name_prefix=f"reentrybot-{name}"
            )
            for name in TIMERS
        }
        self._key_locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._key_locks_guard = threading.Lock()
        self._adapters: Dict[str, Tuple[str, ExchangeAdapter]] = {}
        self._adapters_guard = threading.Lock()

    # ---------------- locks ----------------

    @contextmanager
    def key_guard(self, key: str, timeout_s: float = 0.0):
        """
        Prevent overlapping work on one key across ticks and manual endpoints.
        Yields False (and holds nothing) when the key is busy.
        """
        with self._key_locks_guard:
            lock = self._key_locks[key]
        acquired = lock.acquire(timeout=timeout_s) if timeout_s > 0 else lock.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                lock.release()

    # ---------------- adapters ----------------

    def adapter_for(self, creds: AccountCredentials) -> ExchangeAdapter:
        """Adapters are cached per account until its credentials change."""
        key = str(creds.ref)
        fingerprint = f"{creds.api_key}:{creds.passphrase or ''}"
        with self._adapters_guard:
            cached = self._adapters.get(key)
            if cached and cached[0] == fingerprint:
                return cached[1]
        adapter = self.adapter_factory(creds)
        with self._adapters_guard:
            self._adapters[key] = (fingerprint, adapter)
        return adapter

    def forget_adapter(self, ref: AccountRef) -> None:
        with self._adapters_guard:
            self._adapters.pop(str(ref), None)

    # ---------------- fan-out ----------------

    def _fan_out(
        self, timer: str, units: List[Tuple[Callable[..., Dict[str, Any]], tuple]]
    ) -> List[Dict[str, Any]]:
        pool = self.pools[timer]
        futures: List[Future] = []
        for fn, args in units:
            # each unit gets its own copy so run_id / cycle_id reach the worker thread
            ctx = contextvars.copy_context()
            futures.append(pool.submit(ctx.run, fn, *args))
        return [f.result() for f in futures]

    def _tp_accounts(self) -> List[AccountCredentials]:
        return [
            creds
            for creds in self.store.list_accounts()
            if self.store.load_tp_config(creds.user_id, creds.exchange) is not None
        ]

    @staticmethod
    def _summary(results: List[Dict[str, Any]]) -> Dict[str, Any]:
        out: Dict[str, Any] = {"units": len(results), "skipped": 0, "errors": 0}
        for r in results:
            status = r.get("status")
            if status == SKIPPED:
                out["skipped"] += 1
            elif status == ERROR:
                out["errors"] += 1
            else:
                out[status] = out.get(status, 0) + 1
        out["results"] = results
        return out

    def _unit_error(self, kind: str, ref: AccountRef, symbol: Optional[str], e: Exception) -> Dict[str, Any]:
        if isinstance(e, ExchangeError):
            log.warning("%s unit %s %s failed: %s", kind, ref, symbol or "", e)
        else:
            log.exception("%s unit %s %s crashed", kind, ref, symbol or "")
        if self.audit:
            self.audit.event(
                "UNIT_ERROR",
                account=str(ref),
                symbol=symbol,
                action=kind,
                details={"error": str(e), "type": type(e).__name__},
            )
        return {"account": str(ref), "symbol": symbol, "status": ERROR, "error": str(e)}

    # ---------------- TP scan ----------------

    def scan_take_profit(self) -> Dict[str, Any]:
        accounts = self._tp_accounts()
        return self._summary(self._fan_out("take_profit", [(self._tp_unit, (c,)) for c in accounts]))

    def _tp_unit(self, creds: AccountCredentials) -> Dict[str, Any]:
        ref = creds.ref
        with self.key_guard(f"tp:{ref}") as ok:
            if not ok:
                return {"account": str(ref), "status": SKIPPED}
            try:
                cfg = self.store.load_tp_config(ref.user_id, ref.exchange)
                if cfg is None:
                    return {"account": str(ref), "status": "no_config"}
                res = self.evaluator.evaluate(ref, self.adapter_for(creds), tp_config=cfg)
            except Exception as e:
                return self._unit_error("take_profit", ref, None, e)
        return {
            "account": str(ref),
            "status": "closed" if res.closed else ("reached" if res.reached else "below_target"),
            "total_pnl": res.total_pnl,
            "target_profit": res.target_profit,
            "closed": [c.symbol for c in res.closed],
            "failures": res.failures,
            "records_written": res.records_written,
        }

    # ---------------- re-entry scan ----------------

    def scan_reentries(self) -> Dict[str, Any]:
        pending = self.store.list_reentries()
        units = [(self._reentry_unit, (ref, rec.symbol)) for ref, rec in pending]
        return self._summary(self._fan_out("reentry", units))

    def _reentry_unit(self, ref: AccountRef, symbol: str) -> Dict[str, Any]:
        with self.key_guard(reentry_key(ref.user_id, ref.exchange, symbol)) as ok:
            if not ok:
                return {"account": str(ref), "symbol": symbol, "status": SKIPPED}
            try:
                creds = self.store.load_account(ref.user_id, ref.exchange)
                if creds is None:
                    log.warning("re-entry %s %s: no credentials stored", ref, symbol)
                    return {"account": str(ref), "symbol": symbol, "status": "no_account"}
                outcome = self.executor.process(ref, self.adapter_for(creds), symbol)
            except Exception as e:
                return self._unit_error("reentry", ref, symbol, e)
        return {
            "account": str(ref),
            "symbol": symbol,
            "status": outcome.status,
            "reason": outcome.reason,
            "fill_price": outcome.fill_price,
            "remaining_retries": outcome.remaining_retries,
        }

    def cancel_reentries(self, user_id: str, exchange: str, timeout_s: float = 60.0) -> int:
        """
        Delete every pending record of one account. Each record is deleted
        under its key lock, so a re-entry already running finishes first and
        its write-back cannot resurrect the record.
        """
        deleted = 0
        for ref, rec in self.store.list_reentries(user_id, exchange):
            key = reentry_key(ref.user_id, ref.exchange, rec.symbol)
            with self.key_guard(key, timeout_s=timeout_s) as ok:
                if not ok:
                    log.warning("cancel %s %s: re-entry still running after %ss", ref, rec.symbol, timeout_s)
                if self.store.delete_reentry(ref.user_id, ref.exchange, rec.symbol):
                    deleted += 1
        # records written by a TP scan in the meantime
        return deleted + self.store.delete_reentries(user_id, exchange)

    # ---------------- progress ----------------

    def send_progress_updates(self) -> Dict[str, Any]:
        accounts = self._tp_accounts()
        return self._summary(self._fan_out("progress", [(self._progress_unit, (c,)) for c in accounts]))

    def _progress_unit(self, creds: AccountCredentials) -> Dict[str, Any]:
        ref = creds.ref
        with self.key_guard(f"progress:{ref}") as ok:
            if not ok:
                return {"account": str(ref), "status": SKIPPED}
            try:
                cfg = self.store.load_tp_config(ref.user_id, ref.exchange)
                if cfg is None:
                    return {"account": str(ref), "status": "no_config"}
                pnl = self.adapter_for(creds).get_account_unrealized_pnl()
                pending = len(self.store.list_reentries(ref.user_id, ref.exchange))
                self.notifier.notify(ref, format_progress_message(ref, pnl, cfg.target_profit, pending))
            except Exception as e:
                return self._unit_error("progress", ref, None, e)
        return {"account": str(ref), "status": "sent", "unrealized_pnl": pnl}

    def shutdown(self) -> None:
        for pool in self.pools.values():
            pool.shutdown(wait=True)


def format_progress_message(ref: AccountRef, pnl: float, target: float, pending: int) -> str:
    progress = (pnl / target * 100) if target > 0 else 0.0
    return "\n".join(
        [
            f"📊 *Progress* ({ref.exchange.upper()})",
            f"Unrealized PnL: ${pnl:.2f} / target ${target:.2f} ({progress:.1f}%)",
            f"Pending re-entries: {pending}",
        ]
    )
