from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel

from reentrybot.core.config import SUPPORTED_EXCHANGES, settings
from reentrybot.core.log_setup import setup_logging
from reentrybot.exchange.errors import ExchangeError
from reentrybot.exchange.factory import build_adapter
from reentrybot.notify.telegram import LogNotifier, Notifier, TelegramNotifier
from reentrybot.persistence.audit import Audit
from reentrybot.persistence.db import DB
from reentrybot.persistence.state_store import StateStore
from reentrybot.runner.models import (
    AccountCredentials,
    AccountRef,
    RetryPolicy,
    TakeProfitConfig,
    utc_now_iso,
)
from reentrybot.runner.runner import AdapterFactory, ReentryRunner
from reentrybot.runner.scheduler import Scheduler

log = logging.getLogger("reentrybot.api")

app = FastAPI(title="Reentry Bot")


@dataclass
class Service:
    db: DB
    store: StateStore
    audit: Audit
    notifier: Notifier
    runner: ReentryRunner
    scheduler: Scheduler


def build_service(
    cfg=settings,
    adapter_factory: AdapterFactory = build_adapter,
    notifier: Optional[Notifier] = None,
) -> Service:
    db = DB(cfg.DB_PATH)
    store = StateStore(db)
    audit = Audit(db, cfg.AUDIT_JSONL_PATH)

    if notifier is None:
        if cfg.TELEGRAM_BOT_TOKEN:
            notifier = TelegramNotifier(
                cfg.TELEGRAM_BOT_TOKEN,
                chat_lookup=lambda ref: _chat_id(store, ref),
                base_url=cfg.TELEGRAM_API_BASE_URL,
                timeout_s=cfg.EXCHANGE_TIMEOUT_SECONDS,
            )
        else:
            notifier = LogNotifier()

    runner = ReentryRunner(store, notifier, audit=audit, adapter_factory=adapter_factory, settings=cfg)
    scheduler = Scheduler(audit=audit)
    scheduler.register("take_profit", cfg.TP_SCAN_INTERVAL_SECONDS, runner.scan_take_profit)
    scheduler.register("reentry", cfg.REENTRY_SCAN_INTERVAL_SECONDS, runner.scan_reentries)
    if cfg.PROGRESS_UPDATES_ENABLED:
        scheduler.register(
            "progress", cfg.PROGRESS_UPDATE_INTERVAL_SECONDS, runner.send_progress_updates
        )
    return Service(db, store, audit, notifier, runner, scheduler)


def _chat_id(store: StateStore, ref: AccountRef) -> Optional[str]:
    creds = store.load_account(ref.user_id, ref.exchange)
    return creds.chat_id if creds else None


_service: Optional[Service] = None


def get_service() -> Service:
    global _service
    if _service is None:
        _service = build_service()
    return _service


@app.on_event("startup")
async def _startup():
    """Fail-fast config validation, then optionally start the timers."""
    setup_logging(settings.LOG_LEVEL, settings.LOG_DIR)
    # raises ValueError on fatal misconfiguration: refuse to start
    for w in settings.validate_runtime():
        log.warning("[CONFIG WARNING] %s", w)

    if settings.SCHEDULER_AUTOSTART:
        get_service().scheduler.start()


@app.on_event("shutdown")
async def _shutdown():
    if _service is None:
        return
    await _service.scheduler.stop()
    _service.runner.shutdown()


# ---------------- helpers ----------------


def _exchange(exchange: str) -> str:
    ex = (exchange or "").lower()
    if ex not in SUPPORTED_EXCHANGES:
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported exchange '{exchange}' (expected one of {', '.join(SUPPORTED_EXCHANGES)})",
        )
    return ex


def _require_account(svc: Service, user_id: str, exchange: str) -> AccountCredentials:
    creds = svc.store.load_account(user_id, exchange)
    if creds is None:
        raise HTTPException(status_code=404, detail=f"No {exchange} account registered for {user_id}")
    return creds


# ---------------- health ----------------


@app.get("/")
def root():
    return {"ok": True, "service": "reentrybot", "time_utc": utc_now_iso()}


@app.get("/health")
def health():
    svc = get_service()
    return {
        "ok": True,
        "scheduler_running": svc.scheduler.running,
        "pending_reentries": len(svc.store.list_reentries()),
    }


# ---------------- accounts ----------------


class AccountIn(BaseModel):
    user_id: str
    exchange: str
    api_key: str
    api_secret: str
    passphrase: Optional[str] = None
    chat_id: Optional[str] = None


@app.post("/accounts")
def register_account(body: AccountIn):
    svc = get_service()
    exchange = _exchange(body.exchange)
    if not body.user_id or ":" in body.user_id:
        raise HTTPException(status_code=400, detail="user_id must be non-empty and contain no ':'")
    if exchange == "okx" and not body.passphrase:
        raise HTTPException(status_code=400, detail="OKX accounts need a passphrase")

    creds = AccountCredentials(
        user_id=body.user_id,
        exchange=exchange,
        api_key=body.api_key,
        api_secret=body.api_secret,
        passphrase=body.passphrase,
        chat_id=body.chat_id,
    )
    svc.store.save_account(creds)
    svc.runner.forget_adapter(creds.ref)
    svc.audit.event("ACCOUNT_REGISTERED", account=str(creds.ref))
    return {"ok": True, "account": str(creds.ref)}


@app.get("/accounts/{user_id}/{exchange}")
def account_status(user_id: str, exchange: str, live: bool = False):
    svc = get_service()
    exchange = _exchange(exchange)
    creds = _require_account(svc, user_id, exchange)
    tp = svc.store.load_tp_config(user_id, exchange)
    retry = svc.store.load_retry_policy(user_id, exchange)

    out: Dict[str, Any] = {
        "account": str(creds.ref),
        "chat_id": creds.chat_id,
        "tp_config": tp.to_dict() if tp else None,
        "target_profit": tp.target_profit if tp else None,
        "retry_policy": retry.to_dict() if retry else None,
        "pending_reentries": [r.to_dict() for _, r in svc.store.list_reentries(user_id, exchange)],
    }

    if live:
        try:
            adapter = svc.runner.adapter_for(creds)
            positions = adapter.get_open_positions()
        except ExchangeError as e:
            raise HTTPException(status_code=502, detail=str(e))
        out["positions"] = [
            {
                "symbol": p.symbol,
                "side": p.side,
                "quantity": p.quantity,
                "entry_price": p.entry_price,
                "current_price": p.current_price,
                "unrealized_pnl": p.unrealized_pnl,
                "profit_pct": p.profit_percent(),
                "leverage": p.leverage,
            }
            for p in positions
        ]
        out["unrealized_pnl"] = sum(p.unrealized_pnl for p in positions)
    return out


@app.post("/accounts/{user_id}/{exchange}/tp")
def set_take_profit(
    user_id: str,
    exchange: str,
    percentage: float = Query(..., gt=0, le=100),
    initial_balance: float = Query(..., gt=0),
):
    svc = get_service()
    exchange = _exchange(exchange)
    _require_account(svc, user_id, exchange)
    cfg = TakeProfitConfig(percentage=percentage, initial_balance=initial_balance)
    try:
        svc.store.save_tp_config(user_id, exchange, cfg)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    svc.audit.event("TP_CONFIG_SET", account=f"{user_id}:{exchange}", details=cfg.to_dict())
    return {"ok": True, "tp_config": cfg.to_dict(), "target_profit": cfg.target_profit}


@app.delete("/accounts/{user_id}/{exchange}/tp")
def clear_take_profit(user_id: str, exchange: str):
    svc = get_service()
    exchange = _exchange(exchange)
    removed = svc.store.delete_tp_config(user_id, exchange)
    svc.audit.event("TP_CONFIG_CLEARED", account=f"{user_id}:{exchange}")
    return {"ok": True, "removed": removed}


@app.post("/accounts/{user_id}/{exchange}/retry")
def set_retry(
    user_id: str,
    exchange: str,
    max_retry: int = Query(..., ge=1, le=10),
    volume_reduction_percent: float = Query(..., ge=1, le=50),
):
    svc = get_service()
    exchange = _exchange(exchange)
    _require_account(svc, user_id, exchange)
    policy = RetryPolicy(max_retry=max_retry, volume_reduction_percent=volume_reduction_percent)
    try:
        svc.store.save_retry_policy(user_id, exchange, policy)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    svc.audit.event("RETRY_POLICY_SET", account=f"{user_id}:{exchange}", details=policy.to_dict())
    return {"ok": True, "retry_policy": policy.to_dict()}


@app.delete("/accounts/{user_id}/{exchange}/retry")
def disable_retry(user_id: str, exchange: str):
    """Disable re-entries for this account and drop every pending record."""
    svc = get_service()
    exchange = _exchange(exchange)
    policy = svc.store.load_retry_policy(user_id, exchange)
    if policy is not None:
        policy.enabled = False
        policy.set_at = utc_now_iso()
        svc.store.save_retry_policy(user_id, exchange, policy)
    deleted = svc.runner.cancel_reentries(user_id, exchange)
    svc.audit.event(
        "RETRY_DISABLED", account=f"{user_id}:{exchange}", details={"deleted_records": deleted}
    )
    return {"ok": True, "deleted_records": deleted}


@app.get("/reentries")
def list_reentries(user_id: Optional[str] = None, exchange: Optional[str] = None):
    svc = get_service()
    if exchange:
        exchange = _exchange(exchange)
        if not user_id:
            raise HTTPException(status_code=400, detail="exchange filter needs user_id")
    items = svc.store.list_reentries(user_id, exchange)
    return {
        "count": len(items),
        "items": [{"account": str(ref), **rec.to_dict()} for ref, rec in items],
    }


# ---------------- runner ----------------


@app.get("/runner/status")
def runner_status():
    return get_service().scheduler.status()


@app.post("/runner/start")
async def runner_start():
    svc = get_service()
    started = svc.scheduler.start()
    return {"status": "started" if started else "already_running", **svc.scheduler.status()}


@app.post("/runner/stop")
async def runner_stop():
    svc = get_service()
    stopped = await svc.scheduler.stop()
    return {"status": "stopped" if stopped else "not_running", **svc.scheduler.status()}


@app.post("/runner/tick/{timer}")
def runner_tick(timer: str):
    svc = get_service()
    if timer not in svc.scheduler.timers:
        raise HTTPException(status_code=404, detail=f"Unknown timer: {timer}")
    return svc.scheduler.run_tick(timer)


@app.get("/runner/audit/tail")
def audit_tail(limit: int = Query(50, ge=1, le=500)):
    """Tail the audit JSONL mirror without opening files."""
    events = get_service().audit.tail(limit)
    return {"ok": True, "limit": limit, "events": events}
