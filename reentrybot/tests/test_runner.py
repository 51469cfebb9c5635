import threading
from datetime import datetime, timedelta, timezone

import pytest

from reentrybot.core.config import Settings
from reentrybot.persistence.state_store import reentry_key
from reentrybot.runner.models import (
    LONG,
    AccountCredentials,
    Position,
    RetryPolicy,
    TakeProfitConfig,
)
from reentrybot.runner.runner import ReentryRunner
from reentrybot.tests.fakes import FakeAdapter, make_candles, make_record


@pytest.fixture
def adapter():
    return FakeAdapter(
        positions=[Position("BTCUSDT", LONG, 1.0, 50000.0, 52500.0, 2500.0, 10)],
        price=82000.0,
        candles=make_candles(buy_ratio=0.58),
    )


@pytest.fixture
def runner(store, notifier, audit, adapter):
    r = ReentryRunner(
        store,
        notifier,
        audit=audit,
        adapter_factory=lambda creds: adapter,
        settings=Settings(MAX_WORKERS=2),
    )
    yield r
    r.shutdown()


def _pending(store, **kw):
    closed = datetime.now(timezone.utc) - timedelta(minutes=45)
    store.save_reentry("u1", "binance", make_record(closed_at=closed.isoformat(), **kw))


def test_tp_scan_only_covers_configured_accounts(runner, store, creds):
    store.save_account(AccountCredentials("u2", "binance", "k", "s"))
    assert runner.scan_take_profit()["units"] == 0

    store.save_tp_config("u1", "binance", TakeProfitConfig(5, 50000))
    store.save_retry_policy("u1", "binance", RetryPolicy(3, 15))
    summary = runner.scan_take_profit()

    assert summary["units"] == 1
    (res,) = summary["results"]
    assert res["status"] == "closed"
    assert res["closed"] == ["BTCUSDT"]
    assert store.load_reentry("u1", "binance", "BTCUSDT") is not None


def test_reentry_scan_executes_pending_record(runner, store, creds, adapter):
    _pending(store)

    summary = runner.scan_reentries()

    assert summary["units"] == 1
    assert summary["reentered"] == 1
    assert adapter.opened == [("BTCUSDT", LONG, 0.85, 10)]


def test_busy_record_is_skipped(runner, store, creds, adapter):
    _pending(store)
    with runner.key_guard(reentry_key("u1", "binance", "BTCUSDT")) as ok:
        assert ok
        summary = runner.scan_reentries()

    assert summary["skipped"] == 1
    assert adapter.opened == []


def test_record_without_credentials(runner, store, adapter):
    _pending(store)
    (res,) = runner.scan_reentries()["results"]
    assert res["status"] == "no_account"
    assert adapter.opened == []


def test_unit_failure_does_not_stop_other_units(store, notifier, audit, adapter):
    for user in ("bad", "good"):
        store.save_account(AccountCredentials(user, "binance", "k", "s"))
        store.save_tp_config(user, "binance", TakeProfitConfig(5, 50000))

    def factory(creds):
        if creds.user_id == "bad":
            raise RuntimeError("boom")
        return adapter

    r = ReentryRunner(store, notifier, audit=audit, adapter_factory=factory, settings=Settings(MAX_WORKERS=2))
    try:
        summary = r.scan_take_profit()
    finally:
        r.shutdown()

    assert summary["units"] == 2
    assert summary["errors"] == 1
    by_account = {res["account"]: res for res in summary["results"]}
    assert by_account["bad:binance"]["error"] == "boom"
    assert by_account["good:binance"]["status"] == "closed"
    assert any(e["event_type"] == "UNIT_ERROR" for e in audit.tail(50))


def test_progress_update(runner, store, creds, notifier):
    store.save_tp_config("u1", "binance", TakeProfitConfig(10, 50000))
    _pending(store)

    summary = runner.send_progress_updates()

    assert summary["sent"] == 1
    (acct, msg), = notifier.messages
    assert acct == "u1:binance"
    assert "Unrealized PnL: $2500.00 / target $5000.00 (50.0%)" in msg
    assert "Pending re-entries: 1" in msg


def test_adapter_cache_follows_credentials(store, notifier):
    built = []

    def factory(creds):
        built.append(creds.api_key)
        return FakeAdapter()

    r = ReentryRunner(store, notifier, adapter_factory=factory, settings=Settings(MAX_WORKERS=1))
    try:
        c = AccountCredentials("u1", "binance", "k1", "s")
        r.adapter_for(c)
        r.adapter_for(c)
        r.adapter_for(AccountCredentials("u1", "binance", "k2", "s"))
    finally:
        r.shutdown()

    assert built == ["k1", "k2"]


def test_cancel_waits_for_running_reentry(runner, store, creds):
    _pending(store)
    _pending(store, symbol="ETHUSDT")
    stale = store.load_reentry("u1", "binance", "BTCUSDT")
    result = {}

    with runner.key_guard(reentry_key("u1", "binance", "BTCUSDT")) as ok:
        assert ok
        t = threading.Thread(target=lambda: result.update(n=runner.cancel_reentries("u1", "binance")))
        t.start()
        # the unit holding the lock writes its copy back before letting go
        store.save_reentry("u1", "binance", stale)
    t.join(timeout=5)

    assert not t.is_alive()
    assert result["n"] == 2
    assert store.list_reentries("u1", "binance") == []


def test_stalled_take_profit_scan_does_not_block_reentries(store, notifier, audit):
    release = threading.Event()
    entered = threading.Event()

    class _Stalled(FakeAdapter):
        def get_open_positions(self):
            entered.set()
            release.wait(5)
            return []

    reentry_adapter = FakeAdapter(price=82000.0, candles=make_candles(buy_ratio=0.58))
    store.save_account(AccountCredentials("slow", "binance", "k", "s"))
    store.save_tp_config("slow", "binance", TakeProfitConfig(5, 50000))
    store.save_account(AccountCredentials("u1", "binance", "k", "s"))
    _pending(store)

    r = ReentryRunner(
        store,
        notifier,
        audit=audit,
        adapter_factory=lambda c: _Stalled() if c.user_id == "slow" else reentry_adapter,
        settings=Settings(MAX_WORKERS=1),
    )
    tp = threading.Thread(target=r.scan_take_profit)
    try:
        tp.start()
        assert entered.wait(2)

        done = {}
        scan = threading.Thread(target=lambda: done.update(summary=r.scan_reentries()))
        scan.start()
        scan.join(timeout=2)

        assert not scan.is_alive()
        assert done["summary"]["reentered"] == 1
    finally:
        release.set()
        tp.join(timeout=5)
        r.shutdown()
