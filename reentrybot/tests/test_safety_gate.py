from datetime import timedelta

import pytest

from reentrybot.core.config import Settings
from reentrybot.risk.gate import SafetyGate
from reentrybot.runner.models import SHORT
from reentrybot.tests.fakes import T0, make_candles, make_record


@pytest.fixture
def gate():
    return SafetyGate()


def test_allows_pullback_with_trend_and_buyers(gate):
    rec = make_record(closed_at=(T0 - timedelta(minutes=45)).isoformat())
    d = gate.evaluate(rec, 82000.0, make_candles(buy_ratio=0.58), now=T0)
    assert d.allowed is True
    assert d.check == "ok"
    assert d.details["price_change_pct"] == pytest.approx(18.0)
    assert d.details["buy_pressure"] == pytest.approx(0.58)
    assert d.details["ema_fast"] > d.details["ema_slow"]


def test_cooldown_denies(gate):
    rec = make_record(closed_at=(T0 - timedelta(minutes=15)).isoformat())
    d = gate.evaluate(rec, 82000.0, make_candles(buy_ratio=0.58), now=T0)
    assert d.allowed is False
    assert d.check == "cooldown"
    assert "cooldown" in d.reason.lower()
    assert "15/30" in d.reason


@pytest.mark.parametrize("price", [50000.0, 82000.0, 99000.0, 120000.0])
@pytest.mark.parametrize("step,ratio", [(1.0, 0.9), (-1.0, 0.1), (1.0, 0.5)])
def test_cooldown_failure_always_denies(gate, price, step, ratio):
    rec = make_record(closed_at=(T0 - timedelta(minutes=29)).isoformat())
    d = gate.evaluate(rec, price, make_candles(step=step, buy_ratio=ratio), now=T0)
    assert d.allowed is False
    assert "cooldown" in d.reason.lower()


def test_naive_closed_at_is_treated_as_utc(gate):
    naive = (T0 - timedelta(minutes=45)).replace(tzinfo=None).isoformat()
    d = gate.evaluate(make_record(closed_at=naive), 82000.0, make_candles(buy_ratio=0.58), now=T0)
    assert d.allowed is True


@pytest.mark.parametrize("price", [98000.0, 100500.0, 70000.0])
def test_price_outside_pullback_range_denies(gate, price):
    d = gate.evaluate(make_record(), price, make_candles(buy_ratio=0.58), now=T0)
    assert d.allowed is False
    assert d.check == "price_range"
    assert "need 5-25%" in d.reason


@pytest.mark.parametrize("price", [95000.0, 75000.0])
def test_pullback_range_is_inclusive(gate, price):
    d = gate.evaluate(make_record(), price, make_candles(buy_ratio=0.58), now=T0)
    assert d.allowed is True


def test_downtrend_denies_long(gate):
    d = gate.evaluate(make_record(), 82000.0, make_candles(step=-1.0, buy_ratio=0.58), now=T0)
    assert d.allowed is False
    assert d.check == "trend"
    assert d.reason.startswith("EMA not aligned")


def test_too_few_candles_denies(gate):
    d = gate.evaluate(make_record(), 82000.0, make_candles(n=10, buy_ratio=0.58), now=T0)
    assert d.allowed is False
    assert d.check == "trend"
    assert "10/30" in d.reason


def test_weak_buy_pressure_denies_long(gate):
    d = gate.evaluate(make_record(), 82000.0, make_candles(buy_ratio=0.5), now=T0)
    assert d.allowed is False
    assert d.check == "volume"
    assert "50.0% buy" in d.reason


def test_short_reentry_mirrors_checks(gate):
    rec = make_record(side=SHORT, entry_price=100.0)
    # short pullback: price went up 10% from entry, downtrend, sellers dominate
    d = gate.evaluate(rec, 110.0, make_candles(step=-1.0, buy_ratio=0.4), now=T0)
    assert d.allowed is True

    d = gate.evaluate(rec, 110.0, make_candles(step=-1.0, buy_ratio=0.5), now=T0)
    assert d.check == "volume"

    d = gate.evaluate(rec, 90.0, make_candles(step=-1.0, buy_ratio=0.4), now=T0)
    assert d.check == "price_range"


def test_thresholds_come_from_settings():
    s = Settings(REENTRY_COOLDOWN_MINUTES=60, REENTRY_MIN_PULLBACK_PCT=1.0)
    gate = SafetyGate.from_settings(s)
    d = gate.evaluate(make_record(), 82000.0, make_candles(buy_ratio=0.58), now=T0)
    assert d.check == "cooldown"
    assert "45/60" in d.reason
