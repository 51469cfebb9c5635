import pytest

from reentrybot.runner.models import Candle
from reentrybot.strategy.indicators import ema, volume_pressure
from reentrybot.tests.fakes import make_candles


def test_ema_seeds_with_simple_average():
    assert ema([1.0, 2.0, 3.0], 3) == pytest.approx(2.0)
    # k = 2 / (3 + 1) = 0.5 -> (4 - 2) * 0.5 + 2
    assert ema([1.0, 2.0, 3.0, 4.0], 3) == pytest.approx(3.0)


def test_ema_constant_series():
    assert ema([5.0] * 40, 9) == pytest.approx(5.0)


def test_ema_short_series_returns_last_value():
    assert ema([1.0, 7.0], 9) == 7.0
    assert ema([], 9) == 0.0


def test_ema_rejects_bad_period():
    with pytest.raises(ValueError):
        ema([1.0, 2.0], 0)


def test_fast_ema_leads_on_uptrend():
    closes = [c.close for c in make_candles(step=1.0)]
    assert ema(closes, 9) > ema(closes, 21)
    closes = [c.close for c in make_candles(step=-1.0)]
    assert ema(closes, 9) < ema(closes, 21)


def test_volume_pressure_share_of_up_volume():
    assert volume_pressure(make_candles(buy_ratio=0.58), 20) == pytest.approx(0.58)


def test_volume_pressure_only_looks_at_window():
    old = [Candle(0, 1.0, 1.0, 1.0, 2.0, 1000.0)]  # huge up candle outside window
    recent = [Candle(i, 2.0, 2.0, 1.0, 1.0, 1.0) for i in range(1, 21)]  # all down
    assert volume_pressure(old + recent, 20) == 0.0


def test_volume_pressure_no_volume_is_neutral():
    flat = [Candle(i, 1.0, 1.0, 1.0, 1.0, 0.0) for i in range(20)]
    assert volume_pressure(flat, 20) == 0.5
    assert volume_pressure([], 20) == 0.5
