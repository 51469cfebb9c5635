from __future__ import annotations

from typing import Sequence

from reentrybot.runner.models import Candle


def ema(values: Sequence[float], period: int) -> float:
    """
    SMA-seeded EMA. A series shorter than `period` returns its last value.
    """
    if period < 1:
        raise ValueError("period must be >= 1")
    if not values:
        return 0.0
    if len(values) < period:
        return float(values[-1])

    k = 2 / (period + 1)
    e = sum(values[:period]) / float(period)
    for v in values[period:]:
        e = (v - e) * k + e
    return e


def volume_pressure(candles: Sequence[Candle], window: int) -> float:
    """
    Share of up-candle volume over the last `window` candles, in [0, 1].
    0.5 when there is no volume at all.
    """
    buy = 0.0
    sell = 0.0
    for c in list(candles)[-window:]:
        if c.close > c.open:
            buy += c.volume
        else:
            sell += c.volume
    if buy + sell == 0:
        return 0.5
    return buy / (buy + sell)
