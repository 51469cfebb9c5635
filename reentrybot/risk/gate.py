from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence

from reentrybot.runner.models import LONG, Candle, ReentryRecord
from reentrybot.strategy.indicators import ema, volume_pressure


@dataclass
class GateDecision:
    allowed: bool
    reason: str
    check: str  # name of the check that decided: cooldown/price_range/trend/volume/ok
    details: Dict[str, Any] = field(default_factory=dict)


class SafetyGate:
    """
    Single source of truth for whether a pending re-entry may execute.

    Checks run in a fixed order and the first failure short-circuits:
      1) cooldown since the last close / re-entry
      2) pullback from entry within [min, max] percent
      3) EMA fast/slow alignment with the position side
      4) buy/sell volume pressure over the recent window
    """

    def __init__(
        self,
        *,
        cooldown_minutes: float = 30,
        min_pullback_pct: float = 5.0,
        max_pullback_pct: float = 25.0,
        ema_fast: int = 9,
        ema_slow: int = 21,
        volume_window: int = 20,
        long_min_buy_pressure: float = 0.55,
        short_max_buy_pressure: float = 0.45,
        min_candles: int = 30,
    ):
        self.cooldown_minutes = float(cooldown_minutes)
        self.min_pullback_pct = float(min_pullback_pct)
        self.max_pullback_pct = float(max_pullback_pct)
        self.ema_fast = int(ema_fast)
        self.ema_slow = int(ema_slow)
        self.volume_window = int(volume_window)
        self.long_min_buy_pressure = float(long_min_buy_pressure)
        self.short_max_buy_pressure = float(short_max_buy_pressure)
        self.min_candles = int(min_candles)

    @classmethod
    def from_settings(cls, s) -> "SafetyGate":
        return cls(
            cooldown_minutes=s.REENTRY_COOLDOWN_MINUTES,
            min_pullback_pct=s.REENTRY_MIN_PULLBACK_PCT,
            max_pullback_pct=s.REENTRY_MAX_PULLBACK_PCT,
            ema_fast=s.EMA_FAST_PERIOD,
            ema_slow=s.EMA_SLOW_PERIOD,
            volume_window=s.VOLUME_WINDOW,
            long_min_buy_pressure=s.LONG_MIN_BUY_PRESSURE,
            short_max_buy_pressure=s.SHORT_MAX_BUY_PRESSURE,
            min_candles=s.MIN_CANDLES,
        )

    def evaluate(
        self,
        record: ReentryRecord,
        current_price: float,
        candles: Sequence[Candle],
        now: Optional[datetime] = None,
    ) -> GateDecision:
        now = now or datetime.now(timezone.utc)
        is_long = record.side == LONG
        details: Dict[str, Any] = {}

        # 1) cooldown
        elapsed_s = (now - record.closed_at_dt()).total_seconds()
        details["cooldown"] = f"{int(elapsed_s // 60)}/{self.cooldown_minutes:g} min"
        if elapsed_s < self.cooldown_minutes * 60:
            return GateDecision(
                False, f"Cooldown active ({details['cooldown']})", "cooldown", details
            )

        # 2) price range
        entry = float(record.entry_price)
        if is_long:
            change = (entry - current_price) / entry * 100
        else:
            change = (current_price - entry) / entry * 100
        details["price_change_pct"] = round(change, 4)
        if change < self.min_pullback_pct or change > self.max_pullback_pct:
            return GateDecision(
                False,
                f"Price {change:.2f}% from entry "
                f"(need {self.min_pullback_pct:g}-{self.max_pullback_pct:g}%)",
                "price_range",
                details,
            )

        # 3) trend
        if len(candles) < self.min_candles:
            details["candles"] = len(candles)
            return GateDecision(
                False,
                f"Not enough candles for trend check ({len(candles)}/{self.min_candles})",
                "trend",
                details,
            )
        closes = [c.close for c in candles]
        fast = ema(closes, self.ema_fast)
        slow = ema(closes, self.ema_slow)
        details["ema_fast"] = fast
        details["ema_slow"] = slow
        aligned = fast > slow if is_long else fast < slow
        if not aligned:
            return GateDecision(
                False,
                f"EMA not aligned (EMA{self.ema_fast}: {fast:.2f}, "
                f"EMA{self.ema_slow}: {slow:.2f})",
                "trend",
                details,
            )

        # 4) volume pressure
        pressure = volume_pressure(candles, self.volume_window)
        details["buy_pressure"] = pressure
        if is_long:
            favorable = pressure > self.long_min_buy_pressure
        else:
            favorable = pressure < self.short_max_buy_pressure
        if not favorable:
            return GateDecision(
                False,
                f"Volume pressure not favorable ({pressure * 100:.1f}% buy)",
                "volume",
                details,
            )

        return GateDecision(True, "ok", "ok", details)
