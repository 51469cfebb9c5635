from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from reentrybot.runner.models import LONG, SHORT


@dataclass(frozen=True)
class StopLossResult:
    tp_price: float
    potential_next_profit: float
    profit_per_unit: float
    stop_loss_price: float
    next_quantity: float


def round_to_precision(price: float, precision: Optional[int]) -> float:
    """Round half-up to `precision` decimal places; None leaves price untouched."""
    if precision is None:
        return float(price)
    q = Decimal(1).scaleb(-int(precision))
    return float(Decimal(str(price)).quantize(q, rounding=ROUND_HALF_UP))


def take_profit_price(entry_price: float, side: str, tp_percentage: float) -> float:
    if side == LONG:
        return entry_price * (1 + tp_percentage / 100)
    if side == SHORT:
        return entry_price * (1 - tp_percentage / 100)
    raise ValueError(f"Invalid side: {side}")


def next_quantity(quantity: float, reduction_percent: float) -> float:
    """One step of the volume-reduction cascade."""
    if not (0 < reduction_percent < 100):
        raise ValueError("reduction_percent must be in (0, 100)")
    return quantity * (1 - reduction_percent / 100)


def calculate_stop_loss(
    entry_price: float,
    side: str,
    tp_percentage: float,
    next_qty: float,
    price_precision: Optional[int] = None,
) -> StopLossResult:
    """
    Profit-protected stop loss for the upcoming re-entry.

    The stop sits as far from entry as the re-entry's own take-profit target,
    so being stopped out loses exactly what hitting TP would have made:

      tp_price      = entry * (1 +/- tp%)
      potential     = |tp_price - entry| * next_qty
      per_unit      = potential / next_qty
      stop_loss     = entry -/+ per_unit

    Raises ValueError on non-positive entry, tp% or quantity.
    """
    if entry_price <= 0:
        raise ValueError("entry_price must be > 0")
    if tp_percentage <= 0:
        raise ValueError("tp_percentage must be > 0")
    if next_qty <= 0:
        raise ValueError("next_quantity must be > 0")

    tp_price = take_profit_price(entry_price, side, tp_percentage)
    potential = abs(tp_price - entry_price) * next_qty
    per_unit = potential / next_qty

    if side == LONG:
        sl = entry_price - per_unit
        if sl <= 0:
            raise ValueError("tp_percentage too large: LONG stop loss would be <= 0")
    else:
        sl = entry_price + per_unit

    return StopLossResult(
        tp_price=round_to_precision(tp_price, price_precision),
        potential_next_profit=potential,
        profit_per_unit=per_unit,
        stop_loss_price=round_to_precision(sl, price_precision),
        next_quantity=next_qty,
    )
