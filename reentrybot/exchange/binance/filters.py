from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from typing import Optional


@dataclass(frozen=True)
class SymbolFilters:
    symbol: str
    step_size: Decimal
    min_qty: Decimal
    tick_size: Decimal
    price_precision: Optional[int] = None


def _get_filter(symbol_info: dict, filter_type: str) -> dict | None:
    for f in symbol_info.get("filters", []):
        if f.get("filterType") == filter_type:
            return f
    return None


def decimals_of(step) -> int:
    """Number of decimal places in a step/tick (0.001 -> 3, 1 -> 0)."""
    d = _to_decimal(step).normalize()
    return max(0, -d.as_tuple().exponent)


def extract_filters(exchange_info: dict, symbol: str) -> SymbolFilters:
    symbol = symbol.upper()

    for s in exchange_info.get("symbols", []):
        if s.get("symbol") != symbol:
            continue

        # LOT_SIZE → qty rules
        lot = _get_filter(s, "LOT_SIZE")
        if not lot:
            raise ValueError(f"LOT_SIZE filter not found for {symbol}")

        step = Decimal(lot["stepSize"])
        minq = Decimal(lot["minQty"])

        # PRICE_FILTER → price tick rules
        price_filter = _get_filter(s, "PRICE_FILTER")
        if not price_filter:
            raise ValueError(f"PRICE_FILTER not found for {symbol}")

        tick = Decimal(price_filter["tickSize"])

        precision = s.get("pricePrecision")
        if precision is None:
            precision = decimals_of(tick)

        return SymbolFilters(
            symbol=symbol,
            step_size=step,
            min_qty=minq,
            tick_size=tick,
            price_precision=int(precision),
        )

    raise ValueError(f"Symbol not found in exchangeInfo: {symbol}")


def _to_decimal(x) -> Decimal:
    return x if isinstance(x, Decimal) else Decimal(str(x))


def _floor_to(value: float, increment) -> Decimal:
    inc = _to_decimal(increment)
    if inc <= 0:
        raise ValueError(f"increment must be > 0, got {increment}")
    return (Decimal(str(value)) / inc).to_integral_value(rounding=ROUND_DOWN) * inc


def round_qty(qty: float, step_size) -> Decimal:
    """Floor a quantity onto the LOT_SIZE grid (exchanges reject anything else)."""
    return _floor_to(qty, step_size)


def round_price(px: float, tick_size) -> Decimal:
    """Floor a price onto the PRICE_FILTER grid."""
    return _floor_to(px, tick_size)


def _as_float(value: Decimal, increment) -> float:
    # quantize first so 0.7220000001-style float noise never reaches an order
    exp = Decimal(1).scaleb(-decimals_of(increment))
    return float(value.quantize(exp))


def round_qty_to_step(qty: float, step_size) -> float:
    return _as_float(round_qty(qty, step_size), step_size)


def round_price_to_tick(price: float, tick_size) -> float:
    return _as_float(round_price(price, tick_size), tick_size)
