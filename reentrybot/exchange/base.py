from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from reentrybot.runner.models import Candle, Position


@dataclass
class OpenResult:
    fill_price: Optional[float]
    quantity: float
    order: Dict[str, Any] = field(default_factory=dict)


class ExchangeAdapter(Protocol):
    """
    Capability interface the engine talks to. One instance per account;
    the engine never branches on which exchange is behind it.
    """

    name: str

    def get_open_positions(self) -> List[Position]: ...

    def get_account_unrealized_pnl(self) -> float: ...

    def close_position(self, symbol: str, quantity: float, side: str) -> Dict[str, Any]: ...

    def open_position(
        self, symbol: str, side: str, quantity: float, leverage: int
    ) -> OpenResult: ...

    def set_stop_loss(
        self, symbol: str, stop_price: float, side: str, quantity: float
    ) -> Dict[str, Any]: ...

    def set_take_profit(
        self, symbol: str, tp_percentage: float, entry_price: Optional[float] = None
    ) -> Dict[str, Any]: ...

    def get_current_price(self, symbol: str) -> float: ...

    def get_candles(self, symbol: str, bar_size: str, count: int) -> List[Candle]: ...

    def price_precision(self, symbol: str) -> Optional[int]: ...
