# reentrybot/runner/models.py
from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from datetime import datetime, timezone
from typing import Any, Dict, Optional

LONG = "LONG"
SHORT = "SHORT"
SIDES = (LONG, SHORT)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_side(side: str) -> str:
    s = (side or "").strip().upper()
    if s in ("LONG", "BUY"):
        return LONG
    if s in ("SHORT", "SELL"):
        return SHORT
    raise ValueError(f"Invalid side: {side}")


def _from_dict(cls, data: Dict[str, Any]):
    # ignore unknown keys so older/newer rows still load
    names = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in names})


@dataclass(frozen=True)
class AccountRef:
    user_id: str
    exchange: str  # "binance" | "okx"

    def __str__(self) -> str:
        return f"{self.user_id}:{self.exchange}"


@dataclass
class AccountCredentials:
    user_id: str
    exchange: str
    api_key: str
    api_secret: str
    passphrase: Optional[str] = None  # OKX only
    chat_id: Optional[str] = None
    created_at: str = ""

    @property
    def ref(self) -> AccountRef:
        return AccountRef(self.user_id, self.exchange)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AccountCredentials":
        return _from_dict(cls, data)


@dataclass(frozen=True)
class Position:
    symbol: str
    side: str  # LONG | SHORT
    quantity: float
    entry_price: float
    current_price: float
    unrealized_pnl: float
    leverage: int = 1

    def profit_percent(self) -> float:
        """Directional move from entry, in percent."""
        if self.entry_price <= 0:
            return 0.0
        if self.side == LONG:
            return (self.current_price - self.entry_price) / self.entry_price * 100
        return (self.entry_price - self.current_price) / self.entry_price * 100


@dataclass(frozen=True)
class Candle:
    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass
class TakeProfitConfig:
    percentage: float
    initial_balance: float
    set_at: str = ""

    @property
    def target_profit(self) -> float:
        return self.initial_balance * self.percentage / 100

    def validate(self) -> None:
        if not (0 < self.percentage <= 100):
            raise ValueError("TP percentage must be in (0, 100].")
        if self.initial_balance <= 0:
            raise ValueError("Initial balance must be > 0.")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TakeProfitConfig":
        return _from_dict(cls, data)


@dataclass
class RetryPolicy:
    max_retry: int
    volume_reduction_percent: float
    enabled: bool = True
    set_at: str = ""

    def validate(self) -> None:
        if not (1 <= int(self.max_retry) <= 10):
            raise ValueError("max_retry must be between 1 and 10.")
        if not (1 <= self.volume_reduction_percent <= 50):
            raise ValueError("volume_reduction_percent must be between 1 and 50.")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryPolicy":
        return _from_dict(cls, data)


@dataclass
class ReentryRecord:
    symbol: str
    side: str  # LONG | SHORT
    leverage: int
    entry_price: float  # replaced by the fill price after every re-entry
    quantity: float  # size of the next re-entry (post-cascade)
    original_quantity: float
    stop_loss_price: float
    tp_percentage: float
    volume_reduction_percent: float  # frozen at closure time
    current_retry: int = 1
    remaining_retries: int = 0
    closed_at: str = ""  # ISO-8601 UTC, drives the gate cooldown
    closed_profit: float = 0.0
    current_price: float = 0.0

    def closed_at_dt(self) -> datetime:
        dt = datetime.fromisoformat(self.closed_at)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReentryRecord":
        return _from_dict(cls, data)
