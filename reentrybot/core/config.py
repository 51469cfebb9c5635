# reentrybot/core/config.py
from __future__ import annotations

import logging
from typing import Any, List

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

log = logging.getLogger("reentrybot.config")

SUPPORTED_EXCHANGES = ("binance", "okx")


def _parse_interval_seconds(v: Any) -> int:
    """
    Accepts:
      - int:  30
      - str:  "30", "30s", "15m", "1h"
    Returns seconds.
    """
    if v is None:
        return 0
    if isinstance(v, (int, float)):
        return int(v)
    s = str(v).strip().lower()
    if not s:
        return 0
    if s.isdigit():
        return int(s)
    unit = s[-1]
    value = int(s[:-1])
    if unit == "s":
        return value
    if unit == "m":
        return value * 60
    if unit == "h":
        return value * 3600
    raise ValueError(f"Unsupported interval: {v}")


class Settings(BaseSettings):
    """Runtime configuration loaded from .env / environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # --- Exchanges ---
    # If you use demo/testnet, set BINANCE_ENV=testnet (recommended)
    BINANCE_ENV: str = "mainnet"  # mainnet/testnet
    BINANCE_FAPI_BASE_URL: str = "https://fapi.binance.com"
    BINANCE_RECV_WINDOW: int = 5000
    OKX_BASE_URL: str = "https://www.okx.com"

    # every exchange call gets its own timeout; a timeout is a transient failure
    EXCHANGE_TIMEOUT_SECONDS: float = 5.0
    EXCHANGE_MAX_RETRIES: int = 2

    # --- Notifications ---
    TELEGRAM_BOT_TOKEN: str = ""
    TELEGRAM_API_BASE_URL: str = "https://api.telegram.org"

    # --- Persistence ---
    DB_PATH: str = "data/bot.db"
    AUDIT_JSONL_PATH: str = "logs/audit.jsonl"

    # --- Scheduler ---
    TP_SCAN_INTERVAL_SECONDS: int = 30
    REENTRY_SCAN_INTERVAL_SECONDS: int = 15
    PROGRESS_UPDATE_INTERVAL_SECONDS: int = 600
    PROGRESS_UPDATES_ENABLED: bool = True
    SCHEDULER_AUTOSTART: bool = True
    MAX_WORKERS: int = 8

    # --- Take profit ---
    MIN_POSITION_PROFIT_PCT: float = 2.0

    # --- Re-entry safety gate ---
    REENTRY_COOLDOWN_MINUTES: int = 30
    REENTRY_MIN_PULLBACK_PCT: float = 5.0
    REENTRY_MAX_PULLBACK_PCT: float = 25.0
    EMA_FAST_PERIOD: int = 9
    EMA_SLOW_PERIOD: int = 21
    VOLUME_WINDOW: int = 20
    LONG_MIN_BUY_PRESSURE: float = 0.55
    SHORT_MAX_BUY_PRESSURE: float = 0.45
    CANDLE_BAR: str = "15m"
    CANDLE_COUNT: int = 50
    MIN_CANDLES: int = 30

    # --- Logging ---
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"

    @field_validator(
        "TP_SCAN_INTERVAL_SECONDS",
        "REENTRY_SCAN_INTERVAL_SECONDS",
        "PROGRESS_UPDATE_INTERVAL_SECONDS",
        mode="before",
    )
    @classmethod
    def parse_intervals(cls, v: Any) -> int:
        return _parse_interval_seconds(v)

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def parse_log_level(cls, v: Any) -> str:
        return str(v or "INFO").strip().upper()

    def model_post_init(self, __context: Any) -> None:
        self.BINANCE_ENV = (self.BINANCE_ENV or "mainnet").lower().strip()

        # Keep base URL consistent with BINANCE_ENV unless user explicitly overrides
        if self.BINANCE_ENV == "testnet":
            if self.BINANCE_FAPI_BASE_URL.strip() == "https://fapi.binance.com":
                self.BINANCE_FAPI_BASE_URL = "https://testnet.binancefuture.com"

    def validate_runtime(self) -> List[str]:
        """
        Fail-fast validation. Returns warnings (non-fatal).
        Raises ValueError for fatal misconfiguration.
        """
        errors: List[str] = []
        warnings: List[str] = []

        if self.BINANCE_ENV not in {"mainnet", "testnet"}:
            errors.append("BINANCE_ENV must be 'mainnet' or 'testnet'.")

        if self.EXCHANGE_TIMEOUT_SECONDS <= 0:
            errors.append("EXCHANGE_TIMEOUT_SECONDS must be > 0.")
        if self.EXCHANGE_MAX_RETRIES < 0:
            errors.append("EXCHANGE_MAX_RETRIES must be >= 0.")

        # Scheduler sanity
        if self.TP_SCAN_INTERVAL_SECONDS <= 0:
            errors.append("TP_SCAN_INTERVAL_SECONDS must be > 0.")
        if self.REENTRY_SCAN_INTERVAL_SECONDS <= 0:
            errors.append("REENTRY_SCAN_INTERVAL_SECONDS must be > 0.")
        if self.PROGRESS_UPDATES_ENABLED and self.PROGRESS_UPDATE_INTERVAL_SECONDS <= 0:
            errors.append("PROGRESS_UPDATE_INTERVAL_SECONDS must be > 0.")
        if self.MAX_WORKERS <= 0:
            errors.append("MAX_WORKERS must be > 0.")
        if self.REENTRY_SCAN_INTERVAL_SECONDS > self.TP_SCAN_INTERVAL_SECONDS:
            warnings.append(
                "REENTRY_SCAN_INTERVAL_SECONDS is longer than TP_SCAN_INTERVAL_SECONDS; "
                "re-entries will be evaluated less often than take profits."
            )

        # Gate sanity
        if self.REENTRY_COOLDOWN_MINUTES < 0:
            errors.append("REENTRY_COOLDOWN_MINUTES must be >= 0.")
        if not (0 <= self.REENTRY_MIN_PULLBACK_PCT < self.REENTRY_MAX_PULLBACK_PCT):
            errors.append(
                "REENTRY_MIN_PULLBACK_PCT must be >= 0 and below REENTRY_MAX_PULLBACK_PCT."
            )
        if self.EMA_FAST_PERIOD < 1 or self.EMA_FAST_PERIOD >= self.EMA_SLOW_PERIOD:
            errors.append("EMA_FAST_PERIOD must be >= 1 and below EMA_SLOW_PERIOD.")
        if self.VOLUME_WINDOW < 1:
            errors.append("VOLUME_WINDOW must be >= 1.")
        if not (0 <= self.SHORT_MAX_BUY_PRESSURE <= self.LONG_MIN_BUY_PRESSURE <= 1):
            errors.append(
                "Buy pressure thresholds must satisfy 0 <= SHORT_MAX <= LONG_MIN <= 1."
            )
        if self.CANDLE_COUNT < self.MIN_CANDLES:
            errors.append("CANDLE_COUNT must be >= MIN_CANDLES.")
        if self.MIN_CANDLES < self.EMA_SLOW_PERIOD:
            warnings.append(
                "MIN_CANDLES is below EMA_SLOW_PERIOD; the slow EMA will be degenerate."
            )

        if self.MIN_POSITION_PROFIT_PCT < 0:
            errors.append("MIN_POSITION_PROFIT_PCT must be >= 0.")

        # Safety: mismatch guard
        if (
            self.BINANCE_FAPI_BASE_URL.strip() == "https://fapi.binance.com"
            and self.BINANCE_ENV != "mainnet"
        ):
            errors.append(
                "BINANCE_ENV mismatch: base URL is mainnet but BINANCE_ENV is not 'mainnet'."
            )

        if not self.TELEGRAM_BOT_TOKEN:
            warnings.append(
                "TELEGRAM_BOT_TOKEN is empty. Notifications will only be logged."
            )

        if errors:
            msg = "Config validation failed:\n" + "\n".join([f"- {e}" for e in errors])
            raise ValueError(msg)

        return warnings


# Pydantic v2 + postponed annotations safety
Settings.model_rebuild()
settings = Settings()
