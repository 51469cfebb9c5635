from __future__ import annotations

from reentrybot.core.config import SUPPORTED_EXCHANGES, settings
from reentrybot.exchange.base import ExchangeAdapter
from reentrybot.exchange.binance.client import BinanceFuturesClient
from reentrybot.exchange.errors import ExchangeValidationError
from reentrybot.exchange.okx.client import OkxSwapClient
from reentrybot.runner.models import AccountCredentials


def build_adapter(creds: AccountCredentials) -> ExchangeAdapter:
    """One adapter per account, bound to that account's credentials."""
    exchange = (creds.exchange or "").lower()
    if exchange == "binance":
        return BinanceFuturesClient(
            api_key=creds.api_key,
            api_secret=creds.api_secret,
            base_url=settings.BINANCE_FAPI_BASE_URL,
            recv_window=settings.BINANCE_RECV_WINDOW,
            timeout_s=settings.EXCHANGE_TIMEOUT_SECONDS,
            max_retries=settings.EXCHANGE_MAX_RETRIES,
        )
    if exchange == "okx":
        if not creds.passphrase:
            raise ExchangeValidationError("OKX accounts need a passphrase")
        return OkxSwapClient(
            api_key=creds.api_key,
            api_secret=creds.api_secret,
            passphrase=creds.passphrase,
            base_url=settings.OKX_BASE_URL,
            timeout_s=settings.EXCHANGE_TIMEOUT_SECONDS,
            max_retries=settings.EXCHANGE_MAX_RETRIES,
        )
    raise ExchangeValidationError(
        f"Unsupported exchange '{creds.exchange}' (expected one of {', '.join(SUPPORTED_EXCHANGES)})"
    )
