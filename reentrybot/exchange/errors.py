from __future__ import annotations

from typing import Optional


class ExchangeError(RuntimeError):
    def __init__(self, message: str, *, code: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.status = status


class TransientExchangeError(ExchangeError):
    """Network error, timeout, rate limit or server error. Retry next cycle."""


class ExchangeValidationError(ExchangeError):
    """Rejected by the exchange (insufficient balance, invalid symbol, bad qty...)."""
