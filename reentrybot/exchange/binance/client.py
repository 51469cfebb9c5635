from __future__ import annotations

import logging
import random
import time
import uuid
from typing import Any, Dict, List, Optional

import requests

from reentrybot.exchange.base import OpenResult
from reentrybot.exchange.binance.filters import (
    SymbolFilters,
    extract_filters,
    round_price_to_tick,
    round_qty,
)
from reentrybot.exchange.binance.signing import signed_query
from reentrybot.exchange.errors import ExchangeValidationError, TransientExchangeError
from reentrybot.runner.models import LONG, SHORT, Candle, Position, normalize_side

log = logging.getLogger("reentrybot.exchange.binance")


def kline_to_candle(k: list) -> Candle:
    """
    Binance kline format:
    [openTime, open, high, low, close, volume, closeTime, ...]
    """
    return Candle(
        open_time=int(k[0]),
        open=float(k[1]),
        high=float(k[2]),
        low=float(k[3]),
        close=float(k[4]),
        volume=float(k[5]),
    )


class BinanceFuturesClient:
    name = "binance"

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        base_url: str,
        recv_window: int = 5000,
        timeout_s: float = 5.0,
        max_retries: int = 2,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self.recv_window = recv_window
        self.timeout_s = float(timeout_s)
        self.max_retries = int(max_retries)
        self.session = session or requests.Session()

        self._exchange_info_cache: dict | None = None
        self._exchange_info_cache_ts: float = 0.0
        # server time offset (ms)
        self._time_offset_ms: int = 0

    # ------------------------------------------------------------------
    # request helper: bounded retries, every call carries its own timeout
    # ------------------------------------------------------------------
    def _request(
        self,
        method: str,
        path: str,
        params: dict | None = None,
        signed: bool = False,
        retry: bool = True,
    ) -> Any:
        """
        retry=False is for order placement: a request that may have reached
        the exchange (read timeout, 5xx) is never sent again. Rejections that
        prove nothing was placed (rate limit, clock drift) still retry.
        """
        if signed and (not self.api_key or not self.api_secret):
            raise ExchangeValidationError("Missing Binance API key or secret")

        last_err: Exception | str | None = None
        for attempt in range(self.max_retries + 1):
            url = f"{self.base_url}{path}"
            headers = {}
            query_params = dict(params or {})
            if signed:
                query_params["timestamp"] = int(time.time() * 1000) + int(self._time_offset_ms)
                query_params["recvWindow"] = self.recv_window
                url = f"{url}?{signed_query(self.api_secret, query_params)}"
                query_params = {}
                headers["X-MBX-APIKEY"] = self.api_key

            try:
                r = self.session.request(
                    method, url, params=query_params or None, headers=headers, timeout=self.timeout_s
                )
            except (requests.Timeout, requests.ConnectionError) as e:
                if not retry and not isinstance(e, requests.ConnectTimeout):
                    raise TransientExchangeError(f"Binance {method} {path}: outcome unknown ({e})") from e
                last_err = e
                self._backoff(attempt)
                continue

            # Rate limit / temp ban
            if r.status_code in (418, 429):
                last_err = f"HTTP {r.status_code}"
                ra = r.headers.get("Retry-After")
                sleep_s = float(ra) if ra else (0.4 * (2**attempt))
                time.sleep(min(sleep_s + random.uniform(0, 0.2), 5.0))
                continue

            # Server errors
            if r.status_code >= 500:
                last_err = f"HTTP {r.status_code}: {r.text[:200]}"
                if not retry:
                    raise TransientExchangeError(
                        f"Binance {method} {path}: outcome unknown ({last_err})", status=r.status_code
                    )
                self._backoff(attempt)
                continue

            if r.status_code >= 400:
                data = _safe_json(r)
                code = data.get("code") if isinstance(data, dict) else None
                # Timestamp drift: resync and retry
                if code == -1021 and attempt < self.max_retries:
                    try:
                        self.sync_time()
                    except TransientExchangeError:
                        pass
                    continue
                raise ExchangeValidationError(
                    f"Binance HTTP {r.status_code}: {r.text[:300]}",
                    code=str(code) if code is not None else None,
                    status=r.status_code,
                )

            return r.json() if r.content else None

        raise TransientExchangeError(
            f"Binance request failed after retries: {method} {path} ({last_err})"
        )

    def _backoff(self, attempt: int) -> None:
        if attempt < self.max_retries:
            time.sleep(min(0.4 * (2**attempt), 2.0))

    # ---------------- TIME SYNC ----------------

    def sync_time(self) -> int:
        """
        Computes and stores local->server time offset.
        Positive offset means local clock is behind server.
        """
        local_ms = int(time.time() * 1000)
        data = self._request("GET", "/fapi/v1/time")
        self._time_offset_ms = int(data["serverTime"]) - local_ms
        return self._time_offset_ms

    # ---------------- PUBLIC ----------------

    def exchange_info_cached(self, ttl_seconds: int = 300) -> dict:
        now = time.time()
        if (
            self._exchange_info_cache
            and (now - self._exchange_info_cache_ts) < ttl_seconds
        ):
            return self._exchange_info_cache

        data = self._request("GET", "/fapi/v1/exchangeInfo")
        self._exchange_info_cache = data
        self._exchange_info_cache_ts = now
        return data

    def filters(self, symbol: str) -> SymbolFilters:
        try:
            return extract_filters(self.exchange_info_cached(), symbol)
        except ValueError as e:
            raise ExchangeValidationError(str(e)) from e

    def price_precision(self, symbol: str) -> Optional[int]:
        return self.filters(symbol).price_precision

    def get_current_price(self, symbol: str) -> float:
        data = self._request(
            "GET", "/fapi/v1/premiumIndex", params={"symbol": symbol.upper()}
        )
        return float(data["markPrice"])

    def get_candles(self, symbol: str, bar_size: str, count: int) -> List[Candle]:
        params = {"symbol": symbol.upper(), "interval": bar_size, "limit": int(count)}
        data = self._request("GET", "/fapi/v1/klines", params=params) or []
        return [kline_to_candle(k) for k in data]

    # ---------------- ACCOUNT ----------------

    def _position_risk(self, symbol: str | None = None) -> list:
        params = {}
        if symbol:
            params["symbol"] = symbol.upper()
        data = self._request("GET", "/fapi/v2/positionRisk", params=params, signed=True)
        return data if isinstance(data, list) else []

    def get_open_positions(self) -> List[Position]:
        out: List[Position] = []
        for p in self._position_risk():
            amt = float(p.get("positionAmt", "0") or 0.0)
            if amt == 0:
                continue
            out.append(
                Position(
                    symbol=p["symbol"],
                    side=LONG if amt > 0 else SHORT,
                    quantity=abs(amt),
                    entry_price=float(p.get("entryPrice", 0) or 0.0),
                    current_price=float(p.get("markPrice", 0) or 0.0),
                    unrealized_pnl=float(p.get("unRealizedProfit", 0) or 0.0),
                    leverage=int(float(p.get("leverage", 1) or 1)),
                )
            )
        return out

    def get_account_unrealized_pnl(self) -> float:
        data = self._request("GET", "/fapi/v2/account", signed=True) or {}
        return float(data.get("totalUnrealizedProfit", 0) or 0.0)

    # ---------------- TRADING ----------------

    def _sized_qty(self, symbol: str, quantity: float) -> float:
        flt = self.filters(symbol)
        qty = round_qty(quantity, flt.step_size)
        if qty <= 0 or qty < flt.min_qty:
            raise ExchangeValidationError(
                f"{symbol}: quantity {quantity} below min_qty {flt.min_qty} after rounding"
            )
        return float(qty)

    def _price_for(self, symbol: str, price: float) -> float:
        return round_price_to_tick(price, self.filters(symbol).tick_size)

    def _place_order(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        Orders carry a client id and are sent once. When the outcome is
        unknown the id is looked up, so an accepted order is never doubled.
        """
        params = dict(params, newClientOrderId=f"rb-{uuid.uuid4().hex[:24]}")
        try:
            return self._request("POST", "/fapi/v1/order", params=params, signed=True, retry=False) or {}
        except TransientExchangeError as e:
            placed = self._find_order(params["symbol"], params["newClientOrderId"])
            if placed is None:
                raise
            log.warning("order %s on %s went through despite: %s", params["newClientOrderId"], params["symbol"], e)
            return placed

    def _find_order(self, symbol: str, client_order_id: str) -> Optional[Dict[str, Any]]:
        try:
            return self._request(
                "GET",
                "/fapi/v1/order",
                params={"symbol": symbol, "origClientOrderId": client_order_id},
                signed=True,
            ) or None
        except ExchangeValidationError as e:
            # -2013: order does not exist
            if e.code == "-2013":
                return None
            raise

    def close_position(self, symbol: str, quantity: float, side: str) -> Dict[str, Any]:
        side = normalize_side(side)
        order = self._place_order(
            {
                "symbol": symbol.upper(),
                "side": "SELL" if side == LONG else "BUY",
                "type": "MARKET",
                "quantity": self._sized_qty(symbol, quantity),
                "reduceOnly": "true",
            }
        )
        log.info("closed position %s: %s %s", symbol, side, quantity)
        return order or {}

    def open_position(
        self, symbol: str, side: str, quantity: float, leverage: int
    ) -> OpenResult:
        side = normalize_side(side)
        qty = self._sized_qty(symbol, quantity)

        # Set leverage first
        self._request(
            "POST",
            "/fapi/v1/leverage",
            params={"symbol": symbol.upper(), "leverage": int(leverage)},
            signed=True,
        )

        order = self._place_order(
            {
                "symbol": symbol.upper(),
                "side": "BUY" if side == LONG else "SELL",
                "type": "MARKET",
                "quantity": qty,
                "newOrderRespType": "RESULT",
            }
        ) or {}

        fill = _positive_float(order.get("avgPrice"))
        if fill is None and order.get("orderId") is not None:
            # MARKET orders can come back NEW; look the fill up once
            try:
                detail = self._request(
                    "GET",
                    "/fapi/v1/order",
                    params={"symbol": symbol.upper(), "orderId": int(order["orderId"])},
                    signed=True,
                ) or {}
                fill = _positive_float(detail.get("avgPrice"))
            except TransientExchangeError as e:
                log.warning("fill price lookup failed for %s: %s", symbol, e)

        log.info(
            "opened position %s: %s %s @ %sx, avg price %s",
            symbol, side, qty, leverage, fill if fill is not None else "N/A",
        )
        return OpenResult(fill_price=fill, quantity=qty, order=order)

    def set_stop_loss(
        self, symbol: str, stop_price: float, side: str, quantity: float
    ) -> Dict[str, Any]:
        side = normalize_side(side)
        stop_px = self._price_for(symbol, stop_price)
        order = self._place_order(
            {
                "symbol": symbol.upper(),
                "side": "SELL" if side == LONG else "BUY",
                "type": "STOP_MARKET",
                "stopPrice": stop_px,
                "quantity": self._sized_qty(symbol, quantity),
                "reduceOnly": "true",
                "workingType": "MARK_PRICE",
            }
        )
        log.info("set stop loss for %s at %s (%s)", symbol, stop_px, side)
        return order or {}

    def set_take_profit(
        self, symbol: str, tp_percentage: float, entry_price: Optional[float] = None
    ) -> Dict[str, Any]:
        rows = [
            p for p in self._position_risk(symbol)
            if float(p.get("positionAmt", "0") or 0.0) != 0
        ]
        if not rows:
            raise ExchangeValidationError(f"No open position found for {symbol}")
        pos = rows[0]
        is_long = float(pos["positionAmt"]) > 0
        entry = float(entry_price) if entry_price else float(pos.get("entryPrice", 0) or 0.0)
        if entry <= 0:
            raise ExchangeValidationError(f"{symbol}: no entry price for take profit")

        if is_long:
            tp_price = entry * (1 + tp_percentage / 100)
        else:
            tp_price = entry * (1 - tp_percentage / 100)
        tp_price = self._price_for(symbol, tp_price)

        # Cancel existing TP orders
        opens = self._request(
            "GET", "/fapi/v1/openOrders", params={"symbol": symbol.upper()}, signed=True
        ) or []
        for o in opens:
            if o.get("type") in ("TAKE_PROFIT_MARKET", "TAKE_PROFIT"):
                self._request(
                    "DELETE",
                    "/fapi/v1/order",
                    params={"symbol": symbol.upper(), "orderId": int(o["orderId"])},
                    signed=True,
                )

        order = self._place_order(
            {
                "symbol": symbol.upper(),
                "side": "SELL" if is_long else "BUY",
                "type": "TAKE_PROFIT_MARKET",
                "stopPrice": tp_price,
                "closePosition": "true",
                "workingType": "MARK_PRICE",
            }
        )
        return {
            "symbol": symbol,
            "side": LONG if is_long else SHORT,
            "entry_price": entry,
            "tp_price": tp_price,
            "percentage": tp_percentage,
            "order": order,
        }


def _safe_json(r) -> Any:
    try:
        return r.json()
    except ValueError:
        return None


def _positive_float(v) -> Optional[float]:
    try:
        f = float(v)
    except (TypeError, ValueError):
        return None
    return f if f > 0 else None
