from __future__ import annotations

import json
import logging
import random
import time
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

import requests

from reentrybot.exchange.base import OpenResult
from reentrybot.exchange.binance.filters import decimals_of, round_price_to_tick, round_qty
from reentrybot.exchange.errors import ExchangeValidationError, TransientExchangeError
from reentrybot.exchange.okx.signing import auth_headers, request_path
from reentrybot.runner.models import LONG, SHORT, Candle, Position, normalize_side

log = logging.getLogger("reentrybot.exchange.okx")


@dataclass(frozen=True)
class InstrumentRules:
    inst_id: str
    lot_size: Decimal
    min_size: Decimal
    tick_size: Decimal

    @property
    def price_precision(self) -> int:
        return decimals_of(self.tick_size)


def okx_bar(bar_size: str) -> str:
    """15m -> 15m, 1h -> 1H, 4h -> 4H, 1d -> 1D."""
    s = bar_size.strip()
    if s and s[-1] in ("h", "d", "w"):
        return s[:-1] + s[-1].upper()
    return s


def row_to_candle(row: list) -> Candle:
    # [ts, o, h, l, c, vol, volCcy, volCcyQuote, confirm]
    return Candle(
        open_time=int(row[0]),
        open=float(row[1]),
        high=float(row[2]),
        low=float(row[3]),
        close=float(row[4]),
        volume=float(row[5]),
    )


class OkxSwapClient:
    """Perpetual swap adapter for OKX (cross margin, net position mode)."""

    name = "okx"

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        passphrase: str,
        base_url: str = "https://www.okx.com",
        timeout_s: float = 5.0,
        max_retries: int = 2,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key
        self.api_secret = api_secret
        self.passphrase = passphrase
        self.base_url = base_url.rstrip("/")
        self.timeout_s = float(timeout_s)
        self.max_retries = int(max_retries)
        self.session = session or requests.Session()
        self._instruments: Dict[str, InstrumentRules] = {}

    def _request(
        self,
        method: str,
        path: str,
        params: dict | None = None,
        body: dict | list | None = None,
        signed: bool = True,
        retry: bool = True,
    ) -> list:
        """retry=False: an order that may have reached OKX is not sent twice."""
        if signed and not (self.api_key and self.api_secret and self.passphrase):
            raise ExchangeValidationError("Missing OKX API key, secret or passphrase")

        full_path = request_path(path, params)
        last_err: Exception | str | None = None
        for attempt in range(self.max_retries + 1):
            headers = {"Content-Type": "application/json"}
            if signed:
                headers = auth_headers(
                    self.api_key, self.api_secret, self.passphrase, method, full_path, body
                )
            try:
                r = self.session.request(
                    method,
                    f"{self.base_url}{full_path}",
                    data=json.dumps(body, separators=(",", ":")) if body else None,
                    headers=headers,
                    timeout=self.timeout_s,
                )
            except (requests.Timeout, requests.ConnectionError) as e:
                if not retry and not isinstance(e, requests.ConnectTimeout):
                    raise TransientExchangeError(f"OKX {method} {path}: outcome unknown ({e})") from e
                last_err = e
                self._backoff(attempt)
                continue

            if r.status_code == 429 or r.status_code >= 500:
                last_err = f"HTTP {r.status_code}: {r.text[:200]}"
                if not retry and r.status_code >= 500:
                    raise TransientExchangeError(
                        f"OKX {method} {path}: outcome unknown ({last_err})", status=r.status_code
                    )
                self._backoff(attempt, jitter=r.status_code == 429)
                continue

            try:
                payload = r.json()
            except ValueError:
                payload = None

            if r.status_code >= 400 or not isinstance(payload, dict):
                raise ExchangeValidationError(
                    f"OKX HTTP {r.status_code}: {r.text[:300]}", status=r.status_code
                )

            code = str(payload.get("code", "0"))
            if code != "0":
                # 50011: rate limit reached
                if code == "50011":
                    last_err = f"OKX rate limited: {payload.get('msg')}"
                    self._backoff(attempt, jitter=True)
                    continue
                detail = payload.get("msg") or ""
                rows = payload.get("data") or []
                if rows and isinstance(rows[0], dict) and rows[0].get("sMsg"):
                    detail = f"{detail} {rows[0]['sMsg']}".strip()
                raise ExchangeValidationError(
                    f"OKX API error {code}: {detail}", code=code, status=r.status_code
                )
            return payload.get("data") or []

        raise TransientExchangeError(
            f"OKX request failed after retries: {method} {path} ({last_err})"
        )

    def _backoff(self, attempt: int, jitter: bool = False) -> None:
        if attempt < self.max_retries:
            extra = random.uniform(0, 0.2) if jitter else 0.0
            time.sleep(min(0.4 * (2**attempt) + extra, 2.0))

    # ---------------- INSTRUMENTS ----------------

    def instrument(self, symbol: str) -> InstrumentRules:
        cached = self._instruments.get(symbol)
        if cached:
            return cached
        rows = self._request(
            "GET",
            "/api/v5/public/instruments",
            params={"instType": "SWAP", "instId": symbol},
            signed=False,
        )
        if not rows:
            raise ExchangeValidationError(f"Instrument not found: {symbol}")
        row = rows[0]
        rules = InstrumentRules(
            inst_id=symbol,
            lot_size=Decimal(str(row.get("lotSz") or "1")),
            min_size=Decimal(str(row.get("minSz") or "0")),
            tick_size=Decimal(str(row.get("tickSz") or "0.0001")),
        )
        self._instruments[symbol] = rules
        return rules

    def price_precision(self, symbol: str) -> Optional[int]:
        return self.instrument(symbol).price_precision

    def _size(self, symbol: str, quantity: float) -> str:
        rules = self.instrument(symbol)
        sz = round_qty(quantity, rules.lot_size)
        if sz <= 0 or sz < rules.min_size:
            raise ExchangeValidationError(
                f"{symbol}: size {quantity} below minSz {rules.min_size} after rounding"
            )
        return format(sz.normalize(), "f")

    def _price(self, symbol: str, price: float) -> str:
        tick = self.instrument(symbol).tick_size
        return format(Decimal(str(round_price_to_tick(price, tick))), "f")

    # ---------------- MARKET DATA ----------------

    def get_current_price(self, symbol: str) -> float:
        rows = self._request(
            "GET", "/api/v5/market/ticker", params={"instId": symbol}, signed=False
        )
        if not rows:
            raise ExchangeValidationError(f"No ticker for {symbol}")
        return float(rows[0]["last"])

    def get_candles(self, symbol: str, bar_size: str, count: int) -> List[Candle]:
        rows = self._request(
            "GET",
            "/api/v5/market/candles",
            params={"instId": symbol, "bar": okx_bar(bar_size), "limit": str(int(count))},
            signed=False,
        )
        # newest first on the wire
        return [row_to_candle(r) for r in reversed(rows)]

    # ---------------- ACCOUNT ----------------

    def _positions(self, symbol: str | None = None) -> list:
        params = {"instType": "SWAP"}
        if symbol:
            params["instId"] = symbol
        rows = self._request("GET", "/api/v5/account/positions", params=params)
        return [p for p in rows if float(p.get("pos") or 0) != 0]

    def get_open_positions(self) -> List[Position]:
        out: List[Position] = []
        for p in self._positions():
            pos = float(p["pos"])
            out.append(
                Position(
                    symbol=p["instId"],
                    side=LONG if pos > 0 else SHORT,
                    quantity=abs(pos),
                    entry_price=float(p.get("avgPx") or 0.0),
                    current_price=float(p.get("markPx") or 0.0),
                    unrealized_pnl=float(p.get("upl") or 0.0),
                    leverage=int(float(p.get("lever") or 1)),
                )
            )
        return out

    def get_account_unrealized_pnl(self) -> float:
        return sum(float(p.get("upl") or 0.0) for p in self._positions())

    # ---------------- TRADING ----------------

    def _place_order(self, body: Dict[str, Any]) -> list:
        # clOrdId: alphanumeric, up to 32 chars
        body = dict(body, clOrdId=f"rb{uuid.uuid4().hex[:30]}")
        try:
            return self._request("POST", "/api/v5/trade/order", body=body, retry=False)
        except TransientExchangeError as e:
            try:
                found = self._request(
                    "GET",
                    "/api/v5/trade/order",
                    params={"instId": body["instId"], "clOrdId": body["clOrdId"]},
                )
            except ExchangeValidationError as lookup_err:
                # 51603: order does not exist
                if lookup_err.code == "51603":
                    raise e
                raise
            if not found:
                raise
            log.warning("order %s on %s went through despite: %s", body["clOrdId"], body["instId"], e)
            return found

    def close_position(self, symbol: str, quantity: float, side: str) -> Dict[str, Any]:
        side = normalize_side(side)
        rows = self._place_order(
            {
                "instId": symbol,
                "tdMode": "cross",
                "side": "sell" if side == LONG else "buy",
                "ordType": "market",
                "sz": self._size(symbol, quantity),
                "reduceOnly": True,
            }
        )
        log.info("closed OKX position %s: %s %s", symbol, side, quantity)
        return rows[0] if rows else {}

    def open_position(
        self, symbol: str, side: str, quantity: float, leverage: int
    ) -> OpenResult:
        side = normalize_side(side)
        sz = self._size(symbol, quantity)

        self._request(
            "POST",
            "/api/v5/account/set-leverage",
            body={"instId": symbol, "lever": str(int(leverage)), "mgnMode": "cross"},
        )

        rows = self._place_order(
            {
                "instId": symbol,
                "tdMode": "cross",
                "side": "buy" if side == LONG else "sell",
                "ordType": "market",
                "sz": sz,
            }
        )
        order = rows[0] if rows else {}

        fill: Optional[float] = None
        ord_id = order.get("ordId")
        if ord_id:
            try:
                details = self._request(
                    "GET", "/api/v5/trade/order", params={"instId": symbol, "ordId": ord_id}
                )
                if details:
                    px = float(details[0].get("avgPx") or 0.0)
                    fill = px if px > 0 else None
            except TransientExchangeError as e:
                log.warning("fill price lookup failed for %s: %s", symbol, e)

        log.info(
            "opened OKX position %s: %s %s @ %sx, avg price %s",
            symbol, side, sz, leverage, fill if fill is not None else "N/A",
        )
        return OpenResult(fill_price=fill, quantity=float(sz), order=order)

    def set_stop_loss(
        self, symbol: str, stop_price: float, side: str, quantity: float
    ) -> Dict[str, Any]:
        side = normalize_side(side)
        trigger = self._price(symbol, stop_price)
        rows = self._request(
            "POST",
            "/api/v5/trade/order-algo",
            body={
                "instId": symbol,
                "tdMode": "cross",
                "side": "sell" if side == LONG else "buy",
                "ordType": "conditional",
                "sz": self._size(symbol, quantity),
                "slTriggerPx": trigger,
                "slOrdPx": "-1",
                "reduceOnly": True,
            },
            retry=False,
        )
        log.info("set stop loss for %s at %s (%s)", symbol, trigger, side)
        return rows[0] if rows else {}

    def set_take_profit(
        self, symbol: str, tp_percentage: float, entry_price: Optional[float] = None
    ) -> Dict[str, Any]:
        rows = self._positions(symbol)
        if not rows:
            raise ExchangeValidationError(f"No open position found for {symbol}")
        pos = rows[0]
        qty = abs(float(pos["pos"]))
        is_long = float(pos["pos"]) > 0
        entry = float(entry_price) if entry_price else float(pos.get("avgPx") or 0.0)
        if entry <= 0:
            raise ExchangeValidationError(f"{symbol}: no entry price for take profit")

        if is_long:
            tp_price = entry * (1 + tp_percentage / 100)
        else:
            tp_price = entry * (1 - tp_percentage / 100)
        trigger = self._price(symbol, tp_price)

        # Cancel existing TP orders
        pending = self._request(
            "GET",
            "/api/v5/trade/orders-algo-pending",
            params={"instType": "SWAP", "instId": symbol, "ordType": "conditional"},
        )
        stale = [
            {"instId": symbol, "algoId": o["algoId"]}
            for o in pending
            if o.get("tpTriggerPx")
        ]
        if stale:
            # cancel-algos takes a JSON array body
            self._request("POST", "/api/v5/trade/cancel-algos", body=stale)

        placed = self._request(
            "POST",
            "/api/v5/trade/order-algo",
            body={
                "instId": symbol,
                "tdMode": "cross",
                "side": "sell" if is_long else "buy",
                "ordType": "conditional",
                "sz": self._size(symbol, qty),
                "tpTriggerPx": trigger,
                "tpOrdPx": "-1",
                "reduceOnly": True,
            },
            retry=False,
        )
        return {
            "symbol": symbol,
            "side": LONG if is_long else SHORT,
            "entry_price": entry,
            "tp_price": float(trigger),
            "percentage": tp_percentage,
            "order": placed[0] if placed else {},
        }

