from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from reentrybot.exchange.base import ExchangeAdapter
from reentrybot.exchange.errors import ExchangeError
from reentrybot.notify.telegram import Notifier, escape_markdown
from reentrybot.persistence.audit import Audit
from reentrybot.persistence.state_store import StateStore
from reentrybot.risk.gate import GateDecision, SafetyGate
from reentrybot.risk.stop_loss import calculate_stop_loss, next_quantity
from reentrybot.runner.models import AccountRef, ReentryRecord

log = logging.getLogger("reentrybot.reentry")

# outcome statuses
MISSING = "missing"
DENIED = "denied"
FAILED = "failed"
REENTERED = "reentered"
TERMINATED = "terminated"
CANCELLED = "cancelled"


@dataclass
class ReentryOutcome:
    symbol: str
    status: str
    reason: str = ""
    fill_price: Optional[float] = None
    quantity: Optional[float] = None
    stop_loss_price: Optional[float] = None
    next_quantity: Optional[float] = None
    remaining_retries: Optional[int] = None
    decision: Optional[GateDecision] = None


class ReentryExecutor:
    """
    Drives one pending re-entry: gate check, open, TP/SL placement,
    volume-reduction cascade and retry-counter lifecycle.

    The caller holds the per-record lock; process() re-reads the record.
    """

    def __init__(
        self,
        store: StateStore,
        gate: SafetyGate,
        notifier: Notifier,
        audit: Optional[Audit] = None,
        candle_bar: str = "15m",
        candle_count: int = 50,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.gate = gate
        self.notifier = notifier
        self.audit = audit
        self.candle_bar = candle_bar
        self.candle_count = int(candle_count)
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def _audit(self, event_type: str, account: AccountRef, **kw) -> None:
        if self.audit:
            self.audit.event(event_type, account=str(account), **kw)

    def process(self, account: AccountRef, adapter: ExchangeAdapter, symbol: str) -> ReentryOutcome:
        rec = self.store.load_reentry(account.user_id, account.exchange, symbol)
        if rec is None:
            return ReentryOutcome(symbol, MISSING, "record no longer pending")

        policy = self.store.load_retry_policy(account.user_id, account.exchange)
        if policy is not None and not policy.enabled:
            self.store.swap_reentry(account.user_id, account.exchange, rec, None)
            self._audit(
                "REENTRY_DELETED", account, symbol=rec.symbol, details={"reason": "retry disabled"}
            )
            return ReentryOutcome(rec.symbol, CANCELLED, "retry disabled for this account")

        current_price = adapter.get_current_price(rec.symbol)
        candles = adapter.get_candles(rec.symbol, self.candle_bar, self.candle_count)
        decision = self.gate.evaluate(rec, current_price, candles, now=self.clock())

        if not decision.allowed:
            log.debug("%s %s: re-entry denied: %s", account, rec.symbol, decision.reason)
            self._audit(
                "REENTRY_DENIED",
                account,
                symbol=rec.symbol,
                details={"check": decision.check, "reason": decision.reason, **decision.details},
            )
            return ReentryOutcome(rec.symbol, DENIED, decision.reason, decision=decision)

        outcome = self.execute(account, adapter, rec, current_price)
        outcome.decision = decision
        return outcome

    def execute(
        self,
        account: AccountRef,
        adapter: ExchangeAdapter,
        rec: ReentryRecord,
        current_price: float,
    ) -> ReentryOutcome:
        try:
            opened = adapter.open_position(rec.symbol, rec.side, rec.quantity, rec.leverage)
        except ExchangeError as e:
            # record untouched, retried next cycle
            log.warning("%s %s: re-entry open failed: %s", account, rec.symbol, e)
            self._audit(
                "REENTRY_FAILED", account, symbol=rec.symbol, details={"error": str(e)}
            )
            return ReentryOutcome(rec.symbol, FAILED, str(e))

        fill = opened.fill_price or current_price or rec.entry_price
        opened_qty = opened.quantity or rec.quantity
        self._audit(
            "REENTRY_OPENED",
            account,
            symbol=rec.symbol,
            action="OPEN",
            details={
                "side": rec.side,
                "quantity": opened_qty,
                "fill_price": fill,
                "fill_reported": opened.fill_price is not None,
                "retry": rec.current_retry,
            },
        )

        try:
            precision = adapter.price_precision(rec.symbol)
        except ExchangeError as e:
            log.warning("%s %s: no price precision (%s)", account, rec.symbol, e)
            precision = None

        try:
            adapter.set_take_profit(rec.symbol, rec.tp_percentage, entry_price=fill)
        except ExchangeError as e:
            log.warning("%s %s: take profit not placed: %s", account, rec.symbol, e)
            self._audit("TP_ORDER_FAILED", account, symbol=rec.symbol, details={"error": str(e)})

        stop_price: Optional[float] = None
        try:
            sl = calculate_stop_loss(fill, rec.side, rec.tp_percentage, opened_qty, precision)
            stop_price = sl.stop_loss_price
            adapter.set_stop_loss(rec.symbol, stop_price, rec.side, opened_qty)
        except (ExchangeError, ValueError) as e:
            log.warning("%s %s: stop loss not placed: %s", account, rec.symbol, e)
            self._audit("SL_ORDER_FAILED", account, symbol=rec.symbol, details={"error": str(e)})

        nq = next_quantity(rec.quantity, rec.volume_reduction_percent)
        # this re-entry consumed one retry; the record survives only if more are left
        remaining_after = rec.remaining_retries - 1

        if rec.remaining_retries > 0:
            try:
                next_stop = calculate_stop_loss(
                    fill, rec.side, rec.tp_percentage, nq, precision
                ).stop_loss_price
            except ValueError:
                next_stop = rec.stop_loss_price
            updated = ReentryRecord(
                symbol=rec.symbol,
                side=rec.side,
                leverage=rec.leverage,
                entry_price=fill,
                quantity=nq,
                original_quantity=rec.original_quantity,
                stop_loss_price=next_stop,
                tp_percentage=rec.tp_percentage,
                volume_reduction_percent=rec.volume_reduction_percent,
                current_retry=rec.current_retry + 1,
                remaining_retries=remaining_after,
                closed_at=self.clock().isoformat(),
                closed_profit=rec.closed_profit,
                current_price=current_price,
            )
            if self.store.swap_reentry(account.user_id, account.exchange, rec, updated):
                status = REENTERED
                self._audit(
                    "REENTRY_UPDATED",
                    account,
                    symbol=rec.symbol,
                    details={
                        "next_quantity": nq,
                        "stop_loss_price": next_stop,
                        "current_retry": updated.current_retry,
                        "remaining_retries": remaining_after,
                    },
                )
            else:
                status = self._superseded(account, rec)
                remaining_after = 0
        else:
            remaining_after = 0
            if self.store.swap_reentry(account.user_id, account.exchange, rec, None):
                status = TERMINATED
                self._audit(
                    "REENTRY_DELETED", account, symbol=rec.symbol, details={"reason": "retries exhausted"}
                )
            else:
                status = self._superseded(account, rec)

        log.info(
            "%s %s: re-entered %s %s @ %s (retry %s, %s left)",
            account, rec.symbol, rec.side, opened_qty, fill, rec.current_retry, remaining_after,
        )
        self.notifier.notify(
            account,
            format_reentry_message(rec, fill, opened_qty, stop_price, remaining_after),
        )
        return ReentryOutcome(
            rec.symbol,
            status,
            fill_price=fill,
            quantity=opened_qty,
            stop_loss_price=stop_price,
            next_quantity=nq if status == REENTERED else None,
            remaining_retries=remaining_after,
        )

    def _superseded(self, account: AccountRef, rec: ReentryRecord) -> str:
        # deleted (retry disabled) or rewritten while the position was opening
        log.warning(
            "%s %s: record changed during re-entry, not written back", account, rec.symbol
        )
        self._audit(
            "REENTRY_SUPERSEDED",
            account,
            symbol=rec.symbol,
            details={"current_retry": rec.current_retry},
        )
        return TERMINATED


def format_reentry_message(
    rec: ReentryRecord,
    fill: float,
    quantity: float,
    stop_price: Optional[float],
    remaining: int,
) -> str:
    stop_txt = f"${stop_price:g}" if stop_price is not None else "not set"
    return "\n".join(
        [
            f"🔄 *Re-entry executed* {escape_markdown(rec.symbol)} {rec.side}",
            f"Entry: ${fill:g}",
            f"Quantity: {quantity:g} (-{rec.volume_reduction_percent:g}% per retry)",
            f"Stop loss: {stop_txt}",
            f"Retries remaining: {remaining}",
        ]
    )
