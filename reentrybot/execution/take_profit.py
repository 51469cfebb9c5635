from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from reentrybot.exchange.base import ExchangeAdapter
from reentrybot.exchange.errors import ExchangeError
from reentrybot.notify.telegram import Notifier, escape_markdown
from reentrybot.persistence.audit import Audit
from reentrybot.persistence.state_store import StateStore
from reentrybot.risk.stop_loss import calculate_stop_loss, next_quantity
from reentrybot.runner.models import (
    AccountRef,
    Position,
    ReentryRecord,
    RetryPolicy,
    TakeProfitConfig,
    utc_now_iso,
)

log = logging.getLogger("reentrybot.take_profit")


@dataclass
class ClosedPosition:
    symbol: str
    side: str
    quantity: float
    profit: float


@dataclass
class TakeProfitResult:
    account: AccountRef
    reached: bool
    total_pnl: float
    target_profit: float
    closed: List[ClosedPosition] = field(default_factory=list)
    failures: List[Dict[str, Any]] = field(default_factory=list)
    records_written: int = 0

    @property
    def total_profit_captured(self) -> float:
        return sum(c.profit for c in self.closed)


def select_positions_to_close(
    positions: Sequence[Position], min_profit_pct: float = 2.0
) -> List[Position]:
    """Positions in profit whose directional move from entry exceeds min_profit_pct."""
    return [
        p
        for p in positions
        if p.unrealized_pnl > 0 and p.profit_percent() > min_profit_pct
    ]


class TakeProfitEvaluator:
    """
    Per account: compare the aggregate unrealized PnL with the configured target,
    schedule re-entries for the qualifying positions and close them.
    """

    def __init__(
        self,
        store: StateStore,
        notifier: Notifier,
        audit: Optional[Audit] = None,
        min_profit_pct: float = 2.0,
    ):
        self.store = store
        self.notifier = notifier
        self.audit = audit
        self.min_profit_pct = float(min_profit_pct)

    def _audit(self, event_type: str, account: AccountRef, **kw) -> None:
        if self.audit:
            self.audit.event(event_type, account=str(account), **kw)

    def evaluate(
        self,
        account: AccountRef,
        adapter: ExchangeAdapter,
        tp_config: Optional[TakeProfitConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> TakeProfitResult:
        tp_config = tp_config or self.store.load_tp_config(account.user_id, account.exchange)
        if tp_config is None:
            return TakeProfitResult(account, False, 0.0, 0.0)
        if retry_policy is None:
            retry_policy = self.store.load_retry_policy(account.user_id, account.exchange)

        positions = adapter.get_open_positions()
        total_pnl = sum(p.unrealized_pnl for p in positions)
        target = tp_config.target_profit
        result = TakeProfitResult(account, total_pnl >= target, total_pnl, target)

        if not result.reached:
            log.debug("%s: pnl %.2f below target %.2f", account, total_pnl, target)
            return result

        qualifying = select_positions_to_close(positions, self.min_profit_pct)
        self._audit(
            "TP_REACHED",
            account,
            details={
                "total_pnl": total_pnl,
                "target_profit": target,
                "qualifying": [p.symbol for p in qualifying],
            },
        )
        if not qualifying:
            log.info(
                "%s: target reached (%.2f >= %.2f) but no position above %.1f%%",
                account, total_pnl, target, self.min_profit_pct,
            )
            return result

        scheduled: Dict[str, bool] = {}
        if retry_policy is not None and retry_policy.enabled:
            for pos in qualifying:
                scheduled[pos.symbol] = self._schedule_reentry(
                    account, adapter, pos, tp_config, retry_policy
                )
            result.records_written = sum(1 for ok in scheduled.values() if ok)

        for pos in qualifying:
            try:
                adapter.close_position(pos.symbol, pos.quantity, pos.side)
            except ExchangeError as e:
                log.warning("%s: close %s failed: %s", account, pos.symbol, e)
                result.failures.append({"symbol": pos.symbol, "error": str(e)})
                self._audit(
                    "CLOSE_FAILED", account, symbol=pos.symbol, details={"error": str(e)}
                )
                # position is still open: nothing to re-enter
                if scheduled.get(pos.symbol):
                    self.store.delete_reentry(account.user_id, account.exchange, pos.symbol)
                    result.records_written -= 1
                continue

            result.closed.append(
                ClosedPosition(pos.symbol, pos.side, pos.quantity, pos.unrealized_pnl)
            )
            self._audit(
                "POSITION_CLOSED",
                account,
                symbol=pos.symbol,
                action="CLOSE",
                details={
                    "side": pos.side,
                    "quantity": pos.quantity,
                    "profit": pos.unrealized_pnl,
                    "profit_pct": pos.profit_percent(),
                },
            )

        self.notifier.notify(account, format_tp_message(result, tp_config))
        return result

    def _schedule_reentry(
        self,
        account: AccountRef,
        adapter: ExchangeAdapter,
        pos: Position,
        tp_config: TakeProfitConfig,
        policy: RetryPolicy,
    ) -> bool:
        try:
            precision = adapter.price_precision(pos.symbol)
        except ExchangeError as e:
            log.warning("%s: no price precision for %s (%s)", account, pos.symbol, e)
            precision = None

        try:
            nq = next_quantity(pos.quantity, policy.volume_reduction_percent)
            sl = calculate_stop_loss(
                pos.entry_price, pos.side, tp_config.percentage, nq, precision
            )
        except ValueError as e:
            log.warning("%s: cannot schedule re-entry for %s: %s", account, pos.symbol, e)
            self._audit(
                "REENTRY_NOT_SCHEDULED", account, symbol=pos.symbol, details={"error": str(e)}
            )
            return False

        rec = ReentryRecord(
            symbol=pos.symbol,
            side=pos.side,
            leverage=pos.leverage,
            entry_price=pos.entry_price,
            quantity=nq,
            original_quantity=pos.quantity,
            stop_loss_price=sl.stop_loss_price,
            tp_percentage=tp_config.percentage,
            volume_reduction_percent=policy.volume_reduction_percent,
            current_retry=1,
            remaining_retries=max(0, int(policy.max_retry) - 1),
            closed_at=utc_now_iso(),
            closed_profit=pos.unrealized_pnl,
            current_price=pos.current_price,
        )
        self.store.save_reentry(account.user_id, account.exchange, rec)
        self._audit(
            "REENTRY_SCHEDULED",
            account,
            symbol=pos.symbol,
            details={
                "quantity": nq,
                "stop_loss_price": sl.stop_loss_price,
                "potential_next_profit": sl.potential_next_profit,
                "remaining_retries": rec.remaining_retries,
            },
        )
        return True


def format_tp_message(result: TakeProfitResult, cfg: TakeProfitConfig) -> str:
    lines = [
        f"🎯 *Take profit reached* ({result.account.exchange.upper()})",
        f"PnL: ${result.total_pnl:.2f} / target ${result.target_profit:.2f} ({cfg.percentage:g}%)",
        f"Closed: {len(result.closed)} position(s), profit ${result.total_profit_captured:.2f}",
    ]
    for c in result.closed:
        lines.append(f"  • {escape_markdown(c.symbol)} {c.side} {c.quantity:g} (+${c.profit:.2f})")
    if result.records_written:
        lines.append(f"Re-entries scheduled: {result.records_written}")
    if result.failures:
        lines.append(f"Failed: {len(result.failures)}")
        for f in result.failures:
            lines.append(f"  • {escape_markdown(f['symbol'])}: {escape_markdown(f['error'])}")
    return "\n".join(lines)
