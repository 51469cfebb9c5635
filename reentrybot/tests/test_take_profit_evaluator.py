import pytest

from reentrybot.exchange.errors import ExchangeValidationError, TransientExchangeError
from reentrybot.execution.take_profit import TakeProfitEvaluator, select_positions_to_close
from reentrybot.runner.models import LONG, SHORT, Position, RetryPolicy, TakeProfitConfig
from reentrybot.tests.fakes import FakeAdapter


def _book():
    return [
        Position("BTCUSDT", LONG, 1.0, 50000.0, 52500.0, 2500.0, 10),  # +5.00%
        Position("ETHUSDT", LONG, 20.0, 2000.0, 2050.0, 1000.0, 5),  # +2.50%
        Position("SOLUSDT", SHORT, 100.0, 150.0, 149.0, 100.0, 3),  # +0.67%
        Position("ADAUSDT", LONG, 10000.0, 0.5, 0.49, -100.0, 2),  # -2.00%
    ]


@pytest.fixture
def configured(store, account):
    store.save_tp_config(account.user_id, account.exchange, TakeProfitConfig(5, 50000))
    store.save_retry_policy(account.user_id, account.exchange, RetryPolicy(3, 15))
    return store


def test_target_reached_closes_only_qualifying_positions(configured, notifier, account, audit):
    adapter = FakeAdapter(positions=_book())
    ev = TakeProfitEvaluator(configured, notifier, audit=audit)

    res = ev.evaluate(account, adapter)

    assert res.reached is True
    assert res.target_profit == pytest.approx(2500)
    assert res.total_pnl == pytest.approx(3500)
    assert {c.symbol for c in res.closed} == {"BTCUSDT", "ETHUSDT"}
    assert res.total_profit_captured == pytest.approx(3500)
    assert {p.symbol for p in adapter.positions} == {"SOLUSDT", "ADAUSDT"}
    assert ("BTCUSDT", 1.0, LONG) in adapter.closed

    btc = configured.load_reentry("u1", "binance", "BTCUSDT")
    assert btc.quantity == pytest.approx(0.85)
    assert btc.original_quantity == 1.0
    assert btc.entry_price == 50000.0
    assert btc.current_retry == 1
    assert btc.remaining_retries == 2
    assert btc.stop_loss_price == pytest.approx(47500.0)  # 50000 - 5%
    assert btc.leverage == 10
    assert btc.closed_profit == 2500.0
    assert configured.load_reentry("u1", "binance", "SOLUSDT") is None
    assert res.records_written == 2

    assert len(notifier.messages) == 1
    assert "Closed: 2 position(s)" in notifier.messages[0][1]

    kinds = [e["event_type"] for e in audit.tail(20)]
    assert "TP_REACHED" in kinds
    assert kinds.count("POSITION_CLOSED") == 2


def test_below_target_does_nothing(configured, notifier, account):
    book = [Position("BTCUSDT", LONG, 1.0, 50000.0, 51000.0, 1000.0, 10)]
    adapter = FakeAdapter(positions=book)

    res = TakeProfitEvaluator(configured, notifier).evaluate(account, adapter)

    assert res.reached is False
    assert adapter.closed == []
    assert notifier.messages == []
    assert configured.list_reentries() == []


def test_without_tp_config_nothing_is_read(store, notifier, account):
    adapter = FakeAdapter(positions=_book())
    res = TakeProfitEvaluator(store, notifier).evaluate(account, adapter)
    assert res.reached is False
    assert adapter.closed == []


def test_target_reached_but_nothing_qualifies(configured, notifier, account):
    book = [
        Position("BTCUSDT", LONG, 10.0, 50000.0, 50500.0, 5000.0, 10),  # +1%
        Position("ETHUSDT", SHORT, 1.0, 2000.0, 2100.0, -100.0, 5),
    ]
    adapter = FakeAdapter(positions=book)

    res = TakeProfitEvaluator(configured, notifier).evaluate(account, adapter)

    assert res.reached is True
    assert res.closed == []
    assert adapter.closed == []
    assert configured.list_reentries() == []
    assert notifier.messages == []


def test_selection_is_idempotent():
    once = select_positions_to_close(_book())
    assert select_positions_to_close(once) == once
    assert [p.symbol for p in once] == ["BTCUSDT", "ETHUSDT"]


def test_selection_threshold_is_strict():
    pos = Position("X", LONG, 1.0, 100.0, 102.0, 2.0)
    assert select_positions_to_close([pos], 2.0) == []
    assert select_positions_to_close([pos], 1.9) == [pos]


@pytest.mark.parametrize("enabled", [False, None])
def test_retry_disabled_closes_without_records(store, notifier, account, enabled):
    store.save_tp_config("u1", "binance", TakeProfitConfig(5, 50000))
    if enabled is not None:
        store.save_retry_policy("u1", "binance", RetryPolicy(3, 15, enabled=enabled))
    adapter = FakeAdapter(positions=_book())

    res = TakeProfitEvaluator(store, notifier).evaluate(account, adapter)

    assert {c.symbol for c in res.closed} == {"BTCUSDT", "ETHUSDT"}
    assert store.list_reentries() == []
    assert res.records_written == 0


def test_one_failed_close_does_not_block_others(configured, notifier, account):
    adapter = FakeAdapter(positions=_book())
    adapter.fail_close["ETHUSDT"] = ExchangeValidationError("insufficient margin")

    res = TakeProfitEvaluator(configured, notifier).evaluate(account, adapter)

    assert [c.symbol for c in res.closed] == ["BTCUSDT"]
    assert res.failures == [{"symbol": "ETHUSDT", "error": "insufficient margin"}]
    # still open on the exchange, so no re-entry for it
    assert configured.load_reentry("u1", "binance", "ETHUSDT") is None
    assert configured.load_reentry("u1", "binance", "BTCUSDT") is not None
    assert res.records_written == 1
    assert "Failed: 1" in notifier.messages[0][1]


def test_exchange_error_on_positions_propagates(configured, notifier, account):
    class _Broken(FakeAdapter):
        def get_open_positions(self):
            raise TransientExchangeError("timeout")

    with pytest.raises(TransientExchangeError):
        TakeProfitEvaluator(configured, notifier).evaluate(account, _Broken())
    assert configured.list_reentries() == []


def test_price_precision_used_for_stop(configured, notifier, account):
    book = [Position("ETHUSDT", LONG, 3.0, 1999.99, 2100.0, 300.03, 5)]
    configured.save_tp_config("u1", "binance", TakeProfitConfig(0.5, 50000))
    adapter = FakeAdapter(positions=book, precision=1)

    TakeProfitEvaluator(configured, notifier).evaluate(account, adapter)

    rec = configured.load_reentry("u1", "binance", "ETHUSDT")
    # 1999.99 - 1999.99 * 0.005 = 1989.99005 -> one decimal
    assert rec.stop_loss_price == 1990.0


def test_failure_text_cannot_break_message_markup(configured, notifier, account):
    book = [Position("1000PEPE_USDT", LONG, 1e6, 0.01, 0.011, 3000.0, 5)]
    adapter = FakeAdapter(positions=book)
    adapter.fail_close["1000PEPE_USDT"] = ExchangeValidationError(
        'Binance HTTP 400: {"code":-4164,"msg":"Order\'s notional must be no smaller than 5 (unless you choose reduce_only)."}'
    )

    TakeProfitEvaluator(configured, notifier).evaluate(account, adapter)

    (_, msg), = notifier.messages
    assert "1000PEPE\\_USDT" in msg
    assert "reduce\\_only" in msg
    # the only unescaped markup left is the bold title
    assert msg.replace("\\_", "").count("_") == 0
    assert msg.replace("\\*", "").count("*") == 2
