import pytest

from reentrybot.risk.stop_loss import (
    calculate_stop_loss,
    next_quantity,
    round_to_precision,
)
from reentrybot.runner.models import LONG, SHORT


def test_long_stop_mirrors_take_profit_distance():
    res = calculate_stop_loss(100000, LONG, 10, 0.85)
    assert res.tp_price == pytest.approx(110000)
    assert res.potential_next_profit == pytest.approx(8500)
    assert res.profit_per_unit == pytest.approx(10000)
    assert res.stop_loss_price == pytest.approx(90000)


def test_short_stop_sits_above_entry():
    res = calculate_stop_loss(100.0, SHORT, 10, 2.0)
    assert res.tp_price == pytest.approx(90.0)
    assert res.stop_loss_price == pytest.approx(110.0)


@pytest.mark.parametrize("entry", [0.5, 27.3, 1850.0, 100000.0])
@pytest.mark.parametrize("tp", [0.5, 5.0, 10.0, 50.0, 99.0])
@pytest.mark.parametrize("qty", [0.001, 0.85, 12.0])
def test_stop_loss_bounds_risk_by_potential_profit(entry, tp, qty):
    long_ = calculate_stop_loss(entry, LONG, tp, qty)
    assert 0 < long_.stop_loss_price < entry
    assert abs(long_.stop_loss_price - entry) * qty == pytest.approx(long_.potential_next_profit)

    short = calculate_stop_loss(entry, SHORT, tp, qty)
    assert short.stop_loss_price > entry
    assert abs(short.stop_loss_price - entry) * qty == pytest.approx(short.potential_next_profit)


def test_stop_loss_rounded_to_price_precision():
    res = calculate_stop_loss(123.456, LONG, 10, 1.0, price_precision=2)
    # 123.456 - 12.3456 = 111.1104
    assert res.stop_loss_price == 111.11
    assert res.tp_price == 135.80


def test_round_to_precision_half_up_and_none():
    assert round_to_precision(1.005, 2) == 1.01
    assert round_to_precision(1.23456, None) == 1.23456
    assert round_to_precision(90000.4, 0) == 90000.0


@pytest.mark.parametrize(
    "entry,tp,qty",
    [(0, 10, 1.0), (-1, 10, 1.0), (100, 0, 1.0), (100, 10, 0), (100, 10, -0.5)],
)
def test_stop_loss_rejects_non_positive_inputs(entry, tp, qty):
    with pytest.raises(ValueError):
        calculate_stop_loss(entry, LONG, tp, qty)


def test_long_stop_at_or_below_zero_is_rejected():
    with pytest.raises(ValueError):
        calculate_stop_loss(100, LONG, 100, 1.0)


def test_cascade_quantities():
    q = 1.0
    seen = []
    for _ in range(3):
        q = next_quantity(q, 15)
        seen.append(q)
    assert seen == pytest.approx([0.85, 0.7225, 0.614125])


@pytest.mark.parametrize("reduction", [1, 15, 50, 99])
@pytest.mark.parametrize("retries", range(1, 11))
def test_cascade_strictly_decreasing_and_positive(reduction, retries):
    q = 1.0
    for _ in range(retries):
        nq = next_quantity(q, reduction)
        assert 0 < nq < q
        q = nq


@pytest.mark.parametrize("reduction", [0, 100, -5, 150])
def test_cascade_rejects_reduction_out_of_range(reduction):
    with pytest.raises(ValueError):
        next_quantity(1.0, reduction)
