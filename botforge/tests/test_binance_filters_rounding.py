from decimal import Decimal
import pytest

from botforge.exchange.binance.filters import (
    apply_filters,
    extract_filters,
    round_qty_to_step,
    round_price_to_tick,
)


def _is_multiple(value: float, step: float) -> bool:
    """
    Check that value is an exact multiple of step using Decimal arithmetic.
    Float math is NOT reliable for this (e.g. 1.9 / 0.1 issues).
    """
    v = Decimal(str(value))
    s = Decimal(str(step))
    return (v / s) % 1 == 0


@pytest.mark.parametrize(
    "qty,step,expected",
    [
        (0.01234, 0.001, 0.012),
        (0.01299, 0.001, 0.012),
        (1.999, 0.1, 1.9),
        (10.0, 0.01, 10.0),
    ],
)
def test_round_qty_to_step_floor(qty, step, expected):
    out = round_qty_to_step(qty, step)
    assert out == expected
    assert _is_multiple(out, step)


@pytest.mark.parametrize(
    "price,tick,expected",
    [
        (43210.12, 0.1, 43210.1),
        (43210.19, 0.1, 43210.1),
        (123.4567, 0.01, 123.45),
        (0.123456, 0.0001, 0.1234),
    ],
)
def test_round_price_to_tick_floor(price, tick, expected):
    out = round_price_to_tick(price, tick)
    assert out == expected
    assert _is_multiple(out, tick)


EXCHANGE_INFO = {
    "symbols": [
        {
            "symbol": "BTCUSDT",
            "filters": [
                {"filterType": "PRICE_FILTER", "tickSize": "0.10"},
                {"filterType": "LOT_SIZE", "stepSize": "0.001", "minQty": "0.001"},
            ],
        }
    ]
}


def test_extract_filters():
    f = extract_filters(EXCHANGE_INFO, "btcusdt")
    assert f.step_size == Decimal("0.001")
    assert f.tick_size == Decimal("0.10")


def test_extract_filters_unknown_symbol():
    with pytest.raises(ValueError):
        extract_filters(EXCHANGE_INFO, "DOGEUSDT")


def test_apply_filters_rounds_qty_and_price():
    f = extract_filters(EXCHANGE_INFO, "BTCUSDT")
    qty, px = apply_filters(f, 0.0105, 43210.19)
    assert qty == 0.01
    assert px == 43210.1


def test_apply_filters_rejects_dust():
    f = extract_filters(EXCHANGE_INFO, "BTCUSDT")
    with pytest.raises(ValueError):
        apply_filters(f, 0.0004)
