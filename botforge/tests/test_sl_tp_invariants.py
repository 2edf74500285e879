import pytest

from botforge.core.errors import ValidationError
from botforge.execution.validation import validate_sl_tp


def test_long_sl_tp_ok():
    validate_sl_tp(
        side="LONG",
        entry_price=100,
        stop_loss=95,
        take_profit=110,
    )


def test_long_invalid_sl():
    with pytest.raises(ValidationError):
        validate_sl_tp(
            side="LONG",
            entry_price=100,
            stop_loss=101,
            take_profit=110,
        )


def test_short_sl_tp_ok():
    validate_sl_tp(
        side="SHORT",
        entry_price=100,
        stop_loss=105,
        take_profit=90,
    )


def test_short_invalid_tp():
    with pytest.raises(ValidationError):
        validate_sl_tp(
            side="SHORT",
            entry_price=100,
            stop_loss=105,
            take_profit=101,
        )


def test_missing_levels_are_allowed():
    validate_sl_tp(side="LONG", entry_price=100, stop_loss=None, take_profit=None)


def test_unknown_side_rejected():
    with pytest.raises(ValidationError):
        validate_sl_tp(side="FLAT", entry_price=100, stop_loss=None, take_profit=None)
