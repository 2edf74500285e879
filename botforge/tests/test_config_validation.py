import pytest

from botforge.core.config import Settings


def test_bad_market_data_source_is_fatal():
    s = Settings(MARKET_DATA_SOURCE="carrier-pigeon")
    with pytest.raises(ValueError):
        s.validate_runtime()


def test_non_positive_interval_is_fatal():
    s = Settings(EVAL_INTERVAL_SECONDS=0)
    with pytest.raises(ValueError) as exc:
        s.validate_runtime()
    assert "EVAL_INTERVAL_SECONDS" in str(exc.value)


def test_fast_polling_is_warning_not_error():
    s = Settings(EVAL_INTERVAL_SECONDS=0.5)
    warnings = s.validate_runtime()
    assert any("faster than 1s" in w for w in warnings)


def test_manual_lock_policy_warns():
    s = Settings(MANUAL_ORDERS_RESPECT_LOCK=True)
    warnings = s.validate_runtime()
    assert any("MANUAL_ORDERS_RESPECT_LOCK" in w for w in warnings)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("btcusdt, ethusdt", ["BTCUSDT", "ETHUSDT"]),
        ('["solusdt"]', ["SOLUSDT"]),
        (["xrpusdt"], ["XRPUSDT"]),
    ],
)
def test_trading_pairs_parsing(raw, expected):
    assert Settings(TRADING_PAIRS=raw).TRADING_PAIRS == expected


def test_market_data_source_normalized():
    assert Settings(MARKET_DATA_SOURCE=" Binance ").MARKET_DATA_SOURCE == "binance"
