import pytest

from botforge.core.errors import ValidationError
from botforge.persistence.record_store import MemoryRecordStore
from botforge.templates.models import ExitRule, Template
from botforge.templates.resolve import OrderRequest, normalize_side, resolve
from botforge.templates.service import TemplateService


def _template(**kw):
    base = {"name": "t", "pair": "BTCUSDT", "size": 100.0, "leverage": 5.0, "account_id": "acc-1", "user_id": "u1"}
    base.update(kw)
    return Template(**base)


def test_usdt_size_is_margin():
    intent = resolve(_template(), None, 50_000)
    assert intent.margin == pytest.approx(100.0)
    assert intent.quantity == pytest.approx(0.01)
    assert intent.notional == pytest.approx(500.0)
    assert intent.side == "LONG"
    assert intent.order_type == "MARKET"
    assert intent.account_id == "acc-1"


def test_percent_size_uses_balance():
    intent = resolve(_template(size=10, size_mode="PERCENT"), None, 50_000, available_balance=2_000)
    assert intent.margin == pytest.approx(200.0)
    assert intent.quantity == pytest.approx(0.02)


def test_percent_size_without_balance_fails():
    with pytest.raises(ValidationError):
        resolve(_template(size_mode="PERCENT"), None, 50_000)


def test_qty_size_is_quantity():
    intent = resolve(_template(size=0.5, size_mode="QTY"), None, 50_000)
    assert intent.quantity == pytest.approx(0.5)
    assert intent.margin == pytest.approx(5_000.0)


def test_overrides_take_precedence():
    req = OrderRequest(direction="Short", order_type="limit", price=49_000, size=50, pair="ethusdt")
    intent = resolve(_template(), req, 50_000)
    assert intent.symbol == "ETHUSDT"
    assert intent.side == "SHORT"
    assert intent.order_type == "LIMIT"
    assert intent.price == 49_000
    assert intent.margin == pytest.approx(50.0)


def test_multi_coin_template_defaults_to_first_pair():
    t = _template(pair=None, pairs=["SOLUSDT", "ETHUSDT"])
    assert resolve(t, None, 100).symbol == "SOLUSDT"


def test_leverage_override_beats_template():
    intent = resolve(_template(leverage=1), OrderRequest(leverage=10), 50_000)
    assert intent.leverage == 10
    assert intent.margin == pytest.approx(100.0)
    assert intent.quantity == pytest.approx(0.02)


def test_exit_rule_override_beats_template():
    t = _template(take_profit=ExitRule(enabled=True, mode="PERCENT", value=2))
    req = OrderRequest(take_profit=ExitRule(enabled=True, mode="PERCENT", value=5), stop_loss=ExitRule(True, "PRICE", 48_000))
    intent = resolve(t, req, 50_000)
    assert intent.take_profit.price == pytest.approx(52_500)
    assert intent.stop_loss.price == 48_000


@pytest.mark.parametrize("field", ["size", "leverage"])
@pytest.mark.parametrize("bad", [float("nan"), float("inf"), "abc"])
def test_non_finite_override_is_rejected_not_defaulted(field, bad):
    with pytest.raises(ValidationError):
        resolve(_template(), OrderRequest(**{field: bad}), 50_000)


def test_leverage_override_below_one_is_rejected():
    with pytest.raises(ValidationError):
        resolve(_template(), OrderRequest(leverage=0.5), 50_000)


@pytest.mark.parametrize(
    "side,tp,sl",
    [("Long", 51_000, 49_500), ("Short", 49_000, 50_500)],
)
def test_percent_exits_follow_direction(side, tp, sl):
    t = _template(
        direction=side,
        take_profit=ExitRule(enabled=True, mode="PERCENT", value=2),
        stop_loss=ExitRule(enabled=True, mode="PERCENT", value=1),
    )
    intent = resolve(t, None, 50_000)
    assert intent.take_profit.price == pytest.approx(tp)
    assert intent.stop_loss.price == pytest.approx(sl)


def test_profit_exit_is_relative_to_margin_and_leverage():
    # 10 USDT on 100 margin at 5x is a 2% move
    t = _template(take_profit=ExitRule(enabled=True, mode="PROFIT", value=10))
    intent = resolve(t, None, 50_000)
    assert intent.take_profit.price == pytest.approx(51_000)


def test_disabled_exits_are_absent():
    intent = resolve(_template(), None, 50_000)
    assert intent.take_profit is None
    assert intent.stop_loss is None


@pytest.mark.parametrize("price", [None, 0, -1, float("nan"), "abc"])
def test_missing_price_fails(price):
    with pytest.raises(ValidationError):
        resolve(_template(), None, price)


def test_override_price_used_when_market_price_missing():
    intent = resolve(_template(), OrderRequest(price=20_000), None)
    assert intent.price == 20_000


def test_normalize_side():
    assert normalize_side("BUY") == "LONG"
    assert normalize_side("sell") == "SHORT"
    assert normalize_side("Auto") == "LONG"
    with pytest.raises(ValidationError):
        normalize_side("sideways")


# ---------------- service ----------------


def test_service_round_trip_keeps_created_at():
    svc = TemplateService(MemoryRecordStore())
    saved = svc.save({"name": "scalp", "pair": "btcusdt", "size": 25})
    assert saved.pair == "BTCUSDT"

    saved.size = 30
    updated = svc.save(saved)
    assert updated.created_at == saved.created_at
    assert svc.get(saved.id).size == 30
    assert [t.id for t in svc.list()] == [saved.id]

    assert svc.delete(saved.id)
    assert svc.get(saved.id) is None


def test_service_rejects_bad_templates():
    svc = TemplateService(MemoryRecordStore())
    with pytest.raises(ValidationError):
        svc.save({"name": "x", "pairs": ["BTCUSDT", "ETHUSDT"], "pair": "BTCUSDT"})
    with pytest.raises(ValidationError):
        svc.save({"name": "x", "size": 0})
    with pytest.raises(ValidationError):
        svc.save({"name": "x", "size_mode": "LOTS"})
