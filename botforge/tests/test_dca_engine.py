import asyncio

import pytest

from botforge.core.errors import ValidationError
from botforge.strategy.base import BotStatus
from botforge.strategy.dca import DcaStep, auto_steps, weighted_average


def test_weighted_average_is_weighted_mean():
    sizes = [1.0, 2.0, 3.0, 0.5]
    prices = [100.0, 90.0, 80.0, 120.0]

    avg, coins = prices[0], sizes[0]
    for k in range(1, len(sizes)):
        avg = weighted_average(avg, coins, prices[k], sizes[k])
        coins += sizes[k]
        expected = sum(s * p for s, p in zip(sizes[: k + 1], prices[: k + 1])) / sum(sizes[: k + 1])
        assert avg == pytest.approx(expected)


def test_auto_steps_cumulative_deviation_and_size():
    steps = auto_steps(10, 3, first_deviation=1.0, step_deviation=2.0, deviation_multiplier=2.0, size_multiplier=1.5)
    assert [s.deviation for s in steps] == [1.0, 5.0, 13.0]
    assert [s.size for s in steps] == pytest.approx([10.0, 15.0, 22.5])


def _dca(stack, template, **overrides):
    cfg = {
        "name": "btc dca",
        "pair": "BTCUSDT",
        "template_id": template.id,
        "direction": "Long",
        "base_amount": 100,
        "leverage": 1,
        "take_profit_percent": 2,
        "max_dca_orders": 3,
        "price_deviation": 1,
        "current_price": 10000,
    }
    cfg.update(overrides)
    return stack.engines["dca"].create_bot(cfg)


def test_create_seeds_base_position(stack, template):
    bot = _dca(stack, template)
    assert bot.entry_price == 10000
    assert bot.average_price == 10000
    assert bot.total_size_coins == pytest.approx(0.01)
    assert len(bot.steps) == 3
    assert bot.status == BotStatus.ACTIVE


def test_step_fill_moves_average(stack, template):
    bot = _dca(stack, template)
    stack.feed.set_price("BTCUSDT", 9850)

    asyncio.run(stack.scheduler.run_once("dca"))

    saved = stack.engines["dca"].get_bot(bot.id)
    assert saved.dca_orders_filled == 1
    assert saved.steps[0].filled
    # 0.01 coins @ 10000 + (100 / 9850) coins @ 9850
    new_coins = 100 / 9850
    expected = (0.01 * 10000 + new_coins * 9850) / (0.01 + new_coins)
    assert saved.average_price == pytest.approx(expected)
    assert len(stack.orders.list_orders(bot_id=bot.id)) == 1


def test_take_profit_closes_bot_and_records_trade(stack, template):
    bot = _dca(stack, template)
    stack.feed.set_price("BTCUSDT", 9850)
    asyncio.run(stack.scheduler.run_once("dca"))

    stack.feed.set_price("BTCUSDT", 10300)
    asyncio.run(stack.scheduler.run_once("dca"))

    saved = stack.engines["dca"].get_bot(bot.id)
    assert saved.status == BotStatus.CLOSED
    assert saved.close_reason == "Take Profit"
    assert stack.orders.list_orders(bot_id=bot.id) == []
    assert len(stack.orders.list_orders(status="closed", bot_id=bot.id)) == 1

    trades = stack.engines["dca"].list_trades(bot.id)
    assert len(trades) == 1
    assert trades[0]["pnl"] > 0


def test_dca_validation(stack, template):
    with pytest.raises(ValidationError):
        _dca(stack, template, direction="Both")
    with pytest.raises(ValidationError):
        _dca(stack, template, take_profit_percent=0)
    with pytest.raises(ValidationError):
        _dca(stack, template, dca_mode="Custom", custom_steps=[{"deviation": 2, "size": 10}, {"deviation": 1, "size": 10}])


def test_custom_steps_are_used(stack, template):
    bot = _dca(stack, template, dca_mode="Custom", custom_steps=[{"deviation": 2, "size": 10}, {"deviation": 5, "size": 20}])
    assert bot.steps == [DcaStep(number=1, deviation=2.0, size=10.0), DcaStep(number=2, deviation=5.0, size=20.0)]


def test_step_order_uses_bot_leverage(stack, template):
    assert template.leverage == 1
    bot = _dca(stack, template, leverage=10)
    assert bot.total_size_coins == pytest.approx(0.1)
    stack.feed.set_price("BTCUSDT", 9850)

    asyncio.run(stack.scheduler.run_once("dca"))

    [order] = stack.orders.list_orders(bot_id=bot.id)
    assert order["leverage"] == 10
    assert order["margin"] == pytest.approx(100)

    saved = stack.engines["dca"].get_bot(bot.id)
    assert order["quantity"] == pytest.approx(saved.total_size_coins - 0.1)
    assert order["quantity"] == pytest.approx(100 * 10 / 9850)


def test_short_steps_fire_above_entry_and_take_profit_below_average(stack, template):
    bot = _dca(stack, template, direction="Short")

    stack.feed.set_price("BTCUSDT", 10_050)
    asyncio.run(stack.scheduler.run_once("dca"))
    assert stack.orders.list_orders(bot_id=bot.id) == []

    stack.feed.set_price("BTCUSDT", 10_150)
    asyncio.run(stack.scheduler.run_once("dca"))

    saved = stack.engines["dca"].get_bot(bot.id)
    assert [s.filled for s in saved.steps] == [True, False, False]
    assert 10_000 < saved.average_price < 10_150
    [order] = stack.orders.list_orders(bot_id=bot.id)
    assert order["side"] == "SHORT"

    tp = saved.average_price * 0.98
    stack.feed.set_price("BTCUSDT", tp + 1)
    asyncio.run(stack.scheduler.run_once("dca"))
    assert stack.engines["dca"].get_bot(bot.id).status == BotStatus.ACTIVE

    stack.feed.set_price("BTCUSDT", tp - 1)
    asyncio.run(stack.scheduler.run_once("dca"))

    closed = stack.engines["dca"].get_bot(bot.id)
    assert closed.status == BotStatus.CLOSED
    [trade] = stack.engines["dca"].list_trades(bot.id)
    assert trade["direction"] == "Short"
    assert trade["pnl"] > 0
    assert stack.orders.list_orders(status="closed", bot_id=bot.id)[0]["pnl"] > 0
