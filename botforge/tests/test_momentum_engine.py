import asyncio

import pytest

from botforge.core.errors import ValidationError
from botforge.exchange.demo import DemoConnector
from botforge.runner.models import Candle
from botforge.strategy.base import BotStatus


def _candle(i, open_, close, closed=True):
    return Candle(time=60_000 * i, open=open_, high=max(open_, close), low=min(open_, close), close=close, closed=closed)


def _momentum(stack, template, **overrides):
    cfg = {
        "name": "btc momentum",
        "pair": "BTCUSDT",
        "template_id": template.id,
        "dollar_amount": 50,
        "timeframe": "1m",
    }
    cfg.update(overrides)
    return stack.engines["momentum"].create_bot(cfg)


def _run(stack):
    return asyncio.run(stack.scheduler.run_once("momentum"))


def test_move_equal_to_threshold_does_not_trigger(stack, template):
    bot = _momentum(stack, template)
    stack.feed.set_candles("BTCUSDT", "1m", [_candle(1, 100, 150)])

    _run(stack)

    assert stack.orders.list_orders() == []
    assert stack.engines["momentum"].get_bot(bot.id).status == BotStatus.WAITING


def test_move_above_threshold_triggers_long(stack, template):
    bot = _momentum(stack, template)
    stack.feed.set_candles("BTCUSDT", "1m", [_candle(1, 100, 150.01)])

    summary = _run(stack)

    assert summary["executions"] == 1
    orders = stack.orders.list_orders()
    assert len(orders) == 1
    assert orders[0]["side"] == "LONG"

    saved = stack.engines["momentum"].get_bot(bot.id)
    assert saved.status == BotStatus.ACTIVE
    assert saved.last_triggered_candle_time == 60_000
    assert saved.trigger_details["signal"] == "LONG"
    assert saved.trigger_details["order_id"] == orders[0]["id"]
    assert saved.counters.active_orders_count == 1


def test_down_move_opens_short(stack, template):
    _momentum(stack, template)
    stack.feed.set_candles("BTCUSDT", "1m", [_candle(1, 200, 120)])

    _run(stack)

    assert [o["side"] for o in stack.orders.list_orders()] == ["SHORT"]


@pytest.mark.parametrize(
    "mode,open_,close,fires",
    [
        ("Long Only", 200, 120, False),
        ("Long Only", 100, 180, True),
        ("Short Only", 100, 180, False),
        ("Short Only", 200, 120, True),
        ("Both", 200, 120, True),
    ],
)
def test_direction_mode_filters_signal(stack, template, mode, open_, close, fires):
    _momentum(stack, template, direction_mode=mode)
    stack.feed.set_candles("BTCUSDT", "1m", [_candle(1, open_, close)])

    _run(stack)

    assert bool(stack.orders.list_orders()) is fires


def test_forming_candle_is_ignored(stack, template):
    _momentum(stack, template)
    stack.feed.set_candles("BTCUSDT", "1m", [_candle(1, 100, 110), _candle(2, 100, 400, closed=False)])

    _run(stack)

    assert stack.orders.list_orders() == []


def test_same_candle_never_fires_twice(stack, template):
    bot = _momentum(stack, template)
    stack.feed.set_candles("BTCUSDT", "1m", [_candle(1, 100, 200)])
    _run(stack)

    # closing the order re-arms the bot
    order = stack.orders.list_orders()[0]
    asyncio.run(stack.orders.close_order(order["id"], 210.0))
    assert stack.engines["momentum"].get_bot(bot.id).status == BotStatus.WAITING

    _run(stack)
    assert stack.orders.list_orders() == []

    stack.feed.push_candle("BTCUSDT", "1m", _candle(2, 200, 300))
    _run(stack)
    assert len(stack.orders.list_orders()) == 1


def test_momentum_validation(stack, template):
    with pytest.raises(ValidationError):
        _momentum(stack, template, dollar_amount=0)
    with pytest.raises(ValidationError):
        _momentum(stack, template, direction_mode="Sideways")


class EditingDemo(DemoConnector):
    """Runs `edit` while the order is being placed."""

    def __init__(self, bus, edit):
        super().__init__(bus=bus)
        self.edit = edit

    async def place_order(self, intent, credentials, prices):
        self.edit()
        return await super().place_order(intent, credentials, prices)


def test_edit_made_during_execution_is_kept(stack, template):
    engine = stack.engines["momentum"]
    bot = _momentum(stack, template)
    stack.connectors["demo"] = EditingDemo(stack.bus, lambda: engine.update_bot(bot.id, {"dollar_amount": 999}))
    stack.feed.set_candles("BTCUSDT", "1m", [_candle(1, 100, 200)])

    _run(stack)

    saved = engine.get_bot(bot.id)
    assert saved.dollar_amount == 999
    assert saved.status == BotStatus.ACTIVE
    assert saved.last_triggered_candle_time == 60_000
    assert saved.counters.daily_trade_count == 1
