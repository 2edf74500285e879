from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from botforge.core.errors import ValidationError
from botforge.persistence.record_store import MOMENTUM_BOTS
from botforge.runner.models import MarketData
from botforge.strategy.base import Bot, BotStatus, StrategyEngine, TriggerResult
from botforge.templates.resolve import OrderRequest, finite

log = logging.getLogger("botforge.strategy.momentum")

DIRECTION_MODES = ("Long Only", "Short Only", "Both")
DEFAULT_DOLLAR_AMOUNT = 50.0


@dataclass
class MomentumBot(Bot):
    dollar_amount: float = DEFAULT_DOLLAR_AMOUNT
    timeframe: str = "1m"
    direction_mode: str = "Both"
    last_triggered_candle_time: Optional[int] = None
    trigger_details: Optional[Dict[str, Any]] = None


class MomentumEngine(StrategyEngine):
    """
    Fires when a closed candle's body (close - open) moves by strictly more
    than `dollar_amount`. Direction follows the sign of the move.
    """

    family = "momentum"
    collection = MOMENTUM_BOTS
    bot_cls = MomentumBot
    armed = frozenset({BotStatus.WAITING})
    rearm_on_release = True

    def validate(self, bot: MomentumBot) -> None:
        super().validate(bot)
        amount = finite(bot.dollar_amount)
        if amount is None or amount <= 0:
            raise ValidationError("dollar amount must be > 0")
        if bot.direction_mode not in DIRECTION_MODES:
            raise ValidationError(f"direction mode must be one of {DIRECTION_MODES}")

    def evaluate(self, bot: MomentumBot, market: MarketData) -> Optional[TriggerResult]:
        if bot.status not in self.armed:
            return None

        closed = market.closed_candles()
        if not closed:
            return None
        candle = closed[-1]
        if bot.last_triggered_candle_time == candle.time:
            return None

        open_, close = finite(candle.open), finite(candle.close)
        threshold = finite(bot.dollar_amount)
        if open_ is None or close is None or threshold is None:
            return None

        delta = close - open_
        if not abs(delta) > threshold:
            return None

        signal = "LONG" if delta > 0 else "SHORT"
        if bot.direction_mode == "Long Only" and signal == "SHORT":
            return None
        if bot.direction_mode == "Short Only" and signal == "LONG":
            return None

        if not self.gate(bot).allowed:
            return None

        return TriggerResult(
            bot_id=bot.id,
            family=self.family,
            reason=f"candle moved {delta:+.2f} (> {threshold})",
            price=close,
            requests=[OrderRequest(direction="Long" if signal == "LONG" else "Short", pair=bot.pair)],
            candle_time=candle.time,
            meta={"delta": delta, "signal": signal, "open": open_},
        )

    def on_success(self, bot: MomentumBot, trigger: TriggerResult, outcome) -> None:
        super().on_success(bot, trigger, outcome)
        bot.last_triggered_candle_time = trigger.candle_time
        order = outcome.results[0].order if outcome.results else None
        bot.trigger_details = {
            "price": trigger.price,
            "delta": trigger.meta.get("delta"),
            "signal": trigger.meta.get("signal"),
            "time": self.clock(),
            "order_id": (order or {}).get("id"),
        }
