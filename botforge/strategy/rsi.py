from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from botforge.core.errors import ValidationError
from botforge.persistence.record_store import RSI_BOTS
from botforge.runner.models import MarketData
from botforge.strategy.base import Bot, BotStatus, StrategyEngine, TriggerResult
from botforge.strategy.indicators import rsi_series
from botforge.templates.resolve import OrderRequest, finite

log = logging.getLogger("botforge.strategy.rsi")

OVERSOLD = "Oversold"
OVERBOUGHT = "Overbought"
TOUCHES = "Touches"
CROSSES = "Crosses"


def check_rsi_trigger(
    current: Optional[float],
    previous: Optional[float],
    trigger_type: str,
    threshold: float,
    trigger_mode: str,
) -> bool:
    """
    Touches: level-triggered (rsi <= threshold oversold, >= overbought).
    Crosses: edge-triggered, previous value on the other side of threshold.
    """
    curr = finite(current)
    thr = finite(threshold)
    if curr is None or thr is None:
        return False

    if trigger_mode == CROSSES:
        prev = finite(previous)
        if prev is None:
            return False
        if trigger_type == OVERSOLD:
            return prev > thr and curr <= thr
        return prev < thr and curr >= thr

    if trigger_type == OVERSOLD:
        return curr <= thr
    return curr >= thr


def trade_direction(trigger_type: str, manual_direction: Optional[str]) -> str:
    if manual_direction and manual_direction != "Auto":
        return manual_direction
    return "Long" if trigger_type == OVERSOLD else "Short"


@dataclass
class RsiBot(Bot):
    rsi_length: int = 14
    rsi_value: float = 30.0
    trigger_type: str = OVERSOLD
    trigger_mode: str = TOUCHES
    direction: str = "Auto"  # Auto / Long / Short
    timeframe: str = "1m"
    last_rsi: Optional[float] = None
    last_triggered_candle_time: Optional[int] = None
    trigger_metadata: Optional[Dict[str, Any]] = None


class RsiEngine(StrategyEngine):
    family = "rsi"
    collection = RSI_BOTS
    bot_cls = RsiBot
    # re-arms immediately: ACTIVE keeps firing on later candles
    armed = frozenset({BotStatus.WAITING, BotStatus.ACTIVE})

    def validate(self, bot: RsiBot) -> None:
        super().validate(bot)
        errors = []
        if not bot.rsi_length or int(bot.rsi_length) < 2:
            errors.append("Invalid RSI length")
        value = finite(bot.rsi_value)
        if value is None or value < 1 or value > 99:
            errors.append("Invalid RSI threshold")
        if bot.trigger_type not in (OVERSOLD, OVERBOUGHT):
            errors.append(f"Invalid trigger type: {bot.trigger_type}")
        if bot.trigger_mode not in (TOUCHES, CROSSES):
            errors.append(f"Invalid trigger mode: {bot.trigger_mode}")
        if bot.direction not in ("Auto", "Long", "Short"):
            errors.append(f"Invalid direction: {bot.direction}")
        if int(bot.safety.max_trades_per_day) < 1:
            errors.append("At least 1 trade per day required")
        if errors:
            raise ValidationError("; ".join(errors), details={"errors": errors})

    def evaluate(self, bot: RsiBot, market: MarketData) -> Optional[TriggerResult]:
        if bot.status not in self.armed:
            return None

        closed = [c for c in market.closed_candles() if finite(c.close) is not None]
        period = int(bot.rsi_length)
        if len(closed) < period + 1:
            return None

        values = rsi_series([float(c.close) for c in closed], period)
        current = values[-1]
        previous = values[-2] if len(values) > 1 else None
        bot.last_rsi = current

        candle = closed[-1]
        if bot.last_triggered_candle_time == candle.time:
            return None

        if not check_rsi_trigger(current, previous, bot.trigger_type, bot.rsi_value, bot.trigger_mode):
            return None

        if not self.gate(bot).allowed:
            return None

        direction = trade_direction(bot.trigger_type, bot.direction)
        return TriggerResult(
            bot_id=bot.id,
            family=self.family,
            reason=f"RSI {current:.2f} {bot.trigger_mode.lower()} {bot.rsi_value} ({bot.trigger_type})",
            price=float(candle.close),
            requests=[OrderRequest(direction=direction, pair=bot.pair)],
            candle_time=candle.time,
            meta={"rsi": current, "previous_rsi": previous},
        )

    def on_success(self, bot: RsiBot, trigger: TriggerResult, outcome) -> None:
        super().on_success(bot, trigger, outcome)
        bot.last_triggered_candle_time = trigger.candle_time
        bot.trigger_metadata = {
            "trigger_rsi": trigger.meta.get("rsi"),
            "trigger_condition": bot.trigger_type,
            "threshold": bot.rsi_value,
            "trigger_time": self.clock(),
        }
