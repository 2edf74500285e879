from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from botforge.core.config import settings
from botforge.core.errors import ValidationError
from botforge.persistence.record_store import CANDLE_STRIKE_BOTS
from botforge.risk.lock import LockService, LockState, check_lock
from botforge.runner.models import MarketData
from botforge.strategy.base import Bot, BotStatus, StrategyEngine, TriggerResult
from botforge.strategy.indicators import consecutive_count
from botforge.templates.resolve import OrderRequest, finite

log = logging.getLogger("botforge.strategy.candle_strike")

COLOURS = ("GREEN", "RED")


@dataclass
class CandleStrikeBot(Bot):
    candle_count: int = 3
    candle_colour: str = "GREEN"  # GREEN -> Long, RED -> Short
    timeframe: str = "1m"
    rearm: bool = True
    current_consecutive_count: int = 0
    last_triggered_candle_time: Optional[int] = None


class CandleStrikeEngine(StrategyEngine):
    """
    Consecutive-candle trigger guarded by a family-wide lock: while one bot's
    cool-off window is open, no other CandleStrike bot may fire.

    The lock is reserved synchronously inside evaluate() so the next bot in
    the same pass already sees it; a failed execution restores the previous
    lock state.
    """

    family = "candle_strike"
    collection = CANDLE_STRIKE_BOTS
    bot_cls = CandleStrikeBot
    armed = frozenset({BotStatus.WAITING})
    rearm_on_release = True

    def __init__(self, store, pipeline=None, safety=None, bus=None, clock=None, locks: Optional[LockService] = None):
        kwargs: Dict[str, Any] = {"pipeline": pipeline, "safety": safety, "bus": bus}
        if clock is not None:
            kwargs["clock"] = clock
        super().__init__(store, **kwargs)
        self.locks = locks or LockService(store)
        self._reservations: Dict[str, LockState] = {}

    def build_bot(self, config: Dict[str, Any]) -> CandleStrikeBot:
        bot: CandleStrikeBot = super().build_bot(config)
        bot.candle_colour = str(bot.candle_colour).upper()
        if not finite(bot.safety.cooldown):
            bot.safety.cooldown = settings.CANDLE_STRIKE_DEFAULT_COOLDOWN_SECONDS
            bot.safety.cooldown_unit = "Sec"
        return bot

    def validate(self, bot: CandleStrikeBot) -> None:
        super().validate(bot)
        if str(bot.candle_colour).upper() not in COLOURS:
            raise ValidationError(f"candle colour must be one of {COLOURS}")
        if int(bot.candle_count) < 1:
            raise ValidationError("candle count must be >= 1")

    def lock_status(self, now: Optional[int] = None):
        return self.locks.status(self.family, self.clock() if now is None else now)

    def evaluate(self, bot: CandleStrikeBot, market: MarketData) -> Optional[TriggerResult]:
        if bot.status not in self.armed:
            return None

        colour = str(bot.candle_colour).upper()
        closed = market.closed_candles()
        count = consecutive_count(closed, colour)
        bot.current_consecutive_count = count
        if not closed or count < int(bot.candle_count):
            return None

        candle = closed[-1]
        if bot.last_triggered_candle_time == candle.time:
            return None

        now = self.clock()
        state = self.locks.load(self.family)
        if not self.gate(bot, lock=check_lock(state, now), now=now).allowed:
            return None

        cooldown = bot.safety.cooldown_ms() or 0
        last_colour_exec = state.last_execution_time.get(colour, 0)
        if cooldown and now - last_colour_exec < cooldown:
            log.debug("candle strike %s: %s cool-off still running", bot.id, colour)
            return None

        price = finite(candle.close)
        if price is None:
            return None

        allowed, previous = self.locks.try_acquire(self.family, now, cooldown, colour, bot.id)
        if not allowed:
            return None
        self._reservations[bot.id] = previous

        return TriggerResult(
            bot_id=bot.id,
            family=self.family,
            reason=f"{count} consecutive {colour} candles",
            price=price,
            requests=[OrderRequest(direction="Long" if colour == "GREEN" else "Short", pair=bot.pair)],
            candle_time=candle.time,
            meta={"count": count, "colour": colour},
        )

    async def process(self, bot: CandleStrikeBot, market: MarketData):
        outcome = None
        try:
            outcome = await super().process(bot, market)
            return outcome
        finally:
            previous = self._reservations.pop(bot.id, None)
            if previous is not None and not (outcome is not None and outcome.ok):
                self.locks.restore(self.family, bot.id, previous)
                log.info("candle strike %s: lock released after failed execution", bot.id)

    def on_success(self, bot: CandleStrikeBot, trigger: TriggerResult, outcome) -> None:
        super().on_success(bot, trigger, outcome)
        bot.last_triggered_candle_time = trigger.candle_time
        bot.status = BotStatus.WAITING if bot.rearm else BotStatus.ACTIVE
