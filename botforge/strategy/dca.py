from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from botforge.core.errors import ValidationError
from botforge.persistence.record_store import DCA_BOTS, DCA_TRADES
from botforge.runner.models import MarketData
from botforge.strategy.base import CLOSE, Bot, BotStatus, StrategyEngine, TERMINAL, TriggerResult
from botforge.templates.resolve import OrderRequest, finite

log = logging.getLogger("botforge.strategy.dca")

MIN_STEPS = 2
MAX_STEPS = 50
MAX_LEVERAGE = 125


@dataclass
class DcaStep:
    number: int
    deviation: float  # percent from the initial entry price
    size: float  # margin in quote currency
    filled: bool = False
    fill_price: Optional[float] = None


def auto_steps(
    base_amount: float,
    count: int,
    first_deviation: float = 1.0,
    step_deviation: Optional[float] = None,
    deviation_multiplier: float = 1.0,
    size_multiplier: float = 1.0,
) -> List[DcaStep]:
    """
    Cumulative deviations: d0 = first, d_i = d_{i-1} + step * dev_mult^i.
    Sizes: s0 = base, s_i = s_{i-1} * size_mult.
    """
    step_deviation = first_deviation if step_deviation is None else step_deviation
    steps: List[DcaStep] = []
    deviation = 0.0
    size = base_amount
    for i in range(int(count)):
        if i == 0:
            deviation = first_deviation
            size = base_amount
        else:
            deviation += step_deviation * deviation_multiplier**i
            size = size * size_multiplier
        steps.append(DcaStep(number=i + 1, deviation=deviation, size=size))
    return steps


def weighted_average(avg: float, coins: float, price: float, new_coins: float) -> float:
    total = coins + new_coins
    if total <= 0:
        return price
    return (avg * coins + price * new_coins) / total


@dataclass
class DcaBot(Bot):
    direction: str = "Long"  # Long / Short
    market_type: str = "Futures"
    base_amount: float = 0.0
    leverage: float = 1.0
    take_profit_percent: float = 0.0
    dca_mode: str = "Auto"  # Auto / Custom
    max_dca_orders: int = 5
    price_deviation: float = 1.0
    step_deviation: Optional[float] = None
    price_dev_multiplier: float = 1.0
    order_size_multiplier: float = 1.0
    custom_steps: List[Dict[str, float]] = field(default_factory=list)

    steps: List[DcaStep] = field(default_factory=list)
    entry_price: Optional[float] = None
    average_price: Optional[float] = None
    total_size_coins: float = 0.0
    total_invested: float = 0.0
    dca_orders_filled: int = 0
    close_price: Optional[float] = None
    close_reason: Optional[str] = None
    closed_at: Optional[int] = None

    @classmethod
    def coerce(cls, name: str, value: Any) -> Any:
        if name == "steps":
            return [v if isinstance(v, DcaStep) else DcaStep(**v) for v in value]
        return super().coerce(name, value)

    @property
    def is_long(self) -> bool:
        return str(self.direction).lower() == "long"

    def unrealized_pnl(self, price: float) -> float:
        if not self.average_price:
            return 0.0
        diff = price - self.average_price
        return (diff if self.is_long else -diff) * self.total_size_coins


def validate_dca(bot: DcaBot) -> List[str]:
    errors: List[str] = []
    if not bot.pair:
        errors.append("Please select a trading pair.")
    if bot.direction not in ("Long", "Short"):
        errors.append("Invalid direction selected.")
    if not finite(bot.base_amount) or bot.base_amount <= 0:
        errors.append("Base amount must be greater than 0.")
    if bot.market_type == "Futures":
        lev = finite(bot.leverage)
        if lev is None or lev < 1 or lev > MAX_LEVERAGE:
            errors.append(f"Leverage must be between 1x and {MAX_LEVERAGE}x.")
    if not finite(bot.take_profit_percent) or bot.take_profit_percent <= 0:
        errors.append("Take Profit % must be greater than 0.")

    if bot.dca_mode == "Custom":
        count = len(bot.custom_steps)
        last = 0.0
        for i, step in enumerate(bot.custom_steps, start=1):
            dev = finite(step.get("deviation"))
            size = finite(step.get("size"))
            if dev is None or dev <= last:
                errors.append(f"DCA Order #{i}: Deviation must be increasing.")
            if size is None or size <= 0:
                errors.append(f"DCA Order #{i}: Size must be greater than 0.")
            last = dev if dev is not None else last
    elif bot.dca_mode == "Auto":
        count = int(bot.max_dca_orders)
    else:
        errors.append(f"Unknown DCA mode: {bot.dca_mode}")
        count = 0

    if bot.dca_mode in ("Auto", "Custom") and not (MIN_STEPS <= count <= MAX_STEPS):
        errors.append(f"Max DCA orders must be between {MIN_STEPS} and {MAX_STEPS}.")
    return errors


class DcaEngine(StrategyEngine):
    family = "dca"
    collection = DCA_BOTS
    bot_cls = DcaBot
    armed = frozenset({BotStatus.ACTIVE})
    initial_status = BotStatus.ACTIVE
    fired_status = None

    def validate(self, bot: DcaBot) -> None:
        errors = validate_dca(bot)
        if errors:
            raise ValidationError("; ".join(errors), details={"errors": errors})

    def build_bot(self, config: Dict[str, Any]) -> DcaBot:
        cfg = dict(config)
        price = finite(cfg.pop("current_price", None))
        bot: DcaBot = super().build_bot(cfg)
        self.validate(bot)
        if price is None or price <= 0:
            raise ValidationError("current price is required to seed the base order")

        if bot.dca_mode == "Custom":
            bot.steps = [
                DcaStep(number=i, deviation=float(s["deviation"]), size=float(s["size"]))
                for i, s in enumerate(bot.custom_steps, start=1)
            ]
        else:
            bot.steps = auto_steps(
                bot.base_amount,
                bot.max_dca_orders,
                first_deviation=bot.price_deviation,
                step_deviation=bot.step_deviation,
                deviation_multiplier=bot.price_dev_multiplier,
                size_multiplier=bot.order_size_multiplier,
            )

        bot.entry_price = price
        bot.average_price = price
        bot.total_invested = bot.base_amount
        bot.total_size_coins = bot.base_amount * bot.leverage / price
        return bot

    def toggled_status(self, status: BotStatus) -> BotStatus:
        if status in TERMINAL:
            return status
        return BotStatus.STOPPED if status == BotStatus.ACTIVE else BotStatus.ACTIVE

    def _step_trigger_price(self, bot: DcaBot, step: DcaStep) -> float:
        if bot.is_long:
            return bot.entry_price * (1 - step.deviation / 100.0)
        return bot.entry_price * (1 + step.deviation / 100.0)

    def take_profit_price(self, bot: DcaBot) -> float:
        if bot.is_long:
            return bot.average_price * (1 + bot.take_profit_percent / 100.0)
        return bot.average_price * (1 - bot.take_profit_percent / 100.0)

    def evaluate(self, bot: DcaBot, market: MarketData) -> Optional[TriggerResult]:
        if bot.status not in self.armed:
            return None

        price = finite(market.price)
        if price is None or price <= 0 or not bot.entry_price or not bot.average_price:
            return None

        due = []
        for step in bot.steps:
            if step.filled:
                continue
            trigger_px = self._step_trigger_price(bot, step)
            if (bot.is_long and price <= trigger_px) or (not bot.is_long and price >= trigger_px):
                due.append(step)

        if due:
            if not self.gate(bot).allowed:
                return None
            return TriggerResult(
                bot_id=bot.id,
                family=self.family,
                reason=f"DCA step(s) {[s.number for s in due]} reached",
                price=price,
                requests=[
                    OrderRequest(
                        direction=bot.direction,
                        order_type="MARKET",
                        price=price,
                        size=step.size,
                        size_mode="USDT",
                        pair=bot.pair,
                        # the bot's own coin accounting assumes this leverage
                        leverage=bot.leverage,
                    )
                    for step in due
                ],
                meta={"steps": [s.number for s in due]},
            )

        tp = self.take_profit_price(bot)
        if (bot.is_long and price >= tp) or (not bot.is_long and price <= tp):
            return TriggerResult(
                bot_id=bot.id,
                family=self.family,
                reason="Take Profit",
                price=price,
                action=CLOSE,
                meta={"take_profit_price": tp},
            )
        return None

    def apply_outcome(self, bot: DcaBot, trigger: TriggerResult, outcome) -> None:
        if trigger.action == CLOSE:
            if outcome.ok:
                self.close_position(bot, trigger.price, trigger.reason)
            else:
                self.on_failure(bot, trigger, outcome)
            return

        by_number = {s.number: s for s in bot.steps}
        filled = 0
        for number, result in zip(trigger.meta.get("steps", []), outcome.results):
            step = by_number.get(number)
            if step is None or not result.ok:
                continue
            self.fill_step(bot, step, trigger.price)
            filled += 1

        if filled:
            self.safety.record_execution(bot, now=self.clock(), orders=filled)
            bot.last_error = None
        if filled < len(trigger.requests):
            self.on_failure(bot, trigger, outcome)

    def fill_step(self, bot: DcaBot, step: DcaStep, price: float) -> None:
        new_coins = step.size * bot.leverage / price
        bot.average_price = weighted_average(bot.average_price, bot.total_size_coins, price, new_coins)
        bot.total_size_coins += new_coins
        bot.total_invested += step.size
        bot.dca_orders_filled += 1
        step.filled = True
        step.fill_price = price

    def close_position(self, bot: DcaBot, price: float, reason: str) -> Dict[str, Any]:
        now = self.clock()
        pnl = bot.unrealized_pnl(price)
        invest = (bot.average_price * bot.total_size_coins) / (bot.leverage or 1)
        trade = {
            "id": f"trd-{uuid.uuid4()}",
            "bot_id": bot.id,
            "pair": bot.pair,
            "direction": bot.direction,
            "entry_price": bot.average_price,
            "exit_price": price,
            "size_coins": bot.total_size_coins,
            "pnl": pnl,
            "pnl_percent": (pnl / invest) * 100 if invest else 0.0,
            "reason": reason,
            "timestamp": now,
        }
        self.store.insert(DCA_TRADES, trade, first=True)

        bot.status = BotStatus.CLOSED
        bot.close_price = price
        bot.close_reason = reason
        bot.closed_at = now
        bot.counters.active_orders_count = 0
        log.info("dca bot %s closed @ %s pnl=%.4f (%s)", bot.id, price, pnl, reason)
        return trade

    def list_trades(self, bot_id: Optional[str] = None) -> List[Dict[str, Any]]:
        trades = self.store.get_all(DCA_TRADES)
        if bot_id:
            trades = [t for t in trades if t.get("bot_id") == bot_id]
        return trades
