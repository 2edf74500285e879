from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from botforge.core.errors import ValidationError
from botforge.persistence.record_store import GRID_BOTS
from botforge.runner.models import MarketData
from botforge.strategy.base import Bot, BotStatus, StrategyEngine, TERMINAL, TriggerResult
from botforge.templates.resolve import OrderRequest, finite

log = logging.getLogger("botforge.strategy.grid")

VALIDITY_MS = {
    "1h": 3_600_000,
    "4h": 14_400_000,
    "24h": 86_400_000,
    "7d": 604_800_000,
    "30d": 2_592_000_000,
}

MIN_GRID_LINES = 2
MAX_GRID_LINES = 100


def calculate_grid_levels(lower: float, upper: float, lines: int, mode: str = "Arithmetic") -> List[float]:
    """N lines -> N+1 levels from lower to upper inclusive."""
    if not lower or not upper or not lines or lower >= upper or lower <= 0:
        return []

    if str(mode).lower() == "geometric":
        ratio = (upper / lower) ** (1.0 / lines)
        return [lower * ratio**i for i in range(lines + 1)]

    step = (upper - lower) / lines
    return [lower + i * step for i in range(lines + 1)]


@dataclass
class GridLevel:
    index: int
    price: float
    side: str  # BUY / SELL
    status: str = "OPEN"  # OPEN / FILLED
    filled_at: Optional[int] = None
    order_id: Optional[str] = None


@dataclass
class GridBot(Bot):
    lower_price: float = 0.0
    upper_price: float = 0.0
    grid_lines: int = 10
    mode: str = "Arithmetic"  # Arithmetic / Geometric
    investment: float = 0.0
    validity: str = "Unlimited"
    expiry_time: Optional[int] = None
    creation_price: Optional[float] = None
    levels: List[GridLevel] = field(default_factory=list)
    total_trades: int = 0

    @classmethod
    def coerce(cls, name: str, value: Any) -> Any:
        if name == "levels":
            return [v if isinstance(v, GridLevel) else GridLevel(**v) for v in value]
        return super().coerce(name, value)

    def open_levels(self) -> List[GridLevel]:
        return [lvl for lvl in self.levels if lvl.status == "OPEN"]


class GridEngine(StrategyEngine):
    family = "grid"
    collection = GRID_BOTS
    bot_cls = GridBot
    armed = frozenset({BotStatus.ACTIVE})
    initial_status = BotStatus.ACTIVE
    fired_status = None

    def validate(self, bot: GridBot) -> None:
        super().validate(bot)
        errors = []
        lower = finite(bot.lower_price)
        upper = finite(bot.upper_price)
        if not lower or not upper:
            errors.append("Price range is required")
        elif lower <= 0:
            errors.append("Lower price must be greater than 0")
        elif lower >= upper:
            errors.append("Lower price must be less than higher price")
        if not (MIN_GRID_LINES <= int(bot.grid_lines) <= MAX_GRID_LINES):
            errors.append(f"Grid count must be between {MIN_GRID_LINES} and {MAX_GRID_LINES}")
        if not finite(bot.investment) or bot.investment <= 0:
            errors.append("Investment must be positive")
        if bot.validity != "Unlimited" and bot.validity not in VALIDITY_MS:
            errors.append(f"Unknown validity: {bot.validity}")
        if str(bot.mode).lower() not in ("arithmetic", "geometric"):
            errors.append(f"Unknown grid mode: {bot.mode}")
        if errors:
            raise ValidationError("; ".join(errors), details={"errors": errors})

    def build_bot(self, config: Dict[str, Any]) -> GridBot:
        cfg = dict(config)
        current_price = finite(cfg.pop("current_price", None))
        bot: GridBot = super().build_bot(cfg)
        self.validate(bot)
        if current_price is None or current_price <= 0:
            raise ValidationError("current price is required to place grid levels")

        bot.creation_price = current_price
        now = self.clock()
        bot.expiry_time = now + VALIDITY_MS[bot.validity] if bot.validity in VALIDITY_MS else None

        levels = []
        for i, px in enumerate(calculate_grid_levels(bot.lower_price, bot.upper_price, int(bot.grid_lines), bot.mode)):
            if px == current_price:
                continue
            levels.append(GridLevel(index=i, price=px, side="BUY" if px < current_price else "SELL"))
        bot.levels = levels
        return bot

    def toggled_status(self, status: BotStatus) -> BotStatus:
        if status in TERMINAL:
            return status
        return BotStatus.STOPPED if status == BotStatus.ACTIVE else BotStatus.ACTIVE

    def _expired(self, bot: GridBot, now: int) -> bool:
        return bot.expiry_time is not None and now >= int(bot.expiry_time)

    def expire_due_bots(self) -> List[str]:
        """Sweep: ACTIVE bots past their expiry become EXPIRED. Returns the ids."""
        now = self.clock()
        expired = []
        for bot in self.list_bots():
            if bot.status == BotStatus.ACTIVE and self._expired(bot, now):
                bot.status = BotStatus.EXPIRED
                self.save_bot(bot)
                expired.append(bot.id)
        if expired:
            log.info("grid bots expired: %s", expired)
        return expired

    def evaluate(self, bot: GridBot, market: MarketData) -> Optional[TriggerResult]:
        now = self.clock()
        if bot.status == BotStatus.ACTIVE and self._expired(bot, now):
            bot.status = BotStatus.EXPIRED
            return None

        if bot.status not in self.armed:
            return None

        price = finite(market.price)
        if price is None or price <= 0:
            return None

        crossed = [
            lvl
            for lvl in bot.open_levels()
            if (lvl.side == "BUY" and price <= lvl.price) or (lvl.side == "SELL" and price >= lvl.price)
        ]
        if not crossed:
            return None

        if not self.gate(bot, now=now).allowed:
            return None

        return TriggerResult(
            bot_id=bot.id,
            family=self.family,
            reason=f"{len(crossed)} grid level(s) crossed",
            price=price,
            requests=[
                OrderRequest(
                    direction="Long" if lvl.side == "BUY" else "Short",
                    order_type="LIMIT",
                    price=lvl.price,
                    pair=bot.pair,
                )
                for lvl in crossed
            ],
            meta={"levels": [lvl.index for lvl in crossed]},
        )

    def apply_outcome(self, bot: GridBot, trigger: TriggerResult, outcome) -> None:
        by_index = {lvl.index: lvl for lvl in bot.levels}
        filled = 0
        now = self.clock()
        for idx, result in zip(trigger.meta.get("levels", []), outcome.results):
            lvl = by_index.get(idx)
            if lvl is None or not result.ok:
                continue
            lvl.status = "FILLED"
            lvl.filled_at = now
            lvl.order_id = (result.order or {}).get("id")
            filled += 1

        if filled:
            self.safety.record_execution(bot, now=now, orders=filled)
            bot.total_trades += filled
            bot.last_error = None
        if filled < len(trigger.requests):
            bot.last_error = outcome.reason or "grid level order failed"
            log.warning("grid bot %s: %s of %s levels failed", bot.id, len(trigger.requests) - filled, len(trigger.requests))
