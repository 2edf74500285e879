from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from botforge.core import events as ev
from botforge.core.config import settings
from botforge.core.errors import ConsistencyError, TradingError, ValidationError
from botforge.core.events import EventBus
from botforge.exchange.base import PriceMap
from botforge.execution.orders import OrderBook
from botforge.execution.router import ExecResult, OrderRouter
from botforge.risk.lock import LockService
from botforge.risk.safety import now_ms
from botforge.strategy.base import CLOSE, OPEN, TriggerResult
from botforge.templates.models import SizeMode, Template
from botforge.templates.resolve import OrderIntent, OrderRequest, resolve
from botforge.templates.service import TemplateService

log = logging.getLogger("botforge.pipeline")

LOCKED = "REJECTED_LOCKED"


@dataclass
class TriggerOutcome:
    action: str = OPEN
    results: List[ExecResult] = field(default_factory=list)
    closed: List[Dict[str, Any]] = field(default_factory=list)
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        if self.action == CLOSE:
            return self.reason is None
        return bool(self.results) and all(r.ok for r in self.results)

    @property
    def placed_count(self) -> int:
        return sum(1 for r in self.results if r.ok)

    def __post_init__(self) -> None:
        if self.reason is None:
            failed = [r.reason for r in self.results if not r.ok and r.reason]
            if failed:
                self.reason = failed[0]


class OrderPipeline:
    """
    Trigger -> template lookup -> (balance for PERCENT sizing) -> resolve -> route.

    A missing template is a logged no-op; the bot stays armed.
    """

    def __init__(
        self,
        templates: TemplateService,
        router: OrderRouter,
        orders: OrderBook,
        bus: Optional[EventBus] = None,
        prices: Optional[Callable[[], PriceMap]] = None,
        locks: Optional[LockService] = None,
        lock_families: Iterable[str] = ("candle_strike",),
        clock=now_ms,
    ):
        self.templates = templates
        self.router = router
        self.orders = orders
        self.bus = bus
        self.prices = prices or dict
        self.locks = locks
        self.lock_families = tuple(lock_families)
        self.clock = clock

    def _emit_error(self, bot_id: Optional[str], reason: str) -> None:
        if self.bus is not None:
            self.bus.emit(ev.BOT_ERROR, {"bot_id": bot_id, "reason": reason})

    def _price_map(self, symbol: str, price: float) -> PriceMap:
        prices = dict(self.prices() or {})
        prices.setdefault(symbol, price)
        return prices

    async def _balance_if_needed(self, template: Template, requests: List[OrderRequest]) -> Optional[float]:
        modes = {str(r.size_mode or template.size_mode).upper() for r in requests}
        if SizeMode.PERCENT.value not in modes:
            return None
        return await self.router.available_balance(template.user_id, template.account_id)

    async def _route(self, intent: OrderIntent) -> ExecResult:
        return await self.router.execute(intent, self._price_map(intent.symbol, intent.price))

    # ---------------- bot triggers ----------------

    async def execute_trigger(self, bot, trigger: TriggerResult) -> TriggerOutcome:
        if trigger.action == CLOSE:
            try:
                closed = await self.orders.close_bot_orders(bot.id, trigger.price, trigger.reason)
            except TradingError as e:
                self._emit_error(bot.id, e.reason)
                return TriggerOutcome(action=CLOSE, reason=e.reason)
            return TriggerOutcome(action=CLOSE, closed=closed)

        template = self.templates.get(bot.template_id)
        if template is None:
            err = ConsistencyError(f"template {bot.template_id} not found", details={"bot_id": bot.id})
            log.warning("%s bot %s: %s", trigger.family, bot.id, err.reason)
            self._emit_error(bot.id, err.reason)
            return TriggerOutcome(results=[ExecResult.failed(err)], reason=err.reason)

        try:
            balance = await self._balance_if_needed(template, trigger.requests)
        except TradingError as e:
            self._emit_error(bot.id, e.reason)
            return TriggerOutcome(results=[ExecResult.failed(e)], reason=e.reason)

        results: List[ExecResult] = []
        for req in trigger.requests:
            try:
                intent = resolve(template, req, trigger.price, balance)
            except ValidationError as e:
                self._emit_error(bot.id, e.reason)
                results.append(ExecResult.failed(e))
                continue
            intent.bot_id = bot.id
            intent.bot_type = trigger.family
            intent.source = "bot"
            intent.meta = {"trigger": trigger.reason, **trigger.meta}
            results.append(await self._route(intent))

        return TriggerOutcome(results=results)

    # ---------------- manual orders ----------------

    def _held_lock(self) -> Optional[str]:
        if self.locks is None:
            return None
        now = self.clock()
        for family in self.lock_families:
            status = self.locks.status(family, now)
            if status.locked:
                return f"{family} lock held by {status.holder_key} ({status.remaining_ms} ms remaining)"
        return None

    async def place_manual(
        self,
        template_id: str,
        overrides: Optional[OrderRequest] = None,
        price: Optional[float] = None,
    ) -> ExecResult:
        if settings.MANUAL_ORDERS_RESPECT_LOCK:
            held = self._held_lock()
            if held:
                return ExecResult(action=LOCKED, details={"reason": held})

        template = self.templates.get(template_id)
        if template is None:
            return ExecResult.failed(ConsistencyError(f"template {template_id} not found"))

        overrides = overrides or OrderRequest()
        try:
            balance = await self._balance_if_needed(template, [overrides])
            symbol = overrides.pair or template.pair or (template.pairs[0] if template.pairs else None)
            current = price if price is not None else (self.prices() or {}).get(symbol or "")
            intent = resolve(template, overrides, current, balance)
        except TradingError as e:
            return ExecResult.failed(e)

        intent.source = "manual"
        return await self._route(intent)
