from __future__ import annotations

import dataclasses
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Type, TypeVar

from botforge.core.errors import ValidationError
from botforge.core.events import EventBus
from botforge.persistence.record_store import RecordStore
from botforge.risk.lock import LockStatus
from botforge.risk.safety import SafetyDecision, SafetySettings, SafetyTracker, TradeCounters, now_ms
from botforge.runner.models import MarketData
from botforge.templates.resolve import OrderRequest

log = logging.getLogger("botforge.strategy")


class BotStatus(str, Enum):
    WAITING = "WAITING"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    STOPPED = "STOPPED"
    EXPIRED = "EXPIRED"
    CLOSED = "CLOSED"

    @classmethod
    def normalize(cls, value: Any) -> "BotStatus":
        """Accepts legacy spellings (Waiting, active, Stopped...)."""
        if isinstance(value, BotStatus):
            return value
        s = str(value or "").strip().upper()
        try:
            return cls(s)
        except ValueError:
            raise ValidationError(f"unknown bot status: {value}") from None


TERMINAL = frozenset({BotStatus.EXPIRED, BotStatus.CLOSED})

OPEN = "OPEN"
CLOSE = "CLOSE"


@dataclass
class Bot:
    """
    Fields every family shares. Family bots subclass this and add their
    parameters; safety config and counters are embedded, not inherited.
    """

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    pair: str = "BTCUSDT"
    template_id: Optional[str] = None
    status: BotStatus = BotStatus.WAITING
    safety: SafetySettings = field(default_factory=SafetySettings)
    counters: TradeCounters = field(default_factory=TradeCounters)
    created_at: int = field(default_factory=lambda: int(time.time() * 1000))
    last_error: Optional[str] = None

    @classmethod
    def coerce(cls, name: str, value: Any) -> Any:
        """Per-field conversion from stored form. Families extend this for nested types."""
        if name == "status":
            return BotStatus.normalize(value)
        if name == "safety":
            return value if isinstance(value, SafetySettings) else SafetySettings.from_dict(value)
        if name == "counters":
            return value if isinstance(value, TradeCounters) else TradeCounters.from_dict(value)
        if name == "pair" and value:
            return str(value).strip().upper()
        return value

    @classmethod
    def from_dict(cls, d: Dict[str, Any]):
        known = {f.name for f in dataclasses.fields(cls)}
        kwargs = {k: cls.coerce(k, v) for k, v in d.items() if k in known and v is not None}
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        d = dataclasses.asdict(self)
        d["status"] = self.status.value
        return d


@dataclass
class TriggerResult:
    bot_id: str
    family: str
    reason: str
    price: float
    requests: List[OrderRequest] = field(default_factory=list)
    action: str = OPEN  # OPEN / CLOSE
    candle_time: Optional[int] = None
    meta: Dict[str, Any] = field(default_factory=dict)


B = TypeVar("B", bound=Bot)


class StrategyEngine:
    """
    One engine per bot family.

    - CRUD over the family collection
    - evaluate(): synchronous, never awaits, returns a trigger or None
    - process(): evaluate + pipeline + apply outcome, never raises into the loop
    """

    family: str = "base"
    collection: str = ""
    bot_cls: Type[Bot] = Bot
    armed: FrozenSet[BotStatus] = frozenset({BotStatus.WAITING})
    initial_status: BotStatus = BotStatus.WAITING
    # status after a successful execution (None keeps current)
    fired_status: Optional[BotStatus] = BotStatus.ACTIVE
    # ACTIVE -> WAITING once the last live order of the bot is gone
    rearm_on_release: bool = False

    def __init__(
        self,
        store: RecordStore,
        pipeline=None,
        safety: Optional[SafetyTracker] = None,
        bus: Optional[EventBus] = None,
        clock=now_ms,
    ):
        self.store = store
        self.pipeline = pipeline
        self.clock = clock
        self.safety = safety or SafetyTracker(clock=clock)
        self.bus = bus

    # ---------------- CRUD ----------------

    def build_bot(self, config: Dict[str, Any]) -> Bot:
        """Validate config and return a new bot. Families override to add derived state."""
        cfg = dict(config)
        cfg.pop("id", None)
        cfg.pop("counters", None)
        cfg["status"] = self.initial_status
        return self.bot_cls.from_dict(cfg)

    def validate(self, bot: Bot) -> None:
        if not bot.pair:
            raise ValidationError("pair is required")

    def create_bot(self, config: Dict[str, Any]) -> Bot:
        bot = self.build_bot(config)
        self.validate(bot)
        self.store.insert(self.collection, bot.to_dict(), first=True)
        log.info("%s bot created id=%s pair=%s", self.family, bot.id, bot.pair)
        return bot

    def get_bot(self, bot_id: str) -> Optional[Bot]:
        raw = self.store.get_by_id(self.collection, bot_id)
        return self.bot_cls.from_dict(raw) if raw else None

    def list_bots(self) -> List[Bot]:
        return [self.bot_cls.from_dict(r) for r in self.store.get_all(self.collection)]

    def update_bot(self, bot_id: str, updates: Dict[str, Any]) -> Optional[Bot]:
        current = self.store.get_by_id(self.collection, bot_id)
        if current is None:
            return None
        patch = {k: v for k, v in updates.items() if k not in ("id", "counters", "created_at")}
        merged = dict(current)
        merged.update(patch)
        bot = self.bot_cls.from_dict(merged)
        self.validate(bot)
        self.store.update_by_id(self.collection, bot_id, bot.to_dict())
        return bot

    def delete_bot(self, bot_id: str) -> bool:
        ok = self.store.delete_by_id(self.collection, bot_id)
        if ok:
            log.info("%s bot deleted id=%s", self.family, bot_id)
        return ok

    def toggle_bot(self, bot_id: str) -> Optional[Bot]:
        bot = self.get_bot(bot_id)
        if bot is None:
            return None
        new_status = self.toggled_status(bot.status)
        if new_status != bot.status:
            bot.status = new_status
            self.save_bot(bot)
        return bot

    def toggled_status(self, status: BotStatus) -> BotStatus:
        if status in TERMINAL:
            return status
        if status == BotStatus.PAUSED:
            return BotStatus.WAITING
        return BotStatus.PAUSED

    def save_bot(self, bot: Bot) -> bool:
        """Write back. A bot deleted in the meantime stays deleted."""
        return self.store.update_by_id(self.collection, bot.id, bot.to_dict()) is not None

    def release_order(self, bot_id: str) -> Optional[Bot]:
        bot = self.get_bot(bot_id)
        if bot is None:
            return None
        bot.counters.active_orders_count = max(0, bot.counters.active_orders_count - 1)
        if (
            self.rearm_on_release
            and bot.status == BotStatus.ACTIVE
            and bot.counters.active_orders_count == 0
        ):
            bot.status = BotStatus.WAITING
        self.save_bot(bot)
        return bot

    # ---------------- evaluation ----------------

    def evaluate(self, bot: Bot, market: MarketData) -> Optional[TriggerResult]:
        raise NotImplementedError

    def gate(self, bot: Bot, lock: Optional[LockStatus] = None, now: Optional[int] = None) -> SafetyDecision:
        decision = self.safety.can_execute(bot, self.armed, lock=lock, now=now)
        if decision.reset_updates:
            self.safety.apply_reset(bot, decision.reset_updates)
        if not decision.allowed:
            log.debug("%s bot %s blocked: %s", self.family, bot.id, decision.reason)
        return decision

    async def process(self, bot: Bot, market: MarketData):
        """
        Runs one evaluation for `bot`. Returns the pipeline outcome when an
        execution was attempted, else None.
        """
        before = bot.to_dict()
        trigger = self.evaluate(bot, market)
        if trigger is None:
            if bot.to_dict() != before:
                self.save_bot(bot)
            return None

        # evaluation side effects (candle markers, expiry) are persisted before awaiting
        if not self.save_bot(bot):
            return None

        dispatched = bot.to_dict()
        outcome = await self.pipeline.execute_trigger(bot, trigger)

        current = self.get_bot(bot.id)
        if current is None:
            log.info("%s bot %s deleted while executing; result dropped", self.family, bot.id)
            return outcome

        # orders may have been closed while awaiting
        bot.counters.active_orders_count = current.counters.active_orders_count
        self.apply_outcome(bot, trigger, outcome)

        # write back only what the outcome changed; edits made in flight survive
        after = bot.to_dict()
        patch = {k: v for k, v in after.items() if v != dispatched.get(k)}
        if "status" in patch and current.status.value != dispatched["status"]:
            # user toggled the bot while the order was in flight
            del patch["status"]
        if patch:
            self.store.update_by_id(self.collection, bot.id, patch)
        return outcome

    def apply_outcome(self, bot: Bot, trigger: TriggerResult, outcome) -> None:
        if outcome.ok:
            self.on_success(bot, trigger, outcome)
        else:
            self.on_failure(bot, trigger, outcome)

    def on_success(self, bot: Bot, trigger: TriggerResult, outcome) -> None:
        now = self.clock()
        self.safety.record_execution(bot, now=now, orders=outcome.placed_count)
        bot.last_error = None
        if self.fired_status is not None:
            bot.status = self.fired_status
        log.info(
            "%s bot %s executed %s @ %s (%s)",
            self.family,
            bot.id,
            trigger.action,
            trigger.price,
            trigger.reason,
        )

    def on_failure(self, bot: Bot, trigger: TriggerResult, outcome) -> None:
        bot.last_error = outcome.reason
        log.warning("%s bot %s execution failed: %s", self.family, bot.id, outcome.reason)
