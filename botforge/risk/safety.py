from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from botforge.risk.lock import LockStatus

_UNIT_MS = {"SEC": 1000, "MIN": 60_000, "HOUR": 3_600_000}


def now_ms() -> int:
    return int(time.time() * 1000)


def utc_day(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc).date().isoformat()


@dataclass
class SafetySettings:
    cooldown: float = 0.0
    cooldown_unit: str = "Sec"  # Sec | Min | Hour
    one_trade_at_a_time: bool = False
    max_trades_per_day: int = 999

    def cooldown_ms(self) -> Optional[int]:
        """None when the value or the unit is malformed."""
        try:
            value = float(self.cooldown)
        except (TypeError, ValueError):
            return None
        unit = _UNIT_MS.get(str(self.cooldown_unit or "").strip().upper())
        if unit is None or not math.isfinite(value) or value < 0:
            return None
        return int(value * unit)

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> "SafetySettings":
        d = d or {}
        return cls(
            cooldown=d.get("cooldown", 0.0),
            cooldown_unit=d.get("cooldown_unit") or "Sec",
            one_trade_at_a_time=bool(d.get("one_trade_at_a_time", False)),
            max_trades_per_day=int(d.get("max_trades_per_day", 999)),
        )


@dataclass
class TradeCounters:
    active_orders_count: int = 0
    daily_trade_count: int = 0
    last_trigger_time: Optional[int] = None  # epoch ms
    last_reset_date: Optional[str] = None  # YYYY-MM-DD (UTC)

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> "TradeCounters":
        d = d or {}
        return cls(
            active_orders_count=int(d.get("active_orders_count") or 0),
            daily_trade_count=int(d.get("daily_trade_count") or 0),
            last_trigger_time=d.get("last_trigger_time"),
            last_reset_date=d.get("last_reset_date"),
        )


@dataclass(frozen=True)
class SafetyDecision:
    allowed: bool
    reason: Optional[str] = None
    reset_updates: Dict[str, Any] = field(default_factory=dict)


class SafetyTracker:
    """
    Gate in front of every bot execution. Checks short-circuit in order:
      1) status is armed
      2) family lock is free (when supplied)
      3) cooldown since last trigger
      4) one-trade-at-a-time
      5) daily count (after resetting a stale day)
    """

    def __init__(self, clock=now_ms):
        self.clock = clock

    def can_execute(
        self,
        bot,
        armed: Iterable[str],
        lock: Optional[LockStatus] = None,
        now: Optional[int] = None,
    ) -> SafetyDecision:
        now = self.clock() if now is None else now
        safety: SafetySettings = bot.safety
        counters: TradeCounters = bot.counters

        if bot.status not in set(armed):
            status = getattr(bot.status, "value", bot.status)
            return SafetyDecision(False, f"status {status} is not armed")

        if lock is not None and lock.locked:
            return SafetyDecision(
                False,
                f"family lock held by {lock.holder_key or 'another bot'} "
                f"({lock.remaining_ms} ms remaining)",
            )

        cooldown = safety.cooldown_ms()
        if cooldown is None:
            return SafetyDecision(False, "malformed cooldown")

        last = counters.last_trigger_time
        if last is not None:
            try:
                last_f = float(last)
            except (TypeError, ValueError):
                return SafetyDecision(False, "malformed last trigger time")
            if not math.isfinite(last_f):
                return SafetyDecision(False, "malformed last trigger time")
            if cooldown > 0 and now - last_f < cooldown:
                left = int(cooldown - (now - last_f))
                return SafetyDecision(False, f"cooldown active ({left} ms remaining)")

        if safety.one_trade_at_a_time and counters.active_orders_count > 0:
            return SafetyDecision(False, "one trade at a time: order still open")

        today = utc_day(now)
        reset: Dict[str, Any] = {}
        daily = counters.daily_trade_count
        if counters.last_reset_date != today:
            reset = {"daily_trade_count": 0, "last_reset_date": today}
            daily = 0

        if daily >= int(safety.max_trades_per_day):
            return SafetyDecision(False, "daily trade limit reached", reset)

        return SafetyDecision(True, None, reset)

    @staticmethod
    def apply_reset(bot, reset_updates: Optional[Dict[str, Any]]) -> None:
        for k, v in (reset_updates or {}).items():
            setattr(bot.counters, k, v)

    def record_execution(
        self,
        bot,
        now: Optional[int] = None,
        reset_updates: Optional[Dict[str, Any]] = None,
        orders: int = 1,
    ) -> None:
        now = self.clock() if now is None else now
        self.apply_reset(bot, reset_updates)
        if bot.counters.last_reset_date is None:
            bot.counters.last_reset_date = utc_day(now)
        bot.counters.last_trigger_time = int(now)
        bot.counters.daily_trade_count += 1
        bot.counters.active_orders_count += max(0, int(orders))
