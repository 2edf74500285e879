from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Callable, Dict, Optional, Set

from botforge.core import events as ev
from botforge.core.config import settings
from botforge.core.events import EventBus
from botforge.ops.context import clear_cycle_id, clear_family, set_cycle_id, set_family
from botforge.persistence.audit import Audit
from botforge.runner.feeds import MarketFeed
from botforge.strategy.base import Bot, StrategyEngine

log = logging.getLogger("botforge.scheduler")


class BotScheduler:
    """
    One polling loop per strategy family.

    A pass evaluates every bot of the family in list order. Evaluation is
    synchronous; executions run as tasks and a bot with an execution in flight
    is skipped until it finishes.
    """

    def __init__(
        self,
        engines: Dict[str, StrategyEngine],
        feed: MarketFeed,
        bus: Optional[EventBus] = None,
        audit: Optional[Audit] = None,
        interval_s: Optional[float] = None,
        fills: Optional[Callable[[Dict[str, float]], Any]] = None,
    ):
        self.engines = engines
        # matches resting paper orders against the latest prices before each pass
        self.fills = fills
        self.feed = feed
        self.bus = bus
        self.audit = audit
        self.interval_s = float(interval_s or settings.EVAL_INTERVAL_SECONDS)

        self._tasks: Dict[str, asyncio.Task] = {}
        self._in_flight: Set[str] = set()
        self.passes: Dict[str, int] = {name: 0 for name in engines}

    # ---------------- lifecycle ----------------

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks.values())

    def start(self) -> None:
        """Must be called from inside a running event loop."""
        for family in self.engines:
            task = self._tasks.get(family)
            if task is None or task.done():
                self._tasks[family] = asyncio.create_task(self._loop(family), name=f"eval-{family}")
        log.info("scheduler started families=%s interval=%.2fs", list(self.engines), self.interval_s)

    async def stop(self) -> None:
        tasks = list(self._tasks.values())
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        log.info("scheduler stopped")

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "interval_s": self.interval_s,
            "families": {
                name: {"running": name in self._tasks and not self._tasks[name].done(), "passes": self.passes[name]}
                for name in self.engines
            },
            "in_flight": sorted(self._in_flight),
        }

    async def _loop(self, family: str) -> None:
        while True:
            try:
                await self.run_once(family)
            except asyncio.CancelledError:
                raise
            except Exception:
                # a broken pass must not end the loop
                log.exception("%s evaluation pass crashed", family)
            await asyncio.sleep(self.interval_s)

    # ---------------- one pass ----------------

    async def run_once(self, family: str) -> Dict[str, Any]:
        engine = self.engines[family]
        cycle_id = str(uuid.uuid4())
        set_cycle_id(cycle_id)
        set_family(family)
        try:
            self._sync_fills()

            expired = []
            if hasattr(engine, "expire_due_bots"):
                expired = engine.expire_due_bots()

            tasks = []
            skipped = 0
            for listed in engine.list_bots():
                key = f"{family}:{listed.id}"
                if key in self._in_flight:
                    skipped += 1
                    continue
                # reserved before any await so an overlapping pass skips it
                self._in_flight.add(key)
                try:
                    market = await self._market(engine, listed)
                except asyncio.CancelledError:
                    self._in_flight.discard(key)
                    raise
                if market is None:
                    self._in_flight.discard(key)
                    continue
                # tasks run their synchronous evaluation in creation order
                tasks.append(asyncio.create_task(self._process(engine, listed.id, market, key)))

            results = await asyncio.gather(*tasks) if tasks else []
            self.passes[family] += 1
            summary = {
                "family": family,
                "cycle_id": cycle_id,
                "evaluated": len(tasks),
                "skipped_in_flight": skipped,
                "executions": sum(1 for r in results if r is not None),
                "expired": expired,
            }
            # quiet passes are not audited
            if self.audit is not None and (summary["executions"] or expired):
                self.audit.event(event_type="CYCLE_END", action=family, details=summary)
            return summary
        finally:
            clear_family()
            clear_cycle_id()

    def _sync_fills(self) -> None:
        if self.fills is None:
            return
        try:
            self.fills(self.feed.prices())
        except Exception:
            log.exception("resting order sync failed")

    async def _market(self, engine: StrategyEngine, bot: Bot):
        try:
            return await self.feed.market(bot.pair, getattr(bot, "timeframe", None))
        except Exception as e:
            log.warning("%s bot %s: market data unavailable for %s: %s", engine.family, bot.id, bot.pair, e)
            return None

    async def _process(self, engine: StrategyEngine, bot_id: str, market, key: str):
        try:
            # the listing may predate an execution that finished while market data was awaited
            bot = engine.get_bot(bot_id)
            if bot is None:
                return None
            return await engine.process(bot, market)
        except Exception as e:
            # one bot's failure never halts the others
            log.exception("%s bot %s evaluation failed", engine.family, bot_id)
            if self.bus is not None:
                self.bus.emit(ev.BOT_ERROR, {"bot_id": bot_id, "family": engine.family, "reason": repr(e)})
            return None
        finally:
            self._in_flight.discard(key)
