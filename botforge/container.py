from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from botforge.accounts.credentials import AccountStore, CredentialResolver
from botforge.core import events as ev
from botforge.core.config import settings
from botforge.core.events import EventBus
from botforge.exchange.base import Connector
from botforge.exchange.binance.connector import BinanceConnector
from botforge.exchange.demo import DemoConnector
from botforge.exchange.mexc.connector import MexcConnector
from botforge.execution.orders import OrderBook
from botforge.execution.pipeline import OrderPipeline
from botforge.execution.router import OrderRouter
from botforge.persistence.audit import Audit
from botforge.persistence.db import DB
from botforge.persistence.record_store import RecordStore, SqliteRecordStore
from botforge.risk.lock import LockService
from botforge.risk.safety import SafetyTracker, now_ms
from botforge.runner.feeds import MarketFeed, build_feed
from botforge.runner.scheduler import BotScheduler
from botforge.strategy.base import StrategyEngine
from botforge.strategy.candle_strike import CandleStrikeEngine
from botforge.strategy.dca import DcaEngine
from botforge.strategy.grid import GridEngine
from botforge.strategy.momentum import MomentumEngine
from botforge.strategy.rsi import RsiEngine
from botforge.templates.service import TemplateService

log = logging.getLogger("botforge.container")


class Container:
    """Wires stores, services, engines and the scheduler together."""

    def __init__(
        self,
        store: Optional[RecordStore] = None,
        feed: Optional[MarketFeed] = None,
        connectors: Optional[Dict[str, Connector]] = None,
        db: Optional[DB] = None,
        clock=now_ms,
    ):
        self.db = db or DB(settings.DB_PATH)
        self.store = store or SqliteRecordStore(self.db)
        self.bus = EventBus()
        self.audit = Audit(self.db, settings.AUDIT_JSONL_PATH)
        self.audit.attach(self.bus)
        self.feed = feed or build_feed()
        self.clock = clock

        self.accounts = AccountStore(self.store)
        self.resolver = CredentialResolver(self.store)
        self.templates = TemplateService(self.store)
        self.locks = LockService(self.store)
        self.safety = SafetyTracker(clock=clock)

        self.connectors: Dict[str, Connector] = connectors or {
            "demo": DemoConnector(bus=self.bus),
            "binance": BinanceConnector(),
            "mexc": MexcConnector(),
        }
        self.router = OrderRouter(self.store, self.resolver, self.connectors, self.bus)
        self.orders = OrderBook(self.store, self.router, self.bus)
        self.pipeline = OrderPipeline(
            self.templates,
            self.router,
            self.orders,
            self.bus,
            prices=self.feed.prices,
            locks=self.locks,
            clock=clock,
        )

        common: Dict[str, Any] = {"pipeline": self.pipeline, "safety": self.safety, "bus": self.bus, "clock": clock}
        engines = [
            GridEngine(self.store, **common),
            DcaEngine(self.store, **common),
            MomentumEngine(self.store, **common),
            RsiEngine(self.store, **common),
            CandleStrikeEngine(self.store, locks=self.locks, **common),
        ]
        self.engines: Dict[str, StrategyEngine] = {e.family: e for e in engines}
        self.scheduler = BotScheduler(
            self.engines, self.feed, bus=self.bus, audit=self.audit, fills=self.orders.sync_fills
        )

        self.bus.on(ev.ORDER_CLOSED, self._on_order_finished)
        self.bus.on(ev.ORDER_CANCELLED, self._on_order_finished)

    def engine(self, family: str) -> StrategyEngine:
        engine = self.engines.get(family)
        if engine is None:
            raise KeyError(family)
        return engine

    def _on_order_finished(self, order: Dict[str, Any]) -> None:
        """A bot's live order is gone: free its one-trade slot."""
        bot_id, family = order.get("bot_id"), order.get("bot_type")
        if not bot_id or family not in self.engines:
            return
        self.engines[family].release_order(bot_id)
