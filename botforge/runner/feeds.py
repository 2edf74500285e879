from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Protocol, Tuple

from botforge.core.config import settings
from botforge.exchange.base import PriceMap
from botforge.exchange.binance.client import BinanceClient
from botforge.runner.models import Candle, MarketData

log = logging.getLogger("botforge.feeds")


class MarketFeed(Protocol):
    async def market(self, pair: str, timeframe: Optional[str] = None) -> MarketData: ...

    def prices(self) -> PriceMap: ...


class StaticMarketFeed:
    """
    Prices and candles pushed from outside (tests, webhooks, a UI tick source).
    Candles are kept per (pair, timeframe), oldest first.
    """

    def __init__(self, max_candles: Optional[int] = None):
        self.max_candles = max_candles or settings.CANDLE_HISTORY_LIMIT
        self._prices: Dict[str, float] = {}
        self._candles: Dict[Tuple[str, str], List[Candle]] = {}

    def set_price(self, pair: str, price: float) -> None:
        self._prices[pair.upper()] = float(price)

    def set_candles(self, pair: str, timeframe: str, candles: List[Candle]) -> None:
        self._candles[(pair.upper(), timeframe)] = list(candles)[-self.max_candles:]
        if candles:
            self._prices.setdefault(pair.upper(), candles[-1].close)

    def push_candle(self, pair: str, timeframe: str, candle: Candle) -> None:
        """Append a candle, or replace the last one when it has the same open time."""
        rows = self._candles.setdefault((pair.upper(), timeframe), [])
        if rows and rows[-1].time == candle.time:
            rows[-1] = candle
        else:
            rows.append(candle)
        del rows[: -self.max_candles]
        self._prices[pair.upper()] = candle.close

    async def market(self, pair: str, timeframe: Optional[str] = None) -> MarketData:
        pair = pair.upper()
        candles = list(self._candles.get((pair, timeframe), [])) if timeframe else []
        return MarketData(price=self._prices.get(pair), candles=candles)

    def prices(self) -> PriceMap:
        return dict(self._prices)


class BinanceMarketFeed:
    """
    Public klines / ticker from Binance futures. The last kline returned by the
    exchange is still forming and is marked open.
    """

    def __init__(self, client: Optional[BinanceClient] = None, limit: Optional[int] = None):
        self.client = client or BinanceClient(base_url=settings.BINANCE_FAPI_BASE_URL)
        self.limit = limit or settings.CANDLE_HISTORY_LIMIT
        self._prices: Dict[str, float] = {}

    def _fetch(self, pair: str, timeframe: Optional[str]) -> MarketData:
        if not timeframe:
            price = self.client.last_price(pair)
            return MarketData(price=price)

        klines = self.client.klines(pair, interval=timeframe, limit=self.limit) or []
        candles = [Candle.from_kline(k) for k in klines]
        if candles:
            candles[-1].closed = False
        price = candles[-1].close if candles else self.client.last_price(pair)
        return MarketData(price=price, candles=candles)

    async def market(self, pair: str, timeframe: Optional[str] = None) -> MarketData:
        data = await asyncio.to_thread(self._fetch, pair.upper(), timeframe)
        if data.price is not None:
            self._prices[pair.upper()] = data.price
        return data

    def prices(self) -> PriceMap:
        return dict(self._prices)


def build_feed(source: Optional[str] = None) -> MarketFeed:
    source = (source or settings.MARKET_DATA_SOURCE).lower()
    if source == "binance":
        return BinanceMarketFeed()
    return StaticMarketFeed()
