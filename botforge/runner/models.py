# botforge/runner/models.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class Candle:
    time: int  # open time, epoch ms
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0
    closed: bool = True

    @property
    def colour(self) -> str:
        """GREEN / RED / NEUTRAL."""
        if self.close > self.open:
            return "GREEN"
        if self.close < self.open:
            return "RED"
        return "NEUTRAL"

    @classmethod
    def from_kline(cls, k: list, closed: bool = True) -> "Candle":
        """
        Binance kline format:
        [openTime, open, high, low, close, volume, closeTime, ...]
        """
        return cls(
            time=int(k[0]),
            open=float(k[1]),
            high=float(k[2]),
            low=float(k[3]),
            close=float(k[4]),
            volume=float(k[5]),
            closed=closed,
        )


@dataclass
class MarketData:
    price: Optional[float] = None
    candles: List[Candle] = field(default_factory=list)

    def closed_candles(self) -> List[Candle]:
        return [c for c in self.candles if c.closed]
