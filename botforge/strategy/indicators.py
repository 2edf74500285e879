from __future__ import annotations

import math
from typing import List, Optional, Sequence

from botforge.runner.models import Candle


def _rsi_from_avgs(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        # flat series has no direction
        return 50.0 if avg_gain == 0 else 100.0
    rs = avg_gain / avg_loss
    return 100 - (100 / (1 + rs))


def rsi_series(closes: Sequence[float], period: int = 14) -> List[Optional[float]]:
    """
    Wilder RSI for every close. Entries before `period` changes are None.
    Seed = plain average of the first `period` changes, then
    avg = (avg * (period - 1) + value) / period.
    """
    if period < 1:
        raise ValueError("period must be >= 1")

    out: List[Optional[float]] = [None] * len(closes)
    if len(closes) < period + 1:
        return out

    gains = 0.0
    losses = 0.0
    for i in range(1, period + 1):
        diff = closes[i] - closes[i - 1]
        if diff >= 0:
            gains += diff
        else:
            losses -= diff

    avg_gain = gains / period
    avg_loss = losses / period
    out[period] = _rsi_from_avgs(avg_gain, avg_loss)

    for i in range(period + 1, len(closes)):
        diff = closes[i] - closes[i - 1]
        gain = diff if diff > 0 else 0.0
        loss = -diff if diff < 0 else 0.0
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period
        out[i] = _rsi_from_avgs(avg_gain, avg_loss)

    return out


def rsi(closes: Sequence[float], period: int = 14) -> float:
    values = rsi_series(closes, period)
    if not values or values[-1] is None:
        raise ValueError("not_enough_data")
    return float(values[-1])


def _valid(c: Candle) -> bool:
    try:
        return math.isfinite(float(c.open)) and math.isfinite(float(c.close))
    except (TypeError, ValueError):
        return False


def consecutive_count(candles: Sequence[Candle], colour: str) -> int:
    """
    Same-colour streak ending at the latest candle.
    Malformed candles are skipped; a neutral or opposite candle ends the streak.
    """
    colour = colour.upper()
    count = 0
    for c in reversed(candles):
        if not _valid(c):
            continue
        if c.colour == colour:
            count += 1
        else:
            break
    return count
