from __future__ import annotations

from typing import Iterable, Optional

from botforge.core.config import settings
from botforge.core.errors import InsufficientBalanceError, ValidationError
from botforge.exchange.base import PriceMap
from botforge.templates.resolve import OrderIntent, finite


def validate_sl_tp(
    side: str,
    entry_price: float,
    stop_loss: Optional[float],
    take_profit: Optional[float],
) -> None:
    """
    LONG: stop_loss < entry_price < take_profit
    SHORT: take_profit < entry_price < stop_loss
    Either level may be absent.
    """
    side_u = (side or "").upper()
    if side_u not in ("LONG", "SHORT"):
        raise ValidationError(f"Invalid side: {side}")

    if side_u == "LONG":
        if stop_loss is not None and not stop_loss < entry_price:
            raise ValidationError("Invalid SL for LONG")
        if take_profit is not None and not entry_price < take_profit:
            raise ValidationError("Invalid TP for LONG")
        return

    if take_profit is not None and not take_profit < entry_price:
        raise ValidationError("Invalid TP for SHORT")
    if stop_loss is not None and not entry_price < stop_loss:
        raise ValidationError("Invalid SL for SHORT")


def validate_order(
    intent: OrderIntent,
    available_balance: float,
    prices: PriceMap,
    *,
    allowed_symbols: Optional[Iterable[str]] = None,
    min_notional: Optional[float] = None,
    max_leverage: Optional[int] = None,
) -> float:
    """
    Pre-dispatch checks, in order: symbol, quantity, price, min notional,
    leverage (futures), balance, TP/SL ordering. Returns the required margin.
    """
    symbols = list(allowed_symbols if allowed_symbols is not None else settings.TRADING_PAIRS)
    min_notional = settings.MIN_NOTIONAL_USDT if min_notional is None else min_notional
    max_leverage = settings.MAX_LEVERAGE if max_leverage is None else max_leverage

    if symbols and intent.symbol not in symbols:
        raise ValidationError(f"Invalid symbol: {intent.symbol}")

    qty = finite(intent.quantity)
    if qty is None or qty <= 0:
        raise ValidationError("Quantity must be positive")

    price = finite(intent.price) or finite(prices.get(intent.symbol))
    if not price or price <= 0:
        raise ValidationError("Current price unavailable for validation")

    notional = qty * price
    if notional < min_notional:
        raise ValidationError(f"Order value too small ({notional:.2f}). Min: {min_notional:g} USDT")

    leverage = finite(intent.leverage) or 1.0
    if intent.market_type == "Futures" and not (1 <= leverage <= max_leverage):
        raise ValidationError(f"Leverage must be between 1x and {max_leverage}x")

    required = notional / leverage if intent.market_type == "Futures" else notional
    if available_balance < required:
        raise InsufficientBalanceError(
            f"Insufficient balance. Need {required:.2f} USDT, Have {available_balance:.2f} USDT",
            details={"required": required, "available": available_balance},
        )

    validate_sl_tp(
        intent.side,
        price,
        intent.stop_loss.price if intent.stop_loss else None,
        intent.take_profit.price if intent.take_profit else None,
    )
    return required
