from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import Optional


@dataclass(frozen=True)
class SymbolFilters:
    symbol: str
    step_size: Decimal
    min_qty: Decimal
    tick_size: Decimal


def _get_filter(symbol_info: dict, filter_type: str) -> Optional[dict]:
    for f in symbol_info.get("filters", []):
        if f.get("filterType") == filter_type:
            return f
    return None


def extract_filters(exchange_info: dict, symbol: str) -> SymbolFilters:
    symbol = symbol.upper()

    for s in exchange_info.get("symbols", []):
        if s.get("symbol") != symbol:
            continue

        # LOT_SIZE → qty rules
        lot = _get_filter(s, "LOT_SIZE")
        if not lot:
            raise ValueError(f"LOT_SIZE filter not found for {symbol}")

        # PRICE_FILTER → price tick rules
        price_filter = _get_filter(s, "PRICE_FILTER")
        if not price_filter:
            raise ValueError(f"PRICE_FILTER not found for {symbol}")

        return SymbolFilters(
            symbol=symbol,
            step_size=Decimal(lot["stepSize"]),
            min_qty=Decimal(lot["minQty"]),
            tick_size=Decimal(price_filter["tickSize"]),
        )

    raise ValueError(f"Symbol not found in exchangeInfo: {symbol}")


def _to_decimal(x) -> Decimal:
    return x if isinstance(x, Decimal) else Decimal(str(x))


def _round_down(value: float, step) -> Decimal:
    v = Decimal(str(value))
    step = _to_decimal(step)
    if step <= 0:
        return v
    return (v / step).to_integral_value(rounding=ROUND_DOWN) * step


def _float_quantize(value: Decimal, step) -> float:
    """Decimal -> float, quantized to the step's decimal places."""
    step_d = _to_decimal(step)
    places = max(0, -step_d.as_tuple().exponent)
    return float(value.quantize(Decimal("1").scaleb(-places)))


def round_qty_to_step(qty: float, step_size) -> float:
    """Quantity rounded DOWN to the LOT_SIZE step."""
    return _float_quantize(_round_down(qty, step_size), step_size)


def round_price_to_tick(price: float, tick_size) -> float:
    """Price rounded DOWN to the PRICE_FILTER tick."""
    return _float_quantize(_round_down(price, tick_size), tick_size)


def apply_filters(filters: SymbolFilters, quantity: float, price: Optional[float] = None):
    """
    Returns (quantity, price) rounded for the symbol.
    Raises ValueError when the rounded quantity falls below minQty.
    """
    qty = round_qty_to_step(quantity, filters.step_size)
    if Decimal(str(qty)) < filters.min_qty or qty <= 0:
        raise ValueError(
            f"Quantity {quantity} below minQty {filters.min_qty} for {filters.symbol}"
        )
    px = round_price_to_tick(price, filters.tick_size) if price is not None else None
    return qty, px
