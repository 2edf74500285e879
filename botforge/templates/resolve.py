from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional

from botforge.core.errors import ValidationError
from botforge.templates.models import ExitRule, OrderType, SizeMode, Template

DEFAULT_PAIR = "BTCUSDT"
DEFAULT_SIZE = 100.0
DEFAULT_LEVERAGE = 1.0

_LONG_ALIASES = {"LONG", "BUY", "AUTO"}
_SHORT_ALIASES = {"SHORT", "SELL"}


def finite(x: Any) -> Optional[float]:
    """float(x) when it is a finite number, else None."""
    if x is None or isinstance(x, bool):
        return None
    try:
        v = float(x)
    except (TypeError, ValueError):
        return None
    return v if math.isfinite(v) else None


def _required(x: Any, what: str) -> float:
    """An explicitly supplied number must be finite; it never falls back to a default."""
    v = finite(x)
    if v is None:
        raise ValidationError(f"{what} must be a finite number, got {x!r}")
    return v


def normalize_side(direction: Any) -> str:
    """Long/BUY/LONG -> LONG, Short/SELL/SHORT -> SHORT. Auto without an override is LONG."""
    d = str(direction or "LONG").strip().upper()
    if d in _LONG_ALIASES:
        return "LONG"
    if d in _SHORT_ALIASES:
        return "SHORT"
    raise ValidationError(f"invalid direction: {direction}")


@dataclass
class OrderRequest:
    """Per-order overrides a trigger (or a manual call) layers over the template."""

    direction: Optional[str] = None
    order_type: Optional[str] = None
    price: Optional[float] = None
    size: Optional[float] = None
    size_mode: Optional[str] = None
    pair: Optional[str] = None
    leverage: Optional[float] = None
    take_profit: Optional[ExitRule] = None
    stop_loss: Optional[ExitRule] = None


@dataclass
class ExitSnapshot:
    mode: str
    value: float
    price: float


@dataclass
class OrderIntent:
    symbol: str
    side: str  # LONG/SHORT
    order_type: str  # MARKET/LIMIT
    price: float
    quantity: float
    margin: float
    leverage: float
    take_profit: Optional[ExitSnapshot] = None
    stop_loss: Optional[ExitSnapshot] = None
    account_id: Optional[str] = None
    user_id: Optional[str] = None
    market_type: str = "Futures"
    template_id: Optional[str] = None
    bot_id: Optional[str] = None
    bot_type: Optional[str] = None
    source: str = "manual"
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def notional(self) -> float:
        return self.quantity * self.price

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _target_price(entry: float, side: str, mode: str, value: float, margin: float, leverage: float, *, loss: bool) -> float:
    sign = 1.0 if side == "LONG" else -1.0
    if loss:
        sign = -sign

    if mode == "PRICE":
        return value
    if mode == "PERCENT":
        return entry * (1 + sign * value / 100.0)
    # PROFIT / LOSS: absolute quote amount on the margin, leveraged
    if margin <= 0 or leverage <= 0:
        raise ValidationError("cannot derive exit price without margin")
    pct = (value / margin) * (100.0 / leverage)
    return entry * (1 + sign * pct / 100.0)


def resolve(
    template: Template,
    overrides: Optional[OrderRequest],
    current_price: Any,
    available_balance: Optional[float] = None,
) -> OrderIntent:
    """
    Template + overrides + price -> concrete order intent.

    Precedence: override > template > default.
    - USDT: size is the margin
    - PERCENT: size percent of `available_balance` is the margin
    - QTY: size is the asset quantity
    margin = notional / leverage
    """
    ov = overrides or OrderRequest()

    price = finite(ov.price)
    if price is None or price <= 0:
        price = finite(current_price)
    if price is None or price <= 0:
        raise ValidationError("price unavailable")

    pair = ov.pair or template.pair or (template.pairs[0] if template.pairs else None) or DEFAULT_PAIR
    side = normalize_side(ov.direction or template.direction)
    order_type = str(ov.order_type or template.order_type or OrderType.MARKET.value).upper()
    if order_type not in {o.value for o in OrderType}:
        raise ValidationError(f"invalid order type: {order_type}")

    if ov.leverage is not None:
        leverage = _required(ov.leverage, "leverage")
        if leverage < 1:
            raise ValidationError("leverage must be >= 1")
    else:
        leverage = finite(template.leverage) or DEFAULT_LEVERAGE

    if ov.size is not None:
        size = _required(ov.size, "order size")
    else:
        size = finite(template.size)
        if size is None:
            size = DEFAULT_SIZE
    if size <= 0:
        raise ValidationError("order size must be > 0")

    size_mode = str(ov.size_mode or template.size_mode or SizeMode.USDT.value).upper()
    if size_mode == SizeMode.USDT.value:
        margin = size
        quantity = margin * leverage / price
    elif size_mode == SizeMode.PERCENT.value:
        balance = finite(available_balance)
        if balance is None:
            raise ValidationError("balance required for PERCENT sizing")
        margin = balance * size / 100.0
        quantity = margin * leverage / price
    elif size_mode == SizeMode.QTY.value:
        quantity = size
        margin = quantity * price / leverage
    else:
        raise ValidationError(f"invalid size mode: {size_mode}")

    tp = sl = None
    tp_rule = ov.take_profit or template.take_profit
    sl_rule = ov.stop_loss or template.stop_loss
    if tp_rule.enabled:
        r = tp_rule
        tp = ExitSnapshot(r.mode, r.value, _target_price(price, side, r.mode, r.value, margin, leverage, loss=False))
    if sl_rule.enabled:
        r = sl_rule
        sl = ExitSnapshot(r.mode, r.value, _target_price(price, side, r.mode, r.value, margin, leverage, loss=True))

    return OrderIntent(
        symbol=str(pair).upper(),
        side=side,
        order_type=order_type,
        price=price,
        quantity=quantity,
        margin=margin,
        leverage=leverage,
        take_profit=tp,
        stop_loss=sl,
        account_id=template.account_id,
        user_id=template.user_id,
        market_type=template.market_type or "Futures",
        template_id=template.id,
    )
