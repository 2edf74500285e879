from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class Direction(str, Enum):
    LONG = "Long"
    SHORT = "Short"
    AUTO = "Auto"


class SizeMode(str, Enum):
    USDT = "USDT"  # margin in quote currency
    PERCENT = "PERCENT"  # percent of available balance
    QTY = "QTY"  # asset quantity


class OrderType(str, Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"


TP_MODES = ("PRICE", "PERCENT", "PROFIT")
SL_MODES = ("PRICE", "PERCENT", "LOSS")


@dataclass
class ExitRule:
    enabled: bool = False
    mode: str = "PERCENT"
    value: float = 0.0

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> "ExitRule":
        if not d:
            return cls()
        return cls(
            enabled=bool(d.get("enabled", False)),
            mode=str(d.get("mode") or "PERCENT").upper(),
            value=float(d.get("value") or 0.0),
        )


def _enum_value(v: Any) -> Any:
    return v.value if isinstance(v, Enum) else v


@dataclass
class Template:
    """
    Reusable order configuration. Bots hold only `id` and never mutate it.
    A template with more than one entry in `pairs` is multi-coin.
    """

    name: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    pairs: List[str] = field(default_factory=list)
    pair: Optional[str] = None
    direction: str = Direction.LONG.value
    size: float = 100.0
    size_mode: str = SizeMode.USDT.value
    leverage: float = 1.0
    order_type: str = OrderType.MARKET.value
    take_profit: ExitRule = field(default_factory=ExitRule)
    stop_loss: ExitRule = field(default_factory=ExitRule)
    account_id: Optional[str] = None
    user_id: Optional[str] = None
    market_type: str = "Futures"
    created_at: int = field(default_factory=lambda: int(time.time() * 1000))
    updated_at: int = field(default_factory=lambda: int(time.time() * 1000))

    @property
    def is_multi_coin(self) -> bool:
        return len(self.pairs) > 1

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Template":
        pairs = [str(p).strip().upper() for p in (d.get("pairs") or []) if str(p).strip()]
        pair = d.get("pair")
        data = {
            "name": str(d.get("name") or "Untitled"),
            "pairs": pairs,
            "pair": str(pair).strip().upper() if pair else None,
            "direction": _enum_value(d.get("direction")) or Direction.LONG.value,
            "size": float(d["size"]) if d.get("size") is not None else 100.0,
            "size_mode": str(_enum_value(d.get("size_mode")) or SizeMode.USDT.value).upper(),
            "leverage": float(d.get("leverage") or 1.0),
            "order_type": str(_enum_value(d.get("order_type")) or OrderType.MARKET.value).upper(),
            "take_profit": ExitRule.from_dict(d.get("take_profit")),
            "stop_loss": ExitRule.from_dict(d.get("stop_loss")),
            "account_id": d.get("account_id"),
            "user_id": d.get("user_id"),
            "market_type": d.get("market_type") or "Futures",
        }
        for key in ("id", "created_at", "updated_at"):
            if d.get(key) is not None:
                data[key] = d[key]
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
