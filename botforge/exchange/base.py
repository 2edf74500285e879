from __future__ import annotations

from typing import Any, Dict, List, Protocol

from botforge.accounts.credentials import Credentials
from botforge.templates.resolve import OrderIntent

PriceMap = Dict[str, float]


class Connector(Protocol):
    """
    Exchange backend. All methods are async; blocking HTTP clients are run
    in a worker thread by the implementation.

    get_balance() returns {"USDT": {"available": float, "total": float}, ...}
    place_order() returns a dict with at least `order_id`, `status`, `avg_price`.
    """

    name: str

    async def validate_keys(self, credentials: Credentials) -> Dict[str, Any]: ...

    async def get_balance(self, credentials: Credentials) -> Dict[str, Any]: ...

    async def place_order(
        self, intent: OrderIntent, credentials: Credentials, prices: PriceMap
    ) -> Dict[str, Any]: ...

    async def set_leverage(
        self, symbol: str, leverage: float, credentials: Credentials
    ) -> Dict[str, Any]: ...

    async def get_open_positions(self, credentials: Credentials) -> List[Dict[str, Any]]: ...

    async def cancel_order(
        self, order_id: str, symbol: str, credentials: Credentials
    ) -> Dict[str, Any]: ...


def available_usdt(balance: Dict[str, Any]) -> float:
    try:
        return float(((balance or {}).get("USDT") or {}).get("available") or 0.0)
    except (TypeError, ValueError):
        return 0.0


def exchange_side(side: str) -> str:
    """LONG/SHORT -> BUY/SELL."""
    return "BUY" if str(side).upper() in ("LONG", "BUY") else "SELL"
