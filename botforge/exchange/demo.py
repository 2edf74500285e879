from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Dict, List, Optional

from botforge.accounts.credentials import Credentials
from botforge.core import events as ev
from botforge.core.config import settings
from botforge.core.errors import ConnectorError, InsufficientBalanceError
from botforge.core.events import EventBus
from botforge.exchange.base import PriceMap
from botforge.templates.resolve import OrderIntent

log = logging.getLogger("botforge.exchange.demo")


class DemoConnector:
    """
    Paper trading. Wallets and positions live in this instance only.

    - MARKET orders fill instantly at the price map
    - LIMIT orders rest until `match_resting` sees a price crossing them
    - margin is reserved on placement, refunded on cancel, returned with PnL on close
    """

    name = "demo"

    def __init__(self, bus: Optional[EventBus] = None, start_balance: Optional[float] = None):
        self.bus = bus
        self.start_balance = float(start_balance if start_balance is not None else settings.DEMO_START_BALANCE)
        self._wallets: Dict[str, float] = {}
        self._positions: Dict[str, Dict[str, Any]] = {}
        self._resting: Dict[str, Dict[str, Any]] = {}

    def _wallet(self, credentials: Credentials) -> float:
        if credentials.id not in self._wallets:
            seed = credentials.balance if credentials.balance > 0 else self.start_balance
            self._wallets[credentials.id] = float(seed)
        return self._wallets[credentials.id]

    async def validate_keys(self, credentials: Credentials) -> Dict[str, Any]:
        return {"valid": True, "permissions": ["READ", "TRADING"]}

    async def get_balance(self, credentials: Credentials) -> Dict[str, Any]:
        balance = self._wallet(credentials)
        return {
            "USDT": {"available": balance, "total": balance},
            "updated_at": int(time.time() * 1000),
        }

    async def place_order(self, intent: OrderIntent, credentials: Credentials, prices: PriceMap) -> Dict[str, Any]:
        balance = self._wallet(credentials)
        if intent.order_type == "MARKET":
            price = prices.get(intent.symbol) or intent.price
        else:
            price = intent.price
        if not price:
            raise ConnectorError(f"Price unavailable for {intent.symbol}")

        notional = intent.quantity * price
        margin = notional / (intent.leverage or 1) if intent.market_type == "Futures" else notional
        if balance < margin:
            raise InsufficientBalanceError(
                f"Insufficient demo balance. Req: {margin:.2f}, Avail: {balance:.2f}"
            )

        self._wallets[credentials.id] = balance - margin

        order_id = str(uuid.uuid4())
        record = {
            "order_id": order_id,
            "symbol": intent.symbol,
            "side": intent.side,
            "type": intent.order_type,
            "price": price,
            "quantity": intent.quantity,
            "leverage": intent.leverage,
            "margin": margin,
            "account_id": credentials.id,
            "bot_id": intent.bot_id,
            "timestamp": int(time.time() * 1000),
        }

        if intent.order_type != "MARKET":
            self._resting[order_id] = {**record, "status": "NEW"}
            return {"order_id": order_id, "symbol": intent.symbol, "price": price, "avg_price": None, "status": "NEW"}

        self._fill(record, price)
        return {
            "order_id": order_id,
            "symbol": intent.symbol,
            "side": intent.side,
            "price": price,
            "avg_price": price,
            "quantity": intent.quantity,
            "status": "FILLED",
            "fills": [{"price": price, "qty": intent.quantity, "commission": 0}],
        }

    def _fill(self, record: Dict[str, Any], price: float) -> Dict[str, Any]:
        pos = {**record, "price": price, "avg_price": price, "status": "FILLED"}
        self._positions[record["order_id"]] = pos
        if self.bus is not None:
            self.bus.emit(
                ev.ORDER_FILLED,
                {
                    "order_id": record["order_id"],
                    "bot_id": record.get("bot_id"),
                    "symbol": record["symbol"],
                    "fill_price": price,
                    "fill_quantity": record["quantity"],
                },
            )
        return pos

    def match_resting(self, prices: PriceMap) -> List[Dict[str, Any]]:
        """
        Fill every resting LIMIT order the price map has crossed
        (LONG at or below its price, SHORT at or above). Fills happen at the
        limit price. Returns the fills.
        """
        fills: List[Dict[str, Any]] = []
        for order_id, order in list(self._resting.items()):
            price = prices.get(order["symbol"])
            if not price:
                continue
            crossed = price <= order["price"] if order["side"] in ("LONG", "BUY") else price >= order["price"]
            if not crossed:
                continue
            del self._resting[order_id]
            self._fill(order, order["price"])
            fills.append({"order_id": order_id, "symbol": order["symbol"], "fill_price": order["price"]})
        if fills:
            log.info("demo: %d resting order(s) filled", len(fills))
        return fills

    async def set_leverage(self, symbol: str, leverage: float, credentials: Credentials) -> Dict[str, Any]:
        return {"symbol": symbol, "leverage": leverage}

    async def close_position(
        self,
        symbol: str,
        credentials: Credentials,
        prices: PriceMap,
        order_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Closes one position (`order_id`) or every position of `symbol`. Returns realised PnL."""
        price = prices.get(symbol)
        if not price:
            raise ConnectorError("Price unavailable")

        total_pnl = 0.0
        for pid, pos in list(self._positions.items()):
            if pos["account_id"] != credentials.id or pos["symbol"] != symbol:
                continue
            if order_id is not None and pid != order_id:
                continue
            diff = price - pos["price"]
            pnl = diff * pos["quantity"] if pos["side"] in ("LONG", "BUY") else -diff * pos["quantity"]
            total_pnl += pnl
            self._wallets[credentials.id] = self._wallet(credentials) + pos["margin"] + pnl
            del self._positions[pid]

        return {"success": True, "pnl": total_pnl}

    async def get_open_positions(self, credentials: Credentials) -> List[Dict[str, Any]]:
        return [p for p in self._positions.values() if p["account_id"] == credentials.id]

    async def cancel_order(self, order_id: str, symbol: str, credentials: Credentials) -> Dict[str, Any]:
        """Only resting orders can be cancelled; a filled position is closed instead."""
        order = self._resting.pop(order_id, None)
        if order is None:
            # filled positions keep their margin; orders from an earlier process are gone
            log.warning("demo: cancel of unknown resting order %s", order_id)
            return {"status": "NOT_FOUND", "order_id": order_id, "symbol": symbol}
        self._wallets[credentials.id] = self._wallet(credentials) + order["margin"]
        return {"status": "CANCELLED", "order_id": order_id, "symbol": symbol}
