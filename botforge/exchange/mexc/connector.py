from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Tuple, Union

from botforge.accounts.credentials import Credentials
from botforge.core.config import settings
from botforge.exchange.base import PriceMap, exchange_side
from botforge.exchange.mexc import client as mexc
from botforge.templates.resolve import OrderIntent

log = logging.getLogger("botforge.exchange.mexc")

Client = Union[mexc.MexcContractClient, mexc.MexcSpotClient]


class MexcConnector:
    """Async adapter over the MEXC contract and spot clients."""

    name = "mexc"

    def __init__(self, client_factory=None):
        self.client_factory = client_factory or self._default_factory
        self._clients: Dict[Tuple[str, str], Client] = {}

    @staticmethod
    def _default_factory(credentials: Credentials) -> Client:
        if credentials.market_type == "Futures":
            return mexc.MexcContractClient(
                credentials.api_key, credentials.api_secret, settings.MEXC_CONTRACT_BASE_URL
            )
        return mexc.MexcSpotClient(credentials.api_key, credentials.api_secret, settings.MEXC_SPOT_BASE_URL)

    def client(self, credentials: Credentials) -> Client:
        key = (credentials.id, credentials.market_type)
        if key not in self._clients:
            self._clients[key] = self.client_factory(credentials)
        return self._clients[key]

    @staticmethod
    def _futures(credentials: Credentials) -> bool:
        return credentials.market_type == "Futures"

    async def validate_keys(self, credentials: Credentials) -> Dict[str, Any]:
        c = self.client(credentials)
        try:
            await asyncio.to_thread(c.assets if self._futures(credentials) else c.account)
        except Exception as e:
            log.warning("mexc key validation failed account=%s: %s", credentials.id, e)
            return {"valid": False, "error": str(e)}
        return {"valid": True}

    def _balance_sync(self, credentials: Credentials) -> Dict[str, float]:
        c = self.client(credentials)
        if self._futures(credentials):
            usdt = next((a for a in c.assets() if a.get("currency", a.get("asset")) == "USDT"), {})
            return {
                "available": float(usdt.get("availableBalance") or 0),
                "total": float(usdt.get("equity") or usdt.get("totalBalance") or 0),
            }
        data = c.account() or {}
        usdt = next((b for b in data.get("balances", []) if b.get("asset") == "USDT"), {})
        free = float(usdt.get("free") or 0)
        return {"available": free, "total": free + float(usdt.get("locked") or 0)}

    async def get_balance(self, credentials: Credentials) -> Dict[str, Any]:
        usdt = await asyncio.to_thread(self._balance_sync, credentials)
        return {"USDT": usdt, "updated_at": int(time.time() * 1000)}

    def _place_sync(self, intent: OrderIntent, credentials: Credentials) -> dict:
        c = self.client(credentials)
        price = intent.price if intent.order_type == "LIMIT" else None
        if self._futures(credentials):
            side = mexc.OPEN_LONG if exchange_side(intent.side) == "BUY" else mexc.OPEN_SHORT
            kind = mexc.LIMIT if intent.order_type == "LIMIT" else mexc.MARKET
            data = c.submit_order(intent.symbol, side, kind, intent.quantity, price=price,
                                  leverage=int(intent.leverage or 1))
            payload = data.get("data")
            # submit answers either {"orderId": ...} or the bare id
            order_id = payload.get("orderId") if isinstance(payload, dict) else payload
            return {"order_id": order_id}
        data = c.place_order(intent.symbol, exchange_side(intent.side), intent.order_type, intent.quantity, price=price)
        return {"order_id": data.get("orderId")}

    async def place_order(self, intent: OrderIntent, credentials: Credentials, prices: PriceMap) -> Dict[str, Any]:
        placed = await asyncio.to_thread(self._place_sync, intent, credentials)
        # MEXC acknowledges without fill details
        return {
            **placed,
            "status": "NEW",
            "avg_price": None,
            "total_filled": 0.0,
            "timestamp": int(time.time() * 1000),
        }

    async def set_leverage(self, symbol: str, leverage: float, credentials: Credentials) -> Dict[str, Any]:
        if not self._futures(credentials):
            return {}
        return await asyncio.to_thread(self.client(credentials).change_leverage, symbol, int(leverage))

    async def get_open_positions(self, credentials: Credentials) -> List[Dict[str, Any]]:
        if not self._futures(credentials):
            return []
        return await asyncio.to_thread(self.client(credentials).open_positions)

    async def cancel_order(self, order_id: str, symbol: str, credentials: Credentials) -> Dict[str, Any]:
        c = self.client(credentials)
        if self._futures(credentials):
            return await asyncio.to_thread(c.cancel_order, order_id)
        return await asyncio.to_thread(c.cancel_order, symbol, order_id)

    def _close_sync(self, symbol: str, credentials: Credentials) -> Dict[str, Any]:
        c = self.client(credentials)
        closed = []
        for pos in c.open_positions(symbol):
            # positionType 1 = long, 2 = short
            side = mexc.CLOSE_LONG if int(pos.get("positionType") or 1) == 1 else mexc.CLOSE_SHORT
            vol = float(pos.get("holdVol") or 0)
            if vol > 0:
                closed.append(c.submit_order(symbol, side, mexc.MARKET, vol))
        return {"status": "closed" if closed else "no_position", "symbol": symbol, "orders": closed}

    async def close_position(
        self,
        symbol: str,
        credentials: Credentials,
        prices: Optional[PriceMap] = None,
        order_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not self._futures(credentials):
            return {"status": "no_position", "symbol": symbol}
        return await asyncio.to_thread(self._close_sync, symbol, credentials)
