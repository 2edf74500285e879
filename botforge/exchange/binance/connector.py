from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from botforge.accounts.credentials import Credentials
from botforge.core.config import settings
from botforge.exchange.base import PriceMap, exchange_side
from botforge.exchange.binance.client import FUTURES, SPOT, BinanceClient
from botforge.exchange.binance.filters import apply_filters, extract_filters
from botforge.templates.resolve import OrderIntent

log = logging.getLogger("botforge.exchange.binance")


def _default_factory(credentials: Credentials) -> BinanceClient:
    futures = credentials.market_type == "Futures"
    return BinanceClient(
        api_key=credentials.api_key or "",
        api_secret=credentials.api_secret or "",
        base_url=settings.BINANCE_FAPI_BASE_URL if futures else settings.BINANCE_SPOT_BASE_URL,
        recv_window=settings.BINANCE_RECV_WINDOW,
        market=FUTURES if futures else SPOT,
    )


class BinanceConnector:
    """
    Async adapter over the blocking `BinanceClient`.
    One client per (account, market); HTTP runs in a worker thread.
    """

    name = "binance"

    def __init__(self, client_factory: Optional[Callable[[Credentials], BinanceClient]] = None):
        self.client_factory = client_factory or _default_factory
        self._clients: Dict[Tuple[str, str], BinanceClient] = {}

    def client(self, credentials: Credentials) -> BinanceClient:
        key = (credentials.id, credentials.market_type)
        if key not in self._clients:
            self._clients[key] = self.client_factory(credentials)
        return self._clients[key]

    async def _run(self, fn, *args, **kwargs):
        return await asyncio.to_thread(fn, *args, **kwargs)

    async def validate_keys(self, credentials: Credentials) -> Dict[str, Any]:
        try:
            await self._run(self.client(credentials).account)
        except Exception as e:
            log.warning("binance key validation failed account=%s: %s", credentials.id, e)
            return {"valid": False, "error": str(e)}
        return {"valid": True}

    async def get_balance(self, credentials: Credentials) -> Dict[str, Any]:
        usdt = await self._run(self.client(credentials).usdt_balance)
        return {"USDT": usdt, "updated_at": int(time.time() * 1000)}

    def _rounded(self, client: BinanceClient, intent: OrderIntent):
        price = intent.price if intent.order_type == "LIMIT" else None
        try:
            filters = extract_filters(client.exchange_info_cached(), intent.symbol)
        except ValueError as e:
            log.warning("no filters for %s, sending unrounded: %s", intent.symbol, e)
            return intent.quantity, price
        return apply_filters(filters, intent.quantity, price)

    def _place_sync(self, client: BinanceClient, intent: OrderIntent) -> dict:
        quantity, price = self._rounded(client, intent)
        return client.place_order(
            intent.symbol,
            exchange_side(intent.side),
            intent.order_type,
            quantity,
            price=price,
        )

    async def place_order(self, intent: OrderIntent, credentials: Credentials, prices: PriceMap) -> Dict[str, Any]:
        data = await self._run(self._place_sync, self.client(credentials), intent) or {}

        executed = float(data.get("executedQty") or 0)
        avg = float(data.get("avgPrice") or 0)
        if not avg and executed:
            avg = float(data.get("cummulativeQuoteQty") or 0) / executed
        return {
            "order_id": data.get("orderId"),
            "status": data.get("status"),
            "avg_price": avg or None,
            "total_filled": executed,
            "timestamp": data.get("updateTime") or data.get("transactTime"),
        }

    async def set_leverage(self, symbol: str, leverage: float, credentials: Credentials) -> Dict[str, Any]:
        if credentials.market_type != "Futures":
            return {}
        return await self._run(self.client(credentials).set_leverage, symbol, int(leverage))

    async def get_open_positions(self, credentials: Credentials) -> List[Dict[str, Any]]:
        if credentials.market_type != "Futures":
            return []
        rows = await self._run(self.client(credentials).position_risk)
        return [p for p in rows if float(p.get("positionAmt") or 0) != 0]

    async def cancel_order(self, order_id: str, symbol: str, credentials: Credentials) -> Dict[str, Any]:
        return await self._run(self.client(credentials).cancel_order, symbol, order_id)

    async def close_position(
        self,
        symbol: str,
        credentials: Credentials,
        prices: Optional[PriceMap] = None,
        order_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if credentials.market_type != "Futures":
            # spot holdings are not positions; nothing to flatten
            return {"status": "no_position", "symbol": symbol}
        return await self._run(self.client(credentials).close_position_market, symbol)
