from __future__ import annotations

import logging
import random
import time
from typing import Any, Dict, Optional

import requests

from botforge.exchange.signing import signed_query

log = logging.getLogger("botforge.exchange.binance")

FUTURES = "futures"
SPOT = "spot"

# endpoint name -> (futures path, spot path)
_PATHS: Dict[str, tuple] = {
    "time": ("/fapi/v1/time", "/api/v3/time"),
    "exchange_info": ("/fapi/v1/exchangeInfo", "/api/v3/exchangeInfo"),
    "klines": ("/fapi/v1/klines", "/api/v3/klines"),
    "ticker_price": ("/fapi/v1/ticker/price", "/api/v3/ticker/price"),
    "account": ("/fapi/v2/account", "/api/v3/account"),
    "order": ("/fapi/v1/order", "/api/v3/order"),
    "open_orders": ("/fapi/v1/openOrders", "/api/v3/openOrders"),
}


class BinanceHTTPError(RuntimeError):
    def __init__(self, status_code: int, body: str):
        super().__init__(f"Binance HTTP {status_code}: {body}")
        self.status_code = status_code
        self.body = body


class BinanceClient:
    """
    Blocking REST client for one key pair on one market (USD-M futures or spot).
    Nothing touches the network until a method is called.
    """

    def __init__(
        self,
        api_key: str = "",
        api_secret: str = "",
        base_url: str = "https://fapi.binance.com",
        recv_window: int = 5000,
        market: str = FUTURES,
        timeout: float = 15.0,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self.recv_window = recv_window
        self.market = market
        self.timeout = timeout
        self.session = session or requests.Session()

        self._exchange_info_cache: Optional[dict] = None
        self._exchange_info_cache_ts: float = 0.0
        # server time offset (ms); positive means the local clock is behind
        self._time_offset_ms: int = 0

    @property
    def is_futures(self) -> bool:
        return self.market == FUTURES

    def path(self, name: str) -> str:
        futures, spot = _PATHS[name]
        return futures if self.is_futures else spot

    # ---------------- transport ----------------

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        signed: bool = False,
        max_retries: int = 4,
    ):
        headers: Dict[str, str] = {}
        if signed:
            if not self.api_key or not self.api_secret:
                raise ValueError("Missing Binance API key or secret")
            headers["X-MBX-APIKEY"] = self.api_key

        last_err: Optional[Exception] = None
        for attempt in range(max_retries + 1):
            url = f"{self.base_url}{path}"
            query_params: Optional[dict] = dict(params or {})
            if signed:
                query_params["timestamp"] = int(time.time() * 1000) + int(self._time_offset_ms)
                query_params["recvWindow"] = self.recv_window
                url = f"{url}?{signed_query(self.api_secret, query_params)}"
                query_params = None

            try:
                r = self.session.request(
                    method, url, params=query_params, headers=headers, timeout=self.timeout
                )
            except (requests.Timeout, requests.ConnectionError) as e:
                last_err = e
                time.sleep(min(0.4 * (2**attempt), 8.0))
                continue

            # Rate limit / temp ban
            if r.status_code in (418, 429):
                ra = r.headers.get("Retry-After")
                sleep_s = float(ra) if ra else (0.4 * (2**attempt))
                sleep_s += random.uniform(0, 0.2)
                log.warning("binance rate limited (%s), sleeping %.2fs", r.status_code, sleep_s)
                time.sleep(min(sleep_s, 10.0))
                last_err = BinanceHTTPError(r.status_code, r.text)
                continue

            # Timestamp drift (-1021): resync and retry
            if signed and r.status_code == 400 and "-1021" in r.text:
                self.sync_time()
                last_err = BinanceHTTPError(r.status_code, r.text)
                continue

            # Server errors
            if r.status_code >= 500:
                last_err = BinanceHTTPError(r.status_code, r.text)
                time.sleep(min(0.4 * (2**attempt), 8.0))
                continue

            if r.status_code >= 400:
                raise BinanceHTTPError(r.status_code, r.text)
            return r.json() if r.content else None

        raise RuntimeError(f"Binance request failed after retries: {method} {path} ({last_err})")

    def _signed(self, method: str, name_or_path: str, params: Optional[dict] = None):
        path = self.path(name_or_path) if name_or_path in _PATHS else name_or_path
        return self._request(method, path, params, signed=True)

    # ---------------- public ----------------

    def sync_time(self) -> int:
        local_ms = int(time.time() * 1000)
        data = self._request("GET", self.path("time"))
        self._time_offset_ms = int(data["serverTime"]) - local_ms
        return self._time_offset_ms

    def exchange_info_cached(self, ttl_seconds: int = 60) -> dict:
        now = time.time()
        if self._exchange_info_cache and (now - self._exchange_info_cache_ts) < ttl_seconds:
            return self._exchange_info_cache

        data = self._request("GET", self.path("exchange_info"))
        self._exchange_info_cache = data
        self._exchange_info_cache_ts = now
        return data

    def klines(self, symbol: str, interval: str = "1m", limit: int = 100) -> list:
        params = {"symbol": symbol.upper(), "interval": interval, "limit": limit}
        return self._request("GET", self.path("klines"), params=params)

    def last_price(self, symbol: str) -> float:
        data = self._request("GET", self.path("ticker_price"), params={"symbol": symbol.upper()})
        return float(data["price"])

    # ---------------- account / trading ----------------

    def account(self) -> dict:
        return self._signed("GET", "account")

    def usdt_balance(self) -> Dict[str, float]:
        data = self.account() or {}
        if self.is_futures:
            usdt = next((a for a in data.get("assets", []) if a.get("asset") == "USDT"), {})
            return {
                "available": float(usdt.get("availableBalance") or 0),
                "total": float(usdt.get("walletBalance") or 0),
            }
        usdt = next((b for b in data.get("balances", []) if b.get("asset") == "USDT"), {})
        free = float(usdt.get("free") or 0)
        return {"available": free, "total": free + float(usdt.get("locked") or 0)}

    def set_leverage(self, symbol: str, leverage: int) -> dict:
        return self._signed("POST", "/fapi/v1/leverage", {"symbol": symbol.upper(), "leverage": int(leverage)})

    def place_order(
        self,
        symbol: str,
        side: str,
        order_type: str,
        quantity: float,
        price: Optional[float] = None,
        reduce_only: bool = False,
    ) -> dict:
        params: Dict[str, Any] = {
            "symbol": symbol.upper(),
            "side": side,
            "type": order_type,
            "quantity": quantity,
        }
        if order_type == "LIMIT":
            params["price"] = price
            params["timeInForce"] = "GTC"
        if reduce_only and self.is_futures:
            params["reduceOnly"] = "true"
        return self._signed("POST", "order", params)

    def cancel_order(self, symbol: str, order_id: str) -> dict:
        return self._signed("DELETE", "order", {"symbol": symbol.upper(), "orderId": order_id})

    def open_orders(self, symbol: Optional[str] = None) -> list:
        params = {"symbol": symbol.upper()} if symbol else {}
        return self._signed("GET", "open_orders", params)

    def position_risk(self, symbol: Optional[str] = None) -> list:
        if not self.is_futures:
            return []
        params = {"symbol": symbol.upper()} if symbol else {}
        data = self._signed("GET", "/fapi/v2/positionRisk", params)
        return data if isinstance(data, list) else []

    def get_position_amt(self, symbol: str) -> float:
        # pick the entry with the largest absolute positionAmt
        best = 0.0
        for p in self.position_risk(symbol):
            try:
                amt = float(p.get("positionAmt", "0") or "0")
            except (TypeError, ValueError):
                amt = 0.0
            if abs(amt) > abs(best):
                best = amt
        return best

    def close_position_market(self, symbol: str) -> dict:
        amt = self.get_position_amt(symbol)
        if abs(amt) < 1e-12:
            return {"status": "no_position", "symbol": symbol}

        side = "SELL" if amt > 0 else "BUY"
        return self.place_order(symbol, side, "MARKET", abs(amt), reduce_only=True)
