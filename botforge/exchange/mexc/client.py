from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, Optional

import requests

from botforge.exchange.signing import build_query, sign, signed_query

log = logging.getLogger("botforge.exchange.mexc")

# contract order sides
OPEN_LONG = 1
CLOSE_SHORT = 2
OPEN_SHORT = 3
CLOSE_LONG = 4
# contract order types
LIMIT = 1
MARKET = 5


class MexcHTTPError(RuntimeError):
    def __init__(self, status_code: int, body: str):
        super().__init__(f"MEXC HTTP {status_code}: {body}")
        self.status_code = status_code
        self.body = body


def contract_symbol(symbol: str) -> str:
    """BTCUSDT -> BTC_USDT (contract API naming)."""
    s = symbol.upper()
    if "_" in s or not s.endswith("USDT"):
        return s
    return f"{s[:-4]}_USDT"


class MexcContractClient:
    """
    Blocking client for the MEXC contract (futures) API.

    Signature: HMAC-SHA256(secret, api_key + request_time + param_string) where
    param_string is the sorted query for GET/DELETE and the JSON body for POST.
    """

    def __init__(self, api_key: str, api_secret: str, base_url: str, timeout: float = 15.0,
                 session: Optional[requests.Session] = None):
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self, ts: str, payload: str) -> Dict[str, str]:
        return {
            "ApiKey": self.api_key,
            "Request-Time": ts,
            "Signature": sign(self.api_secret, f"{self.api_key}{ts}{payload}"),
            "Content-Type": "application/json",
        }

    def _request(self, method: str, path: str, params: Optional[dict] = None) -> Any:
        if not self.api_key or not self.api_secret:
            raise ValueError("Missing MEXC API key or secret")

        params = {k: v for k, v in (params or {}).items() if v is not None}
        ts = str(int(time.time() * 1000))
        if method == "POST":
            payload = json.dumps(params, separators=(",", ":"))
            kwargs: Dict[str, Any] = {"data": payload}
        else:
            payload = build_query(sorted(params.items()))
            kwargs = {"params": params}

        r = self.session.request(
            method, f"{self.base_url}{path}", headers=self._headers(ts, payload), timeout=self.timeout, **kwargs
        )
        if r.status_code >= 400:
            raise MexcHTTPError(r.status_code, r.text)

        data = r.json() if r.content else {}
        if isinstance(data, dict) and data.get("success") is False:
            raise MexcHTTPError(r.status_code, r.text)
        return data

    def assets(self) -> list:
        return self._request("GET", "/api/v1/private/account/assets").get("data") or []

    def change_leverage(self, symbol: str, leverage: int) -> dict:
        return self._request(
            "POST",
            "/api/v1/private/position/change_leverage",
            {"symbol": contract_symbol(symbol), "leverage": int(leverage), "openType": 1},
        )

    def submit_order(self, symbol: str, side: int, order_type: int, vol: float,
                     price: Optional[float] = None, leverage: Optional[int] = None) -> dict:
        return self._request(
            "POST",
            "/api/v1/private/order/submit",
            {
                "symbol": contract_symbol(symbol),
                "side": side,
                "type": order_type,
                "vol": vol,
                "price": price,
                "leverage": leverage,
                "openType": 1,
            },
        )

    def open_positions(self, symbol: Optional[str] = None) -> list:
        params = {"symbol": contract_symbol(symbol)} if symbol else {}
        return self._request("GET", "/api/v1/private/position/open_positions", params).get("data") or []

    def cancel_order(self, order_id: str) -> dict:
        # contract cancel takes a JSON list of order ids
        ts = str(int(time.time() * 1000))
        payload = json.dumps([str(order_id)])
        r = self.session.post(
            f"{self.base_url}/api/v1/private/order/cancel", data=payload, headers=self._headers(ts, payload), timeout=self.timeout
        )
        if r.status_code >= 400:
            raise MexcHTTPError(r.status_code, r.text)
        return r.json() if r.content else {}


class MexcSpotClient:
    """Blocking client for the MEXC spot v3 API (Binance-style query signing)."""

    def __init__(self, api_key: str, api_secret: str, base_url: str, timeout: float = 15.0,
                 session: Optional[requests.Session] = None):
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _signed(self, method: str, path: str, params: Optional[dict] = None) -> Any:
        if not self.api_key or not self.api_secret:
            raise ValueError("Missing MEXC API key or secret")
        params = {k: v for k, v in (params or {}).items() if v is not None}
        params["timestamp"] = int(time.time() * 1000)
        url = f"{self.base_url}{path}?{signed_query(self.api_secret, params)}"
        r = self.session.request(method, url, headers={"X-MEXC-APIKEY": self.api_key}, timeout=self.timeout)
        if r.status_code >= 400:
            raise MexcHTTPError(r.status_code, r.text)
        return r.json() if r.content else {}

    def account(self) -> dict:
        return self._signed("GET", "/api/v3/account")

    def place_order(self, symbol: str, side: str, order_type: str, quantity: float,
                    price: Optional[float] = None) -> dict:
        params: Dict[str, Any] = {"symbol": symbol.upper(), "side": side, "type": order_type, "quantity": quantity}
        if order_type == "LIMIT":
            params["price"] = price
        return self._signed("POST", "/api/v3/order", params)

    def cancel_order(self, symbol: str, order_id: str) -> dict:
        return self._signed("DELETE", "/api/v3/order", {"symbol": symbol.upper(), "orderId": order_id})
