import asyncio
import json
from urllib.parse import parse_qs, urlsplit

import pytest

from botforge.accounts.credentials import Credentials
from botforge.exchange.binance import client as binance_client
from botforge.exchange.binance.client import BinanceClient, BinanceHTTPError
from botforge.exchange.binance.connector import BinanceConnector
from botforge.exchange.mexc import client as mexc
from botforge.exchange.mexc.connector import MexcConnector
from botforge.exchange.signing import sign, signed_query
from botforge.templates.resolve import OrderIntent


class FakeResponse:
    def __init__(self, status_code=200, data=None, headers=None):
        self.status_code = status_code
        self._data = data
        self.text = json.dumps(data) if data is not None else ""
        self.content = self.text.encode()
        self.headers = headers or {}

    def json(self):
        return self._data


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, params=None, headers=None, timeout=None, data=None):
        self.calls.append({"method": method, "url": url, "params": params, "headers": headers, "data": data})
        return self.responses.pop(0)

    def post(self, url, data=None, headers=None, timeout=None):
        return self.request("POST", url, headers=headers, timeout=timeout, data=data)


@pytest.fixture
def no_sleep(monkeypatch):
    monkeypatch.setattr(binance_client.time, "sleep", lambda s: None)


def _creds(exchange="binance", market_type="Futures"):
    return Credentials(id="acc-1", exchange=exchange, mode="Live", market_type=market_type, api_key="k", api_secret="s")


def _intent(order_type="MARKET", price=50_000.0, quantity=0.0123):
    return OrderIntent(
        symbol="BTCUSDT", side="LONG", order_type=order_type, price=price, quantity=quantity, margin=100.0, leverage=5
    )


# ---------------- signing ----------------


def test_signed_query_appends_hmac():
    params = {"symbol": "BTCUSDT", "timestamp": 1}
    query = signed_query("secret", params)
    base, signature = query.split("&signature=")
    assert base == "symbol=BTCUSDT&timestamp=1"
    assert signature == sign("secret", base)
    assert len(signature) == 64


# ---------------- binance client ----------------


def test_signed_request_carries_key_and_signature(no_sleep):
    session = FakeSession(FakeResponse(data={"assets": [{"asset": "USDT", "availableBalance": "80", "walletBalance": "100"}]}))
    client = BinanceClient("key", "secret", base_url="https://fapi.test", session=session)

    assert client.usdt_balance() == {"available": 80.0, "total": 100.0}

    call = session.calls[0]
    assert call["headers"]["X-MBX-APIKEY"] == "key"
    parts = urlsplit(call["url"])
    assert parts.path == "/fapi/v2/account"
    qs = parse_qs(parts.query)
    assert "signature" in qs and "timestamp" in qs
    assert qs["recvWindow"] == ["5000"]


def test_spot_client_uses_spot_paths_and_balances(no_sleep):
    session = FakeSession(FakeResponse(data={"balances": [{"asset": "USDT", "free": "40", "locked": "10"}]}))
    client = BinanceClient("key", "secret", base_url="https://api.test", market=binance_client.SPOT, session=session)

    assert client.usdt_balance() == {"available": 40.0, "total": 50.0}
    assert urlsplit(session.calls[0]["url"]).path == "/api/v3/account"
    assert client.position_risk() == []


def test_rate_limit_is_retried(no_sleep):
    session = FakeSession(
        FakeResponse(429, {"code": -1003}, headers={"Retry-After": "1"}),
        FakeResponse(data={"price": "50000.5"}),
    )
    client = BinanceClient(session=session)
    assert client.last_price("btcusdt") == 50000.5
    assert len(session.calls) == 2


def test_client_error_is_not_retried(no_sleep):
    session = FakeSession(FakeResponse(400, {"code": -1121, "msg": "Invalid symbol."}))
    client = BinanceClient(session=session)
    with pytest.raises(BinanceHTTPError) as exc:
        client.last_price("NOPE")
    assert exc.value.status_code == 400
    assert len(session.calls) == 1


def test_timestamp_drift_resyncs_and_retries(no_sleep):
    session = FakeSession(
        FakeResponse(400, {"code": -1021, "msg": "Timestamp outside recvWindow"}),
        FakeResponse(data={"serverTime": 10**13}),
        FakeResponse(data={"orderId": 1}),
    )
    client = BinanceClient("key", "secret", session=session)
    assert client.cancel_order("BTCUSDT", "1") == {"orderId": 1}
    assert client._time_offset_ms > 0


def test_signed_call_without_keys_fails():
    with pytest.raises(ValueError):
        BinanceClient(session=FakeSession()).account()


def test_limit_order_sends_time_in_force(no_sleep):
    session = FakeSession(FakeResponse(data={"orderId": 9}))
    client = BinanceClient("key", "secret", session=session)
    client.place_order("btcusdt", "BUY", "LIMIT", 0.01, price=49_000)
    qs = parse_qs(urlsplit(session.calls[0]["url"]).query)
    assert qs["timeInForce"] == ["GTC"]
    assert qs["price"] == ["49000"]
    assert qs["symbol"] == ["BTCUSDT"]


# ---------------- binance connector ----------------


EXCHANGE_INFO = {
    "symbols": [
        {
            "symbol": "BTCUSDT",
            "filters": [
                {"filterType": "PRICE_FILTER", "tickSize": "0.10"},
                {"filterType": "LOT_SIZE", "stepSize": "0.001", "minQty": "0.001"},
            ],
        }
    ]
}


class FakeBinance:
    def __init__(self, fail_account=False):
        self.fail_account = fail_account
        self.orders = []
        self.leverage = None

    def account(self):
        if self.fail_account:
            raise BinanceHTTPError(401, "invalid api key")
        return {}

    def usdt_balance(self):
        return {"available": 750.0, "total": 1000.0}

    def exchange_info_cached(self):
        return EXCHANGE_INFO

    def place_order(self, symbol, side, order_type, quantity, price=None):
        self.orders.append((symbol, side, order_type, quantity, price))
        return {"orderId": 77, "status": "FILLED", "avgPrice": "0", "executedQty": "0.012", "cummulativeQuoteQty": "600"}

    def set_leverage(self, symbol, leverage):
        self.leverage = (symbol, leverage)
        return {"leverage": leverage}

    def position_risk(self):
        return [{"symbol": "BTCUSDT", "positionAmt": "0.012"}, {"symbol": "ETHUSDT", "positionAmt": "0"}]

    def close_position_market(self, symbol):
        return {"status": "FILLED", "symbol": symbol}


def test_binance_connector_rounds_and_reports_fill():
    fake = FakeBinance()
    connector = BinanceConnector(client_factory=lambda creds: fake)

    result = asyncio.run(connector.place_order(_intent(), _creds(), {}))

    assert fake.orders == [("BTCUSDT", "BUY", "MARKET", 0.012, None)]
    assert result["order_id"] == 77
    assert result["avg_price"] == pytest.approx(50_000)
    assert result["total_filled"] == pytest.approx(0.012)


def test_binance_connector_rounds_limit_price():
    fake = FakeBinance()
    connector = BinanceConnector(client_factory=lambda creds: fake)
    asyncio.run(connector.place_order(_intent("LIMIT", price=49_999.97), _creds(), {}))
    assert fake.orders[0][4] == 49_999.9


def test_binance_connector_balance_and_positions():
    fake = FakeBinance()
    connector = BinanceConnector(client_factory=lambda creds: fake)

    balance = asyncio.run(connector.get_balance(_creds()))
    assert balance["USDT"] == {"available": 750.0, "total": 1000.0}

    positions = asyncio.run(connector.get_open_positions(_creds()))
    assert [p["symbol"] for p in positions] == ["BTCUSDT"]
    assert asyncio.run(connector.get_open_positions(_creds(market_type="Spot"))) == []


def test_binance_connector_leverage_only_for_futures():
    fake = FakeBinance()
    connector = BinanceConnector(client_factory=lambda creds: fake)
    assert asyncio.run(connector.set_leverage("BTCUSDT", 5.0, _creds(market_type="Spot"))) == {}
    asyncio.run(connector.set_leverage("BTCUSDT", 5.0, _creds()))
    assert fake.leverage == ("BTCUSDT", 5)


def test_binance_key_validation_reports_failure():
    connector = BinanceConnector(client_factory=lambda creds: FakeBinance(fail_account=True))
    result = asyncio.run(connector.validate_keys(_creds()))
    assert result["valid"] is False
    assert "invalid api key" in result["error"]


def test_binance_connector_reuses_client_per_account():
    built = []

    def factory(creds):
        built.append(creds.id)
        return FakeBinance()

    connector = BinanceConnector(client_factory=factory)
    connector.client(_creds())
    connector.client(_creds())
    connector.client(_creds(market_type="Spot"))
    assert len(built) == 2


# ---------------- mexc ----------------


@pytest.mark.parametrize("raw,expected", [("BTCUSDT", "BTC_USDT"), ("btc_usdt", "BTC_USDT"), ("BTCUSDC", "BTCUSDC")])
def test_contract_symbol(raw, expected):
    assert mexc.contract_symbol(raw) == expected


def test_contract_post_is_signed_over_json_body():
    session = FakeSession(FakeResponse(data={"success": True, "data": {"orderId": "123"}}))
    client = mexc.MexcContractClient("key", "secret", "https://contract.test", session=session)

    client.submit_order("BTCUSDT", mexc.OPEN_LONG, mexc.MARKET, 3)

    call = session.calls[0]
    body = json.loads(call["data"])
    assert body["symbol"] == "BTC_USDT"
    assert "price" not in body
    headers = call["headers"]
    expected = sign("secret", f"key{headers['Request-Time']}{call['data']}")
    assert headers["Signature"] == expected
    assert headers["ApiKey"] == "key"


def test_contract_failure_flag_raises():
    session = FakeSession(FakeResponse(data={"success": False, "code": 602, "message": "signature error"}))
    client = mexc.MexcContractClient("key", "secret", "https://contract.test", session=session)
    with pytest.raises(mexc.MexcHTTPError):
        client.assets()


class FakeMexcContract:
    def __init__(self):
        self.submitted = []

    def assets(self):
        return [{"currency": "USDT", "availableBalance": 300, "equity": 320}]

    def submit_order(self, symbol, side, order_type, vol, price=None, leverage=None):
        self.submitted.append((symbol, side, order_type, vol, price, leverage))
        return {"success": True, "data": 555}

    def open_positions(self, symbol=None):
        return [{"symbol": "BTC_USDT", "positionType": 2, "holdVol": 4}]


def test_mexc_connector_contract_flow():
    fake = FakeMexcContract()
    connector = MexcConnector(client_factory=lambda creds: fake)
    creds = _creds(exchange="mexc")

    balance = asyncio.run(connector.get_balance(creds))
    assert balance["USDT"] == {"available": 300.0, "total": 320.0}

    placed = asyncio.run(connector.place_order(_intent("LIMIT", price=49_000), creds, {}))
    assert placed["order_id"] == 555
    assert placed["status"] == "NEW"
    assert placed["avg_price"] is None
    assert fake.submitted[0] == ("BTCUSDT", mexc.OPEN_LONG, mexc.LIMIT, 0.0123, 49_000, 5)

    closed = asyncio.run(connector.close_position("BTCUSDT", creds))
    assert closed["status"] == "closed"
    assert fake.submitted[1] == ("BTCUSDT", mexc.CLOSE_SHORT, mexc.MARKET, 4.0, None, None)
