import pytest

from botforge.container import Container
from botforge.core.config import settings
from botforge.persistence.record_store import MemoryRecordStore
from botforge.runner.feeds import StaticMarketFeed


@pytest.fixture(autouse=True)
def _test_env(monkeypatch, tmp_path):
    """
    Ensure tests never touch real files or live exchanges.
    """
    monkeypatch.setenv("MARKET_DATA_SOURCE", "static")
    monkeypatch.setattr(settings, "DB_PATH", str(tmp_path / "botforge.db"))
    monkeypatch.setattr(settings, "AUDIT_JSONL_PATH", str(tmp_path / "audit.jsonl"))
    monkeypatch.setattr(settings, "MARKET_DATA_SOURCE", "static")
    monkeypatch.setattr(settings, "MANUAL_ORDERS_RESPECT_LOCK", False)
    monkeypatch.setattr(settings, "CANDLE_STRIKE_DEFAULT_COOLDOWN_SECONDS", 30)


class FakeClock:
    """Manually advanced epoch-ms clock."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def stack(clock):
    """Full wiring over an in-memory store, a pushed market feed and the demo connector."""
    return Container(store=MemoryRecordStore(), feed=StaticMarketFeed(), clock=clock)


@pytest.fixture
def demo_account(stack):
    return stack.accounts.save_demo_account(name="Paper", balance=10000.0)


@pytest.fixture
def template(stack, demo_account):
    return stack.templates.save(
        {
            "name": "BTC 100 USDT",
            "pair": "BTCUSDT",
            "direction": "Long",
            "size": 100,
            "size_mode": "USDT",
            "leverage": 1,
            "order_type": "MARKET",
            "account_id": demo_account["id"],
            "user_id": settings.DEFAULT_USER_ID,
        }
    )
