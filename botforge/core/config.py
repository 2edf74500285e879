# botforge/core/config.py
from __future__ import annotations

import json
import logging
from typing import Any, List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

log = logging.getLogger("botforge.config")


def _parse_list(v: Any) -> List[str]:
    """
    Accepts:
      - list: ["BTCUSDT","ETHUSDT"]
      - csv:  "BTCUSDT,ETHUSDT"
      - json: '["BTCUSDT","ETHUSDT"]'
    Returns uppercase, trimmed symbols.
    """
    if v is None:
        return []
    if isinstance(v, list):
        return [str(x).strip().upper() for x in v if str(x).strip()]
    s = str(v).strip()
    if not s:
        return []
    if s.startswith("["):
        try:
            arr = json.loads(s)
            return [str(x).strip().upper() for x in arr if str(x).strip()]
        except Exception:
            # fall back to csv parse
            pass
    return [p.strip().upper() for p in s.split(",") if p.strip()]


class Settings(BaseSettings):
    """Runtime configuration loaded from .env / environment variables."""

    # enable_decoding=False keeps pydantic-settings from json-decoding List fields.
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        enable_decoding=False,
    )

    # --- Persistence / audit ---
    DB_PATH: str = "data/botforge.db"
    AUDIT_JSONL_PATH: str = "logs/audit.jsonl"

    # --- Scheduler ---
    EVAL_INTERVAL_SECONDS: float = 2.0
    MARKET_DATA_SOURCE: str = "static"  # static/binance
    CANDLE_HISTORY_LIMIT: int = 200

    # --- Accounts ---
    DEFAULT_USER_ID: str = "local"
    DEMO_START_BALANCE: float = 10000.0

    # --- Order validation ---
    TRADING_PAIRS: List[str] = Field(
        default_factory=lambda: [
            "BTCUSDT",
            "ETHUSDT",
            "BNBUSDT",
            "SOLUSDT",
            "XRPUSDT",
            "ADAUSDT",
            "DOGEUSDT",
            "AVAXUSDT",
            "DOTUSDT",
            "LINKUSDT",
            "LTCUSDT",
            "MATICUSDT",
        ]
    )
    MIN_NOTIONAL_USDT: float = 5.0
    MAX_LEVERAGE: int = 125

    # --- Strategy safety ---
    CANDLE_STRIKE_DEFAULT_COOLDOWN_SECONDS: int = 30
    MANUAL_ORDERS_RESPECT_LOCK: bool = False

    # --- Exchanges ---
    BINANCE_FAPI_BASE_URL: str = "https://fapi.binance.com"
    BINANCE_SPOT_BASE_URL: str = "https://api.binance.com"
    BINANCE_RECV_WINDOW: int = 5000
    MEXC_CONTRACT_BASE_URL: str = "https://contract.mexc.com"
    MEXC_SPOT_BASE_URL: str = "https://api.mexc.com"

    @field_validator("TRADING_PAIRS", mode="before")
    @classmethod
    def parse_trading_pairs(cls, v: Any) -> List[str]:
        return _parse_list(v)

    def model_post_init(self, __context: Any) -> None:
        self.MARKET_DATA_SOURCE = (self.MARKET_DATA_SOURCE or "static").lower().strip()

    def validate_runtime(self) -> List[str]:
        """
        Fail-fast validation. Returns warnings (non-fatal).
        Raises ValueError for fatal misconfiguration.
        """
        errors: List[str] = []
        warnings: List[str] = []

        if self.EVAL_INTERVAL_SECONDS <= 0:
            errors.append("EVAL_INTERVAL_SECONDS must be > 0.")
        elif self.EVAL_INTERVAL_SECONDS < 1:
            warnings.append(
                f"EVAL_INTERVAL_SECONDS={self.EVAL_INTERVAL_SECONDS} polls faster than 1s; "
                "exchange rate limits may be hit."
            )

        if self.MARKET_DATA_SOURCE not in {"static", "binance"}:
            errors.append("MARKET_DATA_SOURCE must be 'static' or 'binance'.")

        if self.MIN_NOTIONAL_USDT < 0:
            errors.append("MIN_NOTIONAL_USDT must be >= 0.")

        if self.MAX_LEVERAGE < 1:
            errors.append("MAX_LEVERAGE must be >= 1.")

        if self.DEMO_START_BALANCE <= 0:
            errors.append("DEMO_START_BALANCE must be > 0.")

        if self.CANDLE_STRIKE_DEFAULT_COOLDOWN_SECONDS < 0:
            errors.append("CANDLE_STRIKE_DEFAULT_COOLDOWN_SECONDS must be >= 0.")

        if not self.TRADING_PAIRS:
            warnings.append("TRADING_PAIRS is empty. Every symbol will pass validation.")

        if self.MANUAL_ORDERS_RESPECT_LOCK:
            warnings.append(
                "MANUAL_ORDERS_RESPECT_LOCK is on: manual orders are rejected while "
                "a strategy family lock is held."
            )

        if errors:
            msg = "Config validation failed:\n" + "\n".join([f"- {e}" for e in errors])
            raise ValueError(msg)

        return warnings


# Pydantic v2 + postponed annotations safety
Settings.model_rebuild()
settings = Settings()
