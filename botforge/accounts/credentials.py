from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Callable, List, Optional

from botforge.persistence.record_store import EXCHANGE_ACCOUNTS, RecordStore

log = logging.getLogger("botforge.accounts")

DEMO_MODE = "Demo"
LIVE_MODE = "Live"


def _identity(value: str) -> str:
    return value


@dataclass
class Credentials:
    id: str
    exchange: str  # "binance" | "mexc" (demo accounts keep the exchange they imitate)
    mode: str  # "Demo" | "Live"
    market_type: str = "Futures"  # "Futures" | "Spot"
    api_key: str = ""
    api_secret: str = ""
    name: str = ""
    user_id: Optional[str] = None
    balance: float = 0.0

    @property
    def is_demo(self) -> bool:
        return self.mode == DEMO_MODE


class AccountStore:
    """
    Persists exchange accounts in the `exchangeAccounts` collection.

    Secrets are stored as given by `encrypt`; the resolver applies the matching
    `decrypt` on read. Demo accounts belong to no user.
    """

    def __init__(self, store: RecordStore, encrypt: Callable[[str], str] = _identity):
        self.store = store
        self.encrypt = encrypt

    def list_accounts(self, user_id: Optional[str] = None) -> List[dict]:
        out = []
        for acc in self.store.get_all(EXCHANGE_ACCOUNTS):
            if acc.get("mode") == DEMO_MODE or acc.get("user_id") == user_id:
                public = {k: v for k, v in acc.items() if not k.endswith("_encrypted")}
                out.append(public)
        return out

    def save_demo_account(
        self,
        name: str | None = None,
        exchange: str = "binance",
        market_type: str = "Futures",
        balance: float = 10000.0,
    ) -> dict:
        existing = [a for a in self.store.get_all(EXCHANGE_ACCOUNTS) if a.get("mode") == DEMO_MODE]
        account = {
            "id": f"demo-{uuid.uuid4()}",
            "name": name or f"Demo Account {len(existing) + 1}",
            "exchange": exchange.lower(),
            "market_type": market_type,
            "mode": DEMO_MODE,
            "balance": float(balance),
            "user_id": None,
            "created_at": int(time.time() * 1000),
            "is_active": True,
        }
        self.store.insert(EXCHANGE_ACCOUNTS, account)
        return account

    def save_exchange_keys(
        self,
        user_id: str,
        exchange: str,
        market_type: str,
        api_key: str,
        api_secret: str,
        name: str | None = None,
    ) -> dict:
        account = {
            "id": f"acc-{uuid.uuid4()}",
            "name": name or f"{exchange} {market_type} {LIVE_MODE}",
            "exchange": exchange.lower(),
            "market_type": market_type,
            "mode": LIVE_MODE,
            "user_id": user_id,
            "api_key_encrypted": self.encrypt(api_key),
            "api_secret_encrypted": self.encrypt(api_secret),
            "created_at": int(time.time() * 1000),
            "is_active": True,
            "balance": 0.0,
        }
        self.store.insert(EXCHANGE_ACCOUNTS, account)
        return {k: v for k, v in account.items() if not k.endswith("_encrypted")}

    def delete_account(self, account_id: str) -> bool:
        return self.store.delete_by_id(EXCHANGE_ACCOUNTS, account_id)


class CredentialResolver:
    """Given (user, account) returns decrypted credentials, or None."""

    def __init__(self, store: RecordStore, decrypt: Callable[[str], str] = _identity):
        self.store = store
        self.decrypt = decrypt

    def resolve(self, user_id: Optional[str], account_id: Optional[str]) -> Optional[Credentials]:
        if not account_id:
            return None

        acc = self.store.get_by_id(EXCHANGE_ACCOUNTS, account_id)
        if acc is None:
            return None

        if acc.get("mode") == DEMO_MODE:
            return Credentials(
                id=acc["id"],
                exchange=str(acc.get("exchange") or "binance").lower(),
                mode=DEMO_MODE,
                market_type=acc.get("market_type") or "Futures",
                api_key="DEMO",
                api_secret="DEMO",
                name=acc.get("name") or "",
                balance=float(acc.get("balance") or 0.0),
            )

        if acc.get("user_id") != user_id:
            return None

        key_enc = acc.get("api_key_encrypted")
        secret_enc = acc.get("api_secret_encrypted")
        if not key_enc or not secret_enc:
            log.warning("missing encrypted keys for account %s", account_id)
            return None

        try:
            api_key = self.decrypt(key_enc)
            api_secret = self.decrypt(secret_enc)
        except Exception:
            log.exception("failed to decrypt keys for account %s", account_id)
            return None

        if not api_key or not api_secret:
            return None

        return Credentials(
            id=acc["id"],
            exchange=str(acc.get("exchange") or "").lower(),
            mode=acc.get("mode") or LIVE_MODE,
            market_type=acc.get("market_type") or "Futures",
            api_key=api_key,
            api_secret=api_secret,
            name=acc.get("name") or "",
            user_id=user_id,
            balance=float(acc.get("balance") or 0.0),
        )

    def mark_balance_checked(self, account_id: str) -> None:
        self.store.update_by_id(
            EXCHANGE_ACCOUNTS, account_id, {"last_balance_update": int(time.time() * 1000)}
        )
