from __future__ import annotations

import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional

from botforge.accounts.credentials import CredentialResolver, Credentials
from botforge.core import events as ev
from botforge.core.errors import AccountError, ConnectorError, TradingError
from botforge.core.events import EventBus
from botforge.exchange.base import Connector, PriceMap, available_usdt
from botforge.execution.validation import validate_order
from botforge.persistence.record_store import ACTIVE_ORDERS, RecordStore
from botforge.templates.resolve import OrderIntent

log = logging.getLogger("botforge.router")

ORDER_PLACED = "ORDER_PLACED"


# =========================
# Execution Result
# =========================
@dataclass
class ExecResult:
    action: str
    details: Dict[str, Any] = field(default_factory=dict)
    order: Optional[Dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.action == ORDER_PLACED

    @property
    def reason(self) -> Optional[str]:
        return self.details.get("reason")

    @classmethod
    def failed(cls, err: TradingError) -> "ExecResult":
        return cls(action=err.action, details={**err.details, "reason": err.reason})


def _snapshot(s) -> Optional[Dict[str, Any]]:
    return asdict(s) if s is not None else None


# =========================
# Router
# =========================
class OrderRouter:
    """
    intent -> credentials -> connector -> balance -> validation -> leverage
    -> place -> persist -> order.created.

    Never raises: every failure comes back as a failed ExecResult and a
    `bot.error` event.
    """

    def __init__(
        self,
        store: RecordStore,
        resolver: CredentialResolver,
        connectors: Dict[str, Connector],
        bus: Optional[EventBus] = None,
    ):
        self.store = store
        self.resolver = resolver
        self.connectors = connectors
        self.bus = bus

    # ---------------- lookups ----------------

    def credentials(self, user_id: Optional[str], account_id: Optional[str]) -> Credentials:
        creds = self.resolver.resolve(user_id, account_id)
        if creds is None:
            raise AccountError(
                "Exchange account not found or invalid credentials",
                details={"account_id": account_id},
            )
        return creds

    def connector_for(self, creds: Credentials) -> Connector:
        key = "demo" if creds.is_demo else creds.exchange.lower()
        connector = self.connectors.get(key)
        if connector is None:
            raise ConnectorError(f"Unsupported exchange: {creds.exchange}")
        return connector

    async def available_balance(self, user_id: Optional[str], account_id: Optional[str]) -> float:
        creds = self.credentials(user_id, account_id)
        connector = self.connector_for(creds)
        return available_usdt(await self.call_connector(connector.get_balance(creds)))

    @staticmethod
    async def call_connector(coro):
        """Await a connector call; transport errors become ConnectorError."""
        try:
            return await coro
        except TradingError:
            raise
        except Exception as e:
            raise ConnectorError(str(e) or e.__class__.__name__) from e

    # ---------------- execute ----------------

    async def execute(self, intent: OrderIntent, prices: PriceMap) -> ExecResult:
        try:
            order = await self._execute(intent, prices)
        except TradingError as e:
            log.warning("order rejected bot=%s symbol=%s: %s", intent.bot_id, intent.symbol, e.reason)
            self._emit_error(intent, e.reason)
            return ExecResult.failed(e)
        except Exception as e:
            log.exception("order routing crashed bot=%s symbol=%s", intent.bot_id, intent.symbol)
            self._emit_error(intent, str(e))
            return ExecResult(action=TradingError.action, details={"reason": str(e)})

        return ExecResult(
            action=ORDER_PLACED,
            details={"order_id": order["id"], "status": order["status"]},
            order=order,
        )

    async def _execute(self, intent: OrderIntent, prices: PriceMap) -> Dict[str, Any]:
        # 1) credentials, 2) connector
        creds = self.credentials(intent.user_id, intent.account_id)
        connector = self.connector_for(creds)
        intent.market_type = creds.market_type or intent.market_type

        # 3) balance, 4) validation
        balance = available_usdt(await self.call_connector(connector.get_balance(creds)))
        validate_order(intent, balance, prices)

        # 5) leverage (futures only)
        if intent.market_type == "Futures" and intent.leverage:
            await self.call_connector(connector.set_leverage(intent.symbol, intent.leverage, creds))

        # 6) place
        result = await self.call_connector(connector.place_order(intent, creds, prices)) or {}

        # 7) MARKET fills into a position, LIMIT rests as pending unless the venue filled it already
        filled = str(result.get("status") or "").upper() == "FILLED"
        status = "ACTIVE" if intent.order_type == "MARKET" or filled else "PENDING"
        entry = float(result.get("avg_price") or intent.price)
        now = int(time.time() * 1000)

        order = {
            "id": str(uuid.uuid4()),
            "pair": intent.symbol,
            "symbol": intent.symbol,
            "side": intent.side,
            "type": intent.order_type,
            "entry_price": entry,
            "quantity": intent.quantity,
            "margin": intent.margin,
            "size": intent.margin,
            "leverage": intent.leverage,
            "tp": _snapshot(intent.take_profit),
            "sl": _snapshot(intent.stop_loss),
            "status": status,
            "source": intent.source,
            "bot_id": intent.bot_id,
            "bot_type": intent.bot_type,
            "template_id": intent.template_id,
            "account_id": creds.id,
            "user_id": intent.user_id,
            "exchange": creds.exchange,
            "mode": creds.mode,
            "market_type": intent.market_type,
            "exchange_order_id": str(result.get("order_id")) if result.get("order_id") is not None else None,
            "created_at": now,
            "updated_at": now,
        }

        # 8) persist + notify
        self.store.insert(ACTIVE_ORDERS, order, first=True)
        self.resolver.mark_balance_checked(creds.id)
        if self.bus is not None:
            self.bus.emit(ev.ORDER_CREATED, order)

        log.info(
            "order placed id=%s %s %s %s qty=%.8f @ %s (%s)",
            order["id"],
            order["type"],
            order["side"],
            order["symbol"],
            order["quantity"],
            entry,
            intent.source,
        )
        return order

    def _emit_error(self, intent: OrderIntent, reason: str) -> None:
        if self.bus is None:
            return
        self.bus.emit(
            ev.BOT_ERROR,
            {
                "bot_id": intent.bot_id,
                "symbol": intent.symbol,
                "source": intent.source,
                "reason": reason,
            },
        )
