from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

from botforge.core import events as ev
from botforge.core.errors import TradingError, ValidationError
from botforge.core.events import EventBus
from botforge.execution.router import OrderRouter
from botforge.persistence.record_store import ACTIVE_ORDERS, CLOSED_ORDERS, RecordStore

log = logging.getLogger("botforge.orders")


def calculate_pnl(side: str, entry_price: float, exit_price: float, quantity: float, margin: float = 0.0) -> Dict[str, float]:
    """Unrealised/realised PnL of a position; percentage is on the margin used."""
    if not entry_price or not exit_price or not quantity:
        return {"pnl": 0.0, "percentage": 0.0}
    diff = exit_price - entry_price
    pnl = diff * quantity if str(side).upper() in ("LONG", "BUY") else -diff * quantity
    pct = (pnl / margin) * 100 if margin > 0 else 0.0
    return {"pnl": pnl, "percentage": pct}


class OrderBook:
    """
    Lifecycle of orders after placement:
      PENDING -> ACTIVE     (mark_filled / sync_fills)
      ACTIVE  -> CLOSED     (close_order)
      PENDING -> CANCELLED  (cancel_order)
    Finished orders move from `activeOrders` to `closedOrders`.
    """

    def __init__(self, store: RecordStore, router: OrderRouter, bus: Optional[EventBus] = None):
        self.store = store
        self.router = router
        self.bus = bus

    def list_orders(self, status: str = "active", bot_id: Optional[str] = None) -> List[Dict[str, Any]]:
        collection = CLOSED_ORDERS if status == "closed" else ACTIVE_ORDERS
        orders = self.store.get_all(collection)
        if bot_id:
            orders = [o for o in orders if o.get("bot_id") == bot_id]
        return orders

    def get_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        return self.store.get_by_id(ACTIVE_ORDERS, order_id)

    async def _connector_call(self, order: Dict[str, Any], method: str, *args, **kwargs) -> Optional[Dict[str, Any]]:
        """Mirror the state change on the exchange when the account still resolves."""
        creds = self.router.resolver.resolve(order.get("user_id"), order.get("account_id"))
        if creds is None:
            log.warning("order %s: account %s gone, local state only", order["id"], order.get("account_id"))
            return None
        connector = self.router.connector_for(creds)
        fn = getattr(connector, method, None)
        if fn is None:
            return None
        return await self.router.call_connector(fn(*args, credentials=creds, **kwargs))

    def _finish(self, order: Dict[str, Any], updates: Dict[str, Any], event: str) -> Dict[str, Any]:
        done = {**order, **updates, "updated_at": int(time.time() * 1000)}
        self.store.delete_by_id(ACTIVE_ORDERS, order["id"])
        self.store.insert(CLOSED_ORDERS, done, first=True)
        if self.bus is not None:
            self.bus.emit(event, done)
        return done

    def mark_filled(self, exchange_order_id: str, fill_price: float) -> Optional[Dict[str, Any]]:
        """PENDING -> ACTIVE for the stored order behind an exchange order id."""
        for order in self.store.get_all(ACTIVE_ORDERS):
            if order.get("exchange_order_id") != str(exchange_order_id) or order.get("status") != "PENDING":
                continue
            now = int(time.time() * 1000)
            updated = self.store.update_by_id(
                ACTIVE_ORDERS,
                order["id"],
                {"status": "ACTIVE", "entry_price": float(fill_price), "filled_at": now, "updated_at": now},
            )
            log.info("order filled id=%s @ %s", order["id"], fill_price)
            return updated
        return None

    def sync_fills(self, prices: Dict[str, float]) -> List[Dict[str, Any]]:
        """Let connectors that simulate a book match resting orders, then record the fills."""
        promoted: List[Dict[str, Any]] = []
        for connector in self.router.connectors.values():
            match = getattr(connector, "match_resting", None)
            if match is None:
                continue
            for fill in match(prices):
                order = self.mark_filled(fill["order_id"], fill["fill_price"])
                if order is not None:
                    promoted.append(order)
        return promoted

    async def close_order(self, order_id: str, exit_price: float, reason: str = "manual") -> Optional[Dict[str, Any]]:
        order = self.get_order(order_id)
        if order is None:
            return None
        if order.get("status") == "PENDING":
            raise ValidationError("pending orders are cancelled, not closed")

        await self._connector_call(
            order,
            "close_position",
            order["symbol"],
            prices={order["symbol"]: exit_price},
            order_id=order.get("exchange_order_id"),
        )

        res = calculate_pnl(order["side"], order["entry_price"], exit_price, order["quantity"], order.get("margin") or 0.0)
        closed = self._finish(
            order,
            {
                "status": "CLOSED",
                "exit_price": exit_price,
                "pnl": res["pnl"],
                "pnl_percent": res["percentage"],
                "close_reason": reason,
                "closed_at": int(time.time() * 1000),
            },
            ev.ORDER_CLOSED,
        )
        log.info("order closed id=%s pnl=%.4f (%s)", order_id, res["pnl"], reason)
        return closed

    async def cancel_order(self, order_id: str, reason: str = "manual") -> Optional[Dict[str, Any]]:
        order = self.get_order(order_id)
        if order is None:
            return None
        if order.get("status") != "PENDING":
            raise ValidationError("only pending orders can be cancelled")

        if order.get("exchange_order_id"):
            await self._connector_call(order, "cancel_order", order["exchange_order_id"], order["symbol"])

        cancelled = self._finish(
            order,
            {"status": "CANCELLED", "close_reason": reason, "closed_at": int(time.time() * 1000)},
            ev.ORDER_CANCELLED,
        )
        log.info("order cancelled id=%s (%s)", order_id, reason)
        return cancelled

    async def close_bot_orders(self, bot_id: str, price: float, reason: str) -> List[Dict[str, Any]]:
        """Close (or cancel, if still pending) every live order of a bot."""
        done: List[Dict[str, Any]] = []
        errors: List[str] = []
        for order in self.list_orders(bot_id=bot_id):
            try:
                if order.get("status") == "PENDING":
                    result = await self.cancel_order(order["id"], reason)
                else:
                    result = await self.close_order(order["id"], price, reason)
            except TradingError as e:
                errors.append(f"{order['id']}: {e.reason}")
                continue
            if result is not None:
                done.append(result)
        if errors:
            raise TradingError("failed to close orders: " + "; ".join(errors), details={"closed": len(done)})
        return done
