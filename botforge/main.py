import logging
from typing import Any, Dict, List, Optional

from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from botforge.container import Container
from botforge.core.config import settings
from botforge.core.errors import TradingError
from botforge.runner.feeds import StaticMarketFeed
from botforge.runner.models import Candle
from botforge.strategy.base import StrategyEngine
from botforge.templates.resolve import OrderRequest

log = logging.getLogger("botforge.api")

app = FastAPI(title="BotForge")
container_instance: Optional[Container] = None


SENSITIVE_KEYS = {"api_key", "api_secret", "api_key_encrypted", "api_secret_encrypted"}


def get_container() -> Container:
    global container_instance
    if container_instance is None:
        container_instance = Container()
    return container_instance


def get_engine(family: str) -> StrategyEngine:
    try:
        return get_container().engine(family)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"unknown bot family: {family}") from None


@app.exception_handler(TradingError)
async def _trading_error(request: Request, exc: TradingError):
    return JSONResponse(
        status_code=400,
        content={"error": exc.reason, "action": exc.action, "details": exc.details},
    )


@app.on_event("startup")
async def _startup_validate_config():
    """Fail-fast config validation at startup."""
    try:
        warnings = settings.validate_runtime()
    except ValueError:
        # Fail-closed: crash the service rather than running with a dangerous config
        log.critical("refusing to start with invalid configuration", exc_info=True)
        raise
    for w in warnings:
        log.warning("config: %s", w)
    get_container()


@app.on_event("shutdown")
async def _shutdown_scheduler():
    if container_instance is not None and container_instance.scheduler.running:
        await container_instance.scheduler.stop()


# ---------------- request bodies ----------------


class ExitRuleBody(BaseModel):
    enabled: bool = False
    mode: str = "PERCENT"
    value: float = 0.0


class TemplateBody(BaseModel):
    name: str
    pairs: List[str] = Field(default_factory=list)
    pair: Optional[str] = None
    direction: str = "Long"
    size: float = 100.0
    size_mode: str = "USDT"
    leverage: float = 1.0
    order_type: str = "MARKET"
    take_profit: ExitRuleBody = Field(default_factory=ExitRuleBody)
    stop_loss: ExitRuleBody = Field(default_factory=ExitRuleBody)
    account_id: Optional[str] = None
    user_id: Optional[str] = None
    market_type: str = "Futures"


class DemoAccountBody(BaseModel):
    name: Optional[str] = None
    exchange: str = "binance"
    market_type: str = "Futures"
    balance: float = Field(default_factory=lambda: settings.DEMO_START_BALANCE)


class ExchangeKeysBody(BaseModel):
    exchange: str
    api_key: str
    api_secret: str
    market_type: str = "Futures"
    name: Optional[str] = None
    user_id: Optional[str] = None


class ManualOrderBody(BaseModel):
    template_id: str
    direction: Optional[str] = None
    order_type: Optional[str] = None
    price: Optional[float] = None
    size: Optional[float] = None
    size_mode: Optional[str] = None
    pair: Optional[str] = None
    leverage: Optional[float] = None


class CloseOrderBody(BaseModel):
    price: Optional[float] = None
    reason: str = "manual"


class PriceBody(BaseModel):
    pair: str
    price: float


class CandleBody(BaseModel):
    pair: str
    timeframe: str = "1m"
    time: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0
    closed: bool = True


# ---------------- health / debug ----------------


@app.get("/")
async def root():
    c = get_container()
    return {
        "status": "ok",
        "market_data": settings.MARKET_DATA_SOURCE,
        "scheduler": c.scheduler.status()["running"],
    }


@app.get("/debug/settings")
async def debug_settings():
    data = settings.model_dump()
    for k in list(data):
        if any(s in k.lower() for s in ("secret", "key")):
            data[k] = "***"
    return data


# ---------------- templates ----------------


@app.get("/templates")
async def list_templates():
    return {"templates": [t.to_dict() for t in get_container().templates.list()]}


@app.post("/templates")
async def create_template(body: TemplateBody):
    data = body.model_dump()
    data["user_id"] = data.get("user_id") or settings.DEFAULT_USER_ID
    return get_container().templates.save(data).to_dict()


@app.get("/templates/{template_id}")
async def get_template(template_id: str):
    t = get_container().templates.get(template_id)
    if t is None:
        raise HTTPException(status_code=404, detail="template not found")
    return t.to_dict()


@app.put("/templates/{template_id}")
async def update_template(template_id: str, body: TemplateBody):
    c = get_container()
    if c.templates.get(template_id) is None:
        raise HTTPException(status_code=404, detail="template not found")
    data = body.model_dump()
    data["id"] = template_id
    data["user_id"] = data.get("user_id") or settings.DEFAULT_USER_ID
    return c.templates.save(data).to_dict()


@app.delete("/templates/{template_id}")
async def delete_template(template_id: str):
    return {"deleted": get_container().templates.delete(template_id)}


# ---------------- accounts ----------------


@app.get("/accounts")
async def list_accounts(user_id: Optional[str] = None):
    return {"accounts": get_container().accounts.list_accounts(user_id or settings.DEFAULT_USER_ID)}


@app.post("/accounts/demo")
async def create_demo_account(body: DemoAccountBody):
    return get_container().accounts.save_demo_account(
        name=body.name, exchange=body.exchange, market_type=body.market_type, balance=body.balance
    )


@app.post("/accounts/keys")
async def save_exchange_keys(body: ExchangeKeysBody):
    account = get_container().accounts.save_exchange_keys(
        user_id=body.user_id or settings.DEFAULT_USER_ID,
        exchange=body.exchange,
        market_type=body.market_type,
        api_key=body.api_key,
        api_secret=body.api_secret,
        name=body.name,
    )
    return {k: v for k, v in account.items() if k not in SENSITIVE_KEYS}


@app.post("/accounts/{account_id}/validate")
async def validate_account(account_id: str, user_id: Optional[str] = None):
    c = get_container()
    creds = c.router.credentials(user_id or settings.DEFAULT_USER_ID, account_id)
    connector = c.router.connector_for(creds)
    return await connector.validate_keys(creds)


@app.get("/accounts/{account_id}/balance")
async def account_balance(account_id: str, user_id: Optional[str] = None):
    c = get_container()
    available = await c.router.available_balance(user_id or settings.DEFAULT_USER_ID, account_id)
    return {"account_id": account_id, "available": available}


@app.delete("/accounts/{account_id}")
async def delete_account(account_id: str):
    return {"deleted": get_container().accounts.delete_account(account_id)}


# ---------------- bots ----------------


@app.get("/bots/{family}")
async def list_bots(family: str):
    return {"bots": [b.to_dict() for b in get_engine(family).list_bots()]}


@app.post("/bots/{family}")
async def create_bot(family: str, config: Dict[str, Any] = Body(...)):
    engine = get_engine(family)
    cfg = dict(config)
    # grid / dca need the price at creation
    if cfg.get("current_price") is None and cfg.get("pair"):
        price = get_container().feed.prices().get(str(cfg["pair"]).upper())
        if price is not None:
            cfg["current_price"] = price
    return engine.create_bot(cfg).to_dict()


@app.get("/bots/dca/trades")
async def dca_trades(bot_id: Optional[str] = None):
    return {"trades": get_engine("dca").list_trades(bot_id)}


@app.get("/bots/{family}/{bot_id}")
async def get_bot(family: str, bot_id: str):
    bot = get_engine(family).get_bot(bot_id)
    if bot is None:
        raise HTTPException(status_code=404, detail="bot not found")
    return bot.to_dict()


@app.patch("/bots/{family}/{bot_id}")
async def update_bot(family: str, bot_id: str, updates: Dict[str, Any] = Body(...)):
    bot = get_engine(family).update_bot(bot_id, updates)
    if bot is None:
        raise HTTPException(status_code=404, detail="bot not found")
    return bot.to_dict()


@app.post("/bots/{family}/{bot_id}/toggle")
async def toggle_bot(family: str, bot_id: str):
    bot = get_engine(family).toggle_bot(bot_id)
    if bot is None:
        raise HTTPException(status_code=404, detail="bot not found")
    return bot.to_dict()


@app.delete("/bots/{family}/{bot_id}")
async def delete_bot(family: str, bot_id: str):
    return {"deleted": get_engine(family).delete_bot(bot_id)}


# ---------------- market data (static feed) ----------------


def _static_feed() -> StaticMarketFeed:
    feed = get_container().feed
    if not isinstance(feed, StaticMarketFeed):
        raise HTTPException(status_code=409, detail="market data is not pushed (MARKET_DATA_SOURCE != static)")
    return feed


@app.post("/market/price")
async def push_price(body: PriceBody):
    feed = _static_feed()
    feed.set_price(body.pair, body.price)
    filled = get_container().orders.sync_fills(feed.prices())
    return {"status": "ok", "pair": body.pair.upper(), "price": body.price, "filled": len(filled)}


@app.post("/market/candle")
async def push_candle(body: CandleBody):
    data = body.model_dump()
    pair, timeframe = data.pop("pair"), data.pop("timeframe")
    _static_feed().push_candle(pair, timeframe, Candle(**data))
    return {"status": "ok"}


# ---------------- orders ----------------


@app.post("/orders/manual")
async def manual_order(body: ManualOrderBody):
    c = get_container()
    overrides = OrderRequest(
        direction=body.direction,
        order_type=body.order_type,
        price=body.price,
        size=body.size,
        size_mode=body.size_mode,
        pair=body.pair,
        leverage=body.leverage,
    )
    res = await c.pipeline.place_manual(body.template_id, overrides)
    return {"action": res.action, "details": res.details, "order": res.order}


@app.get("/orders")
async def list_orders(status: str = "active", bot_id: Optional[str] = None):
    orders = get_container().orders.list_orders(status=status, bot_id=bot_id)
    return {"count": len(orders), "orders": orders}


@app.post("/orders/{order_id}/close")
async def close_order(order_id: str, body: Optional[CloseOrderBody] = None):
    body = body or CloseOrderBody()
    c = get_container()
    order = c.orders.get_order(order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="order not found")
    price = body.price if body.price is not None else c.feed.prices().get(order["symbol"])
    if price is None:
        return JSONResponse(status_code=400, content={"error": "price unavailable"})
    return await c.orders.close_order(order_id, price, body.reason)


@app.post("/orders/{order_id}/cancel")
async def cancel_order(order_id: str):
    cancelled = await get_container().orders.cancel_order(order_id)
    if cancelled is None:
        raise HTTPException(status_code=404, detail="order not found")
    return cancelled


# ---------------- scheduler ----------------


@app.post("/scheduler/start")
async def scheduler_start():
    c = get_container()
    c.scheduler.start()
    return c.scheduler.status()


@app.post("/scheduler/stop")
async def scheduler_stop():
    c = get_container()
    await c.scheduler.stop()
    return c.scheduler.status()


@app.get("/scheduler/status")
async def scheduler_status():
    return get_container().scheduler.status()


@app.post("/scheduler/run/{family}")
async def scheduler_run_once(family: str):
    get_engine(family)
    return await get_container().scheduler.run_once(family)


# ---------------- logs ----------------


@app.get("/logs/events/tail")
async def tail_events(limit: int = 50, bot_id: Optional[str] = None):
    data = get_container().audit.tail(limit=limit, bot_id=bot_id)
    return {"count": len(data), "events": data}


@app.get("/events/recent")
async def recent_bus_events(event: Optional[str] = None):
    return {"events": get_container().bus.history(event)}
