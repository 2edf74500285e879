from __future__ import annotations

import logging
import time
from collections import defaultdict, deque
from typing import Any, Callable, Deque, Dict, List

log = logging.getLogger("botforge.events")

ORDER_CREATED = "order.created"
ORDER_FILLED = "order.filled"
ORDER_CLOSED = "order.closed"
ORDER_CANCELLED = "order.cancelled"
BOT_ERROR = "bot.error"

Handler = Callable[[Dict[str, Any]], None]


class EventBus:
    """
    In-process fan-out.

    - emit() stamps `event` + `timestamp` onto a copy of the payload.
    - A failing handler is logged and never breaks the emitter or other handlers.
    - Keeps the last `max_history` events for tailing.
    """

    def __init__(self, max_history: int = 100):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._history: Deque[Dict[str, Any]] = deque(maxlen=max_history)

    def on(self, event: str, handler: Handler) -> Handler:
        self._handlers[event].append(handler)
        return handler

    def off(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.get(event)
        if not handlers:
            return
        self._handlers[event] = [h for h in handlers if h is not handler]

    def emit(self, event: str, payload: Dict[str, Any] | None = None) -> bool:
        data = dict(payload or {})
        data["event"] = event
        data.setdefault("timestamp", int(time.time() * 1000))

        self._history.appendleft(data)

        handlers = list(self._handlers.get(event, ()))
        for handler in handlers:
            try:
                handler(data)
            except Exception:
                log.exception("event handler failed for %s", event)
        return bool(handlers)

    def history(self, event: str | None = None) -> List[Dict[str, Any]]:
        if event is None:
            return list(self._history)
        return [e for e in self._history if e.get("event") == event]
