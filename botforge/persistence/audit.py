# botforge/persistence/audit.py
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from botforge.core import events as ev
from botforge.core.events import EventBus
from botforge.ops.context import get_cycle_id, get_family
from botforge.persistence.db import DB, utc_now_iso

log = logging.getLogger("botforge.audit")

AUDITED_EVENTS = (
    ev.ORDER_CREATED,
    ev.ORDER_FILLED,
    ev.ORDER_CLOSED,
    ev.ORDER_CANCELLED,
    ev.BOT_ERROR,
)


class Audit:
    """
    DB audit is the source of truth.
    Additionally mirrors events to a JSONL file so the tail endpoint works without the DB.
    """

    def __init__(self, db: DB, jsonl_path: str = "logs/audit.jsonl"):
        self.db = db
        self.jsonl_path = Path(jsonl_path)

        # ensure logs folder + file exist
        try:
            self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
            self.jsonl_path.touch(exist_ok=True)
        except OSError:
            # never crash bot due to audit file issues
            log.warning("audit jsonl not writable: %s", self.jsonl_path)

    def attach(self, bus: EventBus) -> None:
        """Record every order / bot event published on the bus."""
        for name in AUDITED_EVENTS:
            bus.on(name, self._on_bus_event)

    def _on_bus_event(self, data: Dict[str, Any]) -> None:
        details = {k: v for k, v in data.items() if k not in ("event", "timestamp")}
        self.event(
            event_type=str(data.get("event")),
            bot_id=data.get("bot_id"),
            action=data.get("status") or data.get("reason"),
            details=details,
        )

    def event(
        self,
        event_type: str,
        bot_id: Optional[str] = None,
        action: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        family: Optional[str] = None,
        cycle_id: Optional[str] = None,
    ) -> None:
        cycle_id = cycle_id or get_cycle_id()
        family = family or get_family()
        payload = json.dumps(details or {}, ensure_ascii=False, default=str)

        # 1) DB (source of truth)
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO events(timestamp_utc, cycle_id, family, bot_id, event_type, action, details_json)
                VALUES (?,?,?,?,?,?,?)
                """,
                (utc_now_iso(), cycle_id, family, bot_id, event_type, action, payload),
            )

        # 2) JSONL mirror
        self._write_jsonl(
            {
                "timestamp_utc": utc_now_iso(),
                "event_type": event_type,
                "cycle_id": cycle_id,
                "family": family,
                "bot_id": bot_id,
                "action": action,
                "details": details or {},
            }
        )

    def tail(self, limit: int = 50, bot_id: Optional[str] = None) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM events"
        params: tuple = ()
        if bot_id:
            sql += " WHERE bot_id = ?"
            params = (bot_id,)
        sql += " ORDER BY id DESC LIMIT ?"
        params = params + (int(limit),)

        with self.db.connect() as conn:
            rows = conn.execute(sql, params).fetchall()

        out = []
        for r in rows:
            item = dict(r)
            try:
                item["details"] = json.loads(item.pop("details_json") or "{}")
            except ValueError:
                item["details"] = {}
            out.append(item)
        return out

    def _write_jsonl(self, obj: Dict[str, Any]) -> None:
        try:
            self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
            with self.jsonl_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(obj, ensure_ascii=False, default=str) + "\n")
        except OSError:
            # never crash trading loop because audit file write failed
            log.warning("audit jsonl write failed: %s", self.jsonl_path)
