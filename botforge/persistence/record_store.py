# botforge/persistence/record_store.py

from __future__ import annotations

import copy
import json
from typing import Any, Dict, List, Optional, Protocol

from botforge.persistence.db import DB, utc_now_iso

Record = Dict[str, Any]

# collection names shared by engines / router
GRID_BOTS = "gridBots"
DCA_BOTS = "dcaBots"
DCA_TRADES = "dcaTrades"
MOMENTUM_BOTS = "momentumBots"
RSI_BOTS = "rsiBots"
CANDLE_STRIKE_BOTS = "candleStrikeBots"
ACTIVE_ORDERS = "activeOrders"
CLOSED_ORDERS = "closedOrders"
TEMPLATES = "templates"
EXCHANGE_ACCOUNTS = "exchangeAccounts"
SAFETY_STATE = "safetyState"


class RecordStore(Protocol):
    def get_all(self, collection: str) -> List[Record]: ...

    def save_all(self, collection: str, records: List[Record]) -> None: ...

    def update_by_id(
        self, collection: str, record_id: str, patch: Record
    ) -> Optional[Record]: ...

    def delete_by_id(self, collection: str, record_id: str) -> bool: ...

    def get_by_id(self, collection: str, record_id: str) -> Optional[Record]: ...

    def insert(self, collection: str, record: Record, *, first: bool = False) -> Record: ...


class MemoryRecordStore:
    """Dict-backed store. Returns copies so callers never alias stored state."""

    def __init__(self) -> None:
        self._data: Dict[str, List[Record]] = {}

    def get_all(self, collection: str) -> List[Record]:
        return copy.deepcopy(self._data.get(collection, []))

    def save_all(self, collection: str, records: List[Record]) -> None:
        self._data[collection] = copy.deepcopy(list(records))

    def get_by_id(self, collection: str, record_id: str) -> Optional[Record]:
        for r in self._data.get(collection, []):
            if r.get("id") == record_id:
                return copy.deepcopy(r)
        return None

    def insert(self, collection: str, record: Record, *, first: bool = False) -> Record:
        rows = self._data.setdefault(collection, [])
        rows[:] = [r for r in rows if r.get("id") != record.get("id")]
        if first:
            rows.insert(0, copy.deepcopy(record))
        else:
            rows.append(copy.deepcopy(record))
        return copy.deepcopy(record)

    def update_by_id(
        self, collection: str, record_id: str, patch: Record
    ) -> Optional[Record]:
        for r in self._data.get(collection, []):
            if r.get("id") == record_id:
                r.update(copy.deepcopy(patch))
                return copy.deepcopy(r)
        return None

    def delete_by_id(self, collection: str, record_id: str) -> bool:
        rows = self._data.get(collection, [])
        kept = [r for r in rows if r.get("id") != record_id]
        self._data[collection] = kept
        return len(kept) != len(rows)


class SqliteRecordStore:
    """
    Record store on top of the `records` table.
    Each collection keeps insertion order through the `position` column.
    """

    def __init__(self, db: DB):
        self.db = db

    @staticmethod
    def _dump(record: Record) -> str:
        return json.dumps(record, separators=(",", ":"), ensure_ascii=False)

    def get_all(self, collection: str) -> List[Record]:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT doc_json FROM records WHERE collection = ? ORDER BY position",
                (collection,),
            ).fetchall()
        return [json.loads(r["doc_json"]) for r in rows]

    def get_by_id(self, collection: str, record_id: str) -> Optional[Record]:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT doc_json FROM records WHERE collection = ? AND id = ?",
                (collection, str(record_id)),
            ).fetchone()
        return json.loads(row["doc_json"]) if row else None

    def save_all(self, collection: str, records: List[Record]) -> None:
        now = utc_now_iso()
        with self.db.connect() as conn:
            conn.execute("DELETE FROM records WHERE collection = ?", (collection,))
            conn.executemany(
                """
                INSERT OR REPLACE INTO records(collection, id, position, doc_json, updated_at)
                VALUES (?,?,?,?,?)
                """,
                [
                    (collection, str(r["id"]), i, self._dump(r), now)
                    for i, r in enumerate(records)
                ],
            )

    def insert(self, collection: str, record: Record, *, first: bool = False) -> Record:
        with self.db.connect() as conn:
            conn.execute(
                "DELETE FROM records WHERE collection = ? AND id = ?",
                (collection, str(record["id"])),
            )
            agg = "MIN(position) - 1" if first else "MAX(position) + 1"
            row = conn.execute(
                f"SELECT COALESCE({agg}, 0) AS pos FROM records WHERE collection = ?",
                (collection,),
            ).fetchone()
            conn.execute(
                """
                INSERT INTO records(collection, id, position, doc_json, updated_at)
                VALUES (?,?,?,?,?)
                """,
                (collection, str(record["id"]), int(row["pos"]), self._dump(record), utc_now_iso()),
            )
        return record

    def update_by_id(
        self, collection: str, record_id: str, patch: Record
    ) -> Optional[Record]:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT doc_json FROM records WHERE collection = ? AND id = ?",
                (collection, str(record_id)),
            ).fetchone()
            if not row:
                return None

            doc = json.loads(row["doc_json"])
            doc.update(patch)
            conn.execute(
                "UPDATE records SET doc_json = ?, updated_at = ? WHERE collection = ? AND id = ?",
                (self._dump(doc), utc_now_iso(), collection, str(record_id)),
            )
        return doc

    def delete_by_id(self, collection: str, record_id: str) -> bool:
        with self.db.connect() as conn:
            cur = conn.execute(
                "DELETE FROM records WHERE collection = ? AND id = ?",
                (collection, str(record_id)),
            )
            return cur.rowcount > 0
