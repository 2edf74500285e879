import json

import pytest

from botforge.core.events import EventBus
from botforge.ops.context import clear_cycle_id, set_cycle_id
from botforge.persistence.audit import Audit
from botforge.persistence.db import DB
from botforge.persistence.record_store import MemoryRecordStore, SqliteRecordStore


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return MemoryRecordStore()
    return SqliteRecordStore(DB(str(tmp_path / "records.db")))


def test_insert_order_and_lookup(store):
    store.insert("bots", {"id": "a", "n": 1})
    store.insert("bots", {"id": "b", "n": 2})
    store.insert("bots", {"id": "c", "n": 3}, first=True)

    assert [r["id"] for r in store.get_all("bots")] == ["c", "a", "b"]
    assert store.get_by_id("bots", "a") == {"id": "a", "n": 1}
    assert store.get_by_id("bots", "zzz") is None
    assert store.get_all("empty") == []


def test_insert_same_id_replaces(store):
    store.insert("bots", {"id": "a", "n": 1})
    store.insert("bots", {"id": "a", "n": 2})
    assert store.get_all("bots") == [{"id": "a", "n": 2}]


def test_update_merges_patch(store):
    store.insert("bots", {"id": "a", "n": 1, "tags": ["x"]})

    merged = store.update_by_id("bots", "a", {"n": 5})

    assert merged == {"id": "a", "n": 5, "tags": ["x"]}
    assert store.get_by_id("bots", "a")["n"] == 5
    assert store.update_by_id("bots", "missing", {"n": 1}) is None


def test_delete_reports_whether_removed(store):
    store.insert("bots", {"id": "a"})
    assert store.delete_by_id("bots", "a") is True
    assert store.delete_by_id("bots", "a") is False


def test_save_all_replaces_collection(store):
    store.insert("bots", {"id": "old"})
    store.save_all("bots", [{"id": "x"}, {"id": "y"}])
    assert [r["id"] for r in store.get_all("bots")] == ["x", "y"]


def test_returned_records_are_copies(store):
    store.insert("bots", {"id": "a", "nested": {"v": 1}})
    got = store.get_by_id("bots", "a")
    got["nested"]["v"] = 99
    assert store.get_by_id("bots", "a")["nested"]["v"] == 1


def test_sqlite_store_survives_reopen(tmp_path):
    path = str(tmp_path / "records.db")
    SqliteRecordStore(DB(path)).insert("templates", {"id": "t1", "name": "scalp"})
    assert SqliteRecordStore(DB(path)).get_by_id("templates", "t1")["name"] == "scalp"


# ---------------- event bus ----------------


def test_emit_stamps_event_and_timestamp():
    bus = EventBus()
    seen = []
    bus.on("order.created", seen.append)

    assert bus.emit("order.created", {"id": "o1"}) is True
    assert seen[0]["event"] == "order.created"
    assert isinstance(seen[0]["timestamp"], int)
    assert bus.emit("nobody.listens") is False


def test_failing_handler_does_not_stop_others():
    bus = EventBus()
    seen = []

    def boom(_):
        raise RuntimeError("handler bug")

    bus.on("bot.error", boom)
    bus.on("bot.error", seen.append)
    bus.emit("bot.error", {"bot_id": "b1"})

    assert len(seen) == 1


def test_off_removes_handler():
    bus = EventBus()
    seen = []
    bus.on("x", seen.append)
    bus.off("x", seen.append)
    bus.emit("x")
    assert seen == []


def test_history_is_capped_and_newest_first():
    bus = EventBus()
    for i in range(150):
        bus.emit("tick", {"i": i})
    history = bus.history()
    assert len(history) == 100
    assert history[0]["i"] == 149
    assert bus.history("other") == []


# ---------------- audit ----------------


def test_audit_records_bus_events(tmp_path):
    jsonl = tmp_path / "audit.jsonl"
    audit = Audit(DB(str(tmp_path / "audit.db")), str(jsonl))
    bus = EventBus()
    audit.attach(bus)

    bus.emit("order.created", {"id": "o1", "bot_id": "b1", "status": "ACTIVE"})
    bus.emit("bot.error", {"bot_id": "b2", "reason": "boom"})

    rows = audit.tail(limit=10)
    assert [r["event_type"] for r in rows] == ["bot.error", "order.created"]
    assert rows[1]["action"] == "ACTIVE"
    assert rows[1]["details"]["id"] == "o1"

    only_b1 = audit.tail(bot_id="b1")
    assert len(only_b1) == 1

    lines = [json.loads(line) for line in jsonl.read_text(encoding="utf-8").splitlines()]
    assert [line["event_type"] for line in lines] == ["order.created", "bot.error"]


def test_audit_picks_up_cycle_context(tmp_path):
    audit = Audit(DB(str(tmp_path / "audit.db")), str(tmp_path / "audit.jsonl"))
    set_cycle_id("cycle-1")
    try:
        audit.event(event_type="CYCLE_END", action="grid", details={"executions": 1})
    finally:
        clear_cycle_id()

    row = audit.tail(limit=1)[0]
    assert row["cycle_id"] == "cycle-1"
    assert row["details"] == {"executions": 1}
