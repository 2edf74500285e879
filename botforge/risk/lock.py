from __future__ import annotations

import copy
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional, Tuple

from botforge.persistence.record_store import SAFETY_STATE, RecordStore


@dataclass
class LockState:
    """Per-family safety state. One record per family, keyed by family name."""

    family: str
    global_lock_until: int = 0
    holder_key: Optional[str] = None
    holder_bot_id: Optional[str] = None
    last_execution_time: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, family: str, d: Optional[Dict[str, Any]]) -> "LockState":
        if not d:
            return cls(family=family)
        return cls(
            family=family,
            global_lock_until=int(d.get("global_lock_until") or 0),
            holder_key=d.get("holder_key"),
            holder_bot_id=d.get("holder_bot_id"),
            last_execution_time={
                str(k): int(v) for k, v in (d.get("last_execution_time") or {}).items()
            },
        )

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["id"] = self.family
        return d


@dataclass(frozen=True)
class LockStatus:
    locked: bool
    remaining_ms: int = 0
    holder_key: Optional[str] = None
    holder_bot_id: Optional[str] = None


# ---------------- pure functions ----------------


def check_lock(state: LockState, now_ms: int) -> LockStatus:
    if now_ms < state.global_lock_until:
        return LockStatus(
            locked=True,
            remaining_ms=int(state.global_lock_until - now_ms),
            holder_key=state.holder_key,
            holder_bot_id=state.holder_bot_id,
        )
    return LockStatus(locked=False)


def acquire(
    state: LockState,
    now_ms: int,
    duration_ms: int,
    holder_key: str,
    bot_id: str,
) -> Tuple[bool, LockState]:
    """(allowed, new_state). A held lock returns the state unchanged."""
    if check_lock(state, now_ms).locked:
        return False, state

    new_state = copy.deepcopy(state)
    new_state.global_lock_until = int(now_ms + max(0, int(duration_ms)))
    new_state.holder_key = holder_key
    new_state.holder_bot_id = bot_id
    new_state.last_execution_time[holder_key] = int(now_ms)
    return True, new_state


def release(state: LockState, bot_id: str, previous: LockState) -> LockState:
    """Roll back a reservation made by `bot_id`. Someone else's lock is left alone."""
    if state.holder_bot_id != bot_id:
        return state
    return copy.deepcopy(previous)


# ---------------- persistence ----------------


class LockService:
    def __init__(self, store: RecordStore):
        self.store = store

    def load(self, family: str) -> LockState:
        return LockState.from_dict(family, self.store.get_by_id(SAFETY_STATE, family))

    def save(self, state: LockState) -> None:
        if self.store.update_by_id(SAFETY_STATE, state.family, state.to_dict()) is None:
            self.store.insert(SAFETY_STATE, state.to_dict())

    def status(self, family: str, now_ms: int) -> LockStatus:
        return check_lock(self.load(family), now_ms)

    def try_acquire(
        self, family: str, now_ms: int, duration_ms: int, holder_key: str, bot_id: str
    ) -> Tuple[bool, LockState]:
        """Returns (allowed, previous_state). `previous_state` is what `restore` rolls back to."""
        previous = self.load(family)
        allowed, new_state = acquire(previous, now_ms, duration_ms, holder_key, bot_id)
        if allowed:
            self.save(new_state)
        return allowed, previous

    def restore(self, family: str, bot_id: str, previous: LockState) -> None:
        current = self.load(family)
        self.save(release(current, bot_id, previous))
