from __future__ import annotations
from contextvars import ContextVar
from typing import Optional

# Context-local (safe for async tasks)
_current_cycle_id: ContextVar[Optional[str]] = ContextVar(
    "current_cycle_id", default=None
)
_current_family: ContextVar[Optional[str]] = ContextVar("current_family", default=None)


def set_cycle_id(cycle_id: str) -> None:
    _current_cycle_id.set(cycle_id)


def get_cycle_id() -> Optional[str]:
    return _current_cycle_id.get()


def clear_cycle_id() -> None:
    _current_cycle_id.set(None)


def set_family(family: str) -> None:
    _current_family.set(family)


def get_family() -> Optional[str]:
    return _current_family.get()


def clear_family() -> None:
    _current_family.set(None)
