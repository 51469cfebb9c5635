from __future__ import annotations

import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

# Context-local (safe for async & threads). Worker threads start with an empty
# context, so units copy the submitting context (see runner.ReentryRunner).
_current_run_id: ContextVar[Optional[str]] = ContextVar("current_run_id", default=None)
_current_cycle_id: ContextVar[Optional[str]] = ContextVar(
    "current_cycle_id", default=None
)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


def set_run_id(run_id: Optional[str]) -> None:
    _current_run_id.set(run_id)


def get_run_id() -> Optional[str]:
    return _current_run_id.get()


def get_cycle_id() -> Optional[str]:
    return _current_cycle_id.get()


@contextmanager
def cycle(name: str) -> Iterator[str]:
    """Binds a fresh cycle_id (e.g. tp-3f2a...) for the duration of one tick."""
    cycle_id = new_id(name)
    token = _current_cycle_id.set(cycle_id)
    try:
        yield cycle_id
    finally:
        _current_cycle_id.reset(token)
