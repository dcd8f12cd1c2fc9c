"""
Hooks — observer callbacks for dispatch, planning and session events
====================================================================
Components that accept a HookRegistry fire one event per notable step:

  dispatcher        ENDPOINT_RETRY, USAGE_RECORDED
  PrismController   PLAN_DECOMPOSED
  Saboteur          BRICKS_INJECTED
  AntagonistMirror  DUEL_COMPLETED
  CheckpointManager PHASE_CHECKPOINTED

Callbacks run inline and receive keyword arguments only. A raising callback
is logged and skipped.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger("prism_orchestrator.hooks")


class EventType(str, Enum):
    """
    Keyword arguments per event:
      ENDPOINT_RETRY     endpoint, error, attempt
      USAGE_RECORDED     endpoint, usage
      PLAN_DECOMPOSED    task_count, stop_reason
      BRICKS_INJECTED    count, task_ids
      DUEL_COMPLETED     outcome, rounds
      PHASE_CHECKPOINTED session_id, phase, meta
    """
    ENDPOINT_RETRY     = "endpoint_retry"
    USAGE_RECORDED     = "usage_recorded"
    PLAN_DECOMPOSED    = "plan_decomposed"
    BRICKS_INJECTED    = "bricks_injected"
    DUEL_COMPLETED     = "duel_completed"
    PHASE_CHECKPOINTED = "phase_checkpointed"


def _event(event: str | EventType) -> EventType:
    # raises ValueError for names outside EventType
    return event if isinstance(event, EventType) else EventType(event)


class HookRegistry:
    """Per-event callback lists; add() hands back a function that unsubscribes."""

    def __init__(self) -> None:
        self._hooks: dict[EventType, list[Callable]] = {}

    def add(self, event: str | EventType, callback: Callable) -> Callable[[], None]:
        callbacks = self._hooks.setdefault(_event(event), [])
        callbacks.append(callback)

        def remove() -> None:
            if callback in callbacks:
                callbacks.remove(callback)
        return remove

    def fire(self, event: str | EventType, **kwargs) -> None:
        key = _event(event)
        for cb in list(self._hooks.get(key, ())):
            safe_call(cb, key.value, **kwargs)

    def clear(self, event: Optional[str | EventType] = None) -> None:
        if event is None:
            self._hooks.clear()
        else:
            self._hooks.pop(_event(event), None)

    def count(self, event: Optional[str | EventType] = None) -> int:
        if event is not None:
            return len(self._hooks.get(_event(event), ()))
        return sum(len(v) for v in self._hooks.values())


def safe_call(cb: Optional[Callable], label: str, *args, **kwargs) -> None:
    """Invoke an observer callback; failures are logged at WARNING, never raised."""
    if cb is None:
        return
    try:
        cb(*args, **kwargs)
    except Exception as exc:
        logger.warning(f"Observer {cb!r} raised during {label}: {exc}")
