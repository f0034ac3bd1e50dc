"""Lifecycle event hub for external observers."""
from __future__ import annotations

from collections import defaultdict
from typing import Any, Callable, Dict, List

import structlog

logger = structlog.get_logger(__name__)

Listener = Callable[[str, Dict[str, Any]], None]

TASK_QUEUED = "task_queued"
TASK_ASSIGNED = "task_assigned"
TASK_COMPLETED = "task_completed"
TASK_FAILED = "task_failed"
TASK_RETRY = "task_retry"
TASK_STALE = "task_stale"
TASK_CANCELLED = "task_cancelled"
STARTED = "started"
STOPPED = "stopped"


class EventHub:
    """Synchronous fan-out of named events to subscribed listeners.

    A listener that raises is logged and skipped; it never interrupts the
    component emitting the event.
    """

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)

    def subscribe(self, event: str, listener: Listener) -> Callable[[], None]:
        """Register a listener; ``"*"`` receives every event. Returns an unsubscribe callable."""
        self._listeners[event].append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners[event]:
                self._listeners[event].remove(listener)

        return unsubscribe

    def emit(self, event: str, **payload: Any) -> None:
        for listener in [*self._listeners[event], *self._listeners["*"]]:
            try:
                listener(event, payload)
            except Exception:  # noqa: BLE001
                logger.exception("events.listener_failed", event_name=event)
