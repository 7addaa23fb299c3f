"""Push channel for lifecycle and status changes."""

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

WORKTREE_CREATED = "worktree:created"
WORKTREE_DELETED = "worktree:deleted"
WORKTREE_ARCHIVED = "worktree:archived"
WORKTREE_RESTORED = "worktree:restored"
STATUS_CHANGED = "worktree:status-changed"
WORKTREE_STALE = "worktree:stale"
POLL_FAILING = "worktree:poll-failing"
ARCHIVE_EXPIRED = "archive:expired"
ARCHIVE_DELETED = "archive:deleted"
ARCHIVE_NEEDS_CONFIRMATION = "archive:needs-confirmation"


@dataclass(frozen=True)
class Event:
    name: str
    worktree_id: str
    payload: dict[str, Any] = field(default_factory=dict)


Listener = Callable[[Event], None]


class EventBus:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener. Returns a function that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def publish(self, name: str, worktree_id: str, **payload: Any) -> Event:
        event = Event(name=name, worktree_id=worktree_id, payload=payload)
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.warning("Event listener failed", extra={"event": name}, exc_info=True)
        return event
