"""In-process implementation of ViewQueue."""

from __future__ import annotations

import threading
from collections import deque
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from formstats.core.models import ViewEvent


class InMemoryViewQueue:
    """ViewQueue backed by a deque. Appends and takes are serialized by a lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: deque[ViewEvent] = deque()

    def append(self, event: ViewEvent) -> int:
        """Append to the tail and return the new length."""
        with self._lock:
            self._events.append(event)
            return len(self._events)

    def take(self, max_items: int) -> list[ViewEvent]:
        """Remove and return up to ``max_items`` events from the head."""
        with self._lock:
            n = min(max_items, len(self._events))
            return [self._events.popleft() for _ in range(n)]

    def qsize(self) -> int:
        with self._lock:
            return len(self._events)
