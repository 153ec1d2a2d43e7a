"""Batcher statistics.

In-memory counters describing what the view batcher has received and
flushed. No framework dependencies.
"""

from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from formstats.core.models import FlushReport

# Reasons a flush can start.
FLUSH_TRIGGERS = ("size", "timer", "shutdown", "manual")


class BatcherStats:
    """Thread-safe counters for the view batcher."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._started_at = time.time()

        # Counters
        self.views_received: int = 0
        self.views_rejected: int = 0
        self.views_flushed: int = 0
        self.views_dropped: int = 0
        self.forms_updated: int = 0
        self.forms_missing: int = 0
        self.forms_failed: int = 0
        self.queue_depth: int = 0
        self.queue_max_depth: int = 0

        self._flushes: dict[str, int] = {t: 0 for t in FLUSH_TRIGGERS}

    def record_view(self) -> None:
        with self._lock:
            self.views_received += 1

    def record_rejected(self, count: int = 1) -> None:
        with self._lock:
            self.views_rejected += count

    def record_dropped(self, count: int) -> None:
        """Views abandoned at shutdown without reaching the store."""
        with self._lock:
            self.views_dropped += count

    def record_flush(self, report: FlushReport) -> None:
        with self._lock:
            self._flushes[report.trigger] = self._flushes.get(report.trigger, 0) + 1
            self.views_flushed += report.events
            self.forms_updated += report.forms_updated
            self.forms_missing += report.forms_missing
            self.forms_failed += report.forms_failed

    def update_queue_depth(self, depth: int) -> None:
        with self._lock:
            self.queue_depth = depth
            if depth > self.queue_max_depth:
                self.queue_max_depth = depth

    def snapshot(self) -> dict:
        """Return a JSON-serializable snapshot of all stats."""
        with self._lock:
            return {
                "uptime_seconds": round(time.time() - self._started_at, 1),
                "views_received": self.views_received,
                "views_rejected": self.views_rejected,
                "views_flushed": self.views_flushed,
                "views_dropped": self.views_dropped,
                "forms_updated": self.forms_updated,
                "forms_missing": self.forms_missing,
                "forms_failed": self.forms_failed,
                "queue_depth": self.queue_depth,
                "queue_max_depth_ever": self.queue_max_depth,
                "flushes": dict(self._flushes),
            }
