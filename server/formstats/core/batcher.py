"""View batcher — buffers form views and flushes aggregated counts.

Views arrive far more often than they are worth writing individually. The
batcher appends each one to an in-memory FIFO queue and writes aggregated
counts to the form store when either the queue reaches ``batch_size`` or
``processing_interval`` seconds have passed since the first pending view.

It talks to the store, queue and scheduler through protocols; main.py picks
the implementations.
"""

from __future__ import annotations

import asyncio
import enum
import threading
import time
from collections.abc import Callable
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import structlog

from formstats.core.aggregation import (
    aggregate_views,
    merge_traffic,
    normalize_referrer,
    normalize_user_agent,
)
from formstats.core.models import FlushReport, FormUpdate, ViewEvent
from formstats.core.stats import BatcherStats
from formstats.queue.memory_queue import InMemoryViewQueue

if TYPE_CHECKING:
    from formstats.core.models import FormAggregate
    from formstats.queue.base import ViewQueue
    from formstats.scheduling.base import Scheduler
    from formstats.storage.base import FormStore

log = structlog.get_logger()

DEFAULT_BATCH_SIZE = 10
DEFAULT_PROCESSING_INTERVAL = 30.0
DEFAULT_SHUTDOWN_TIMEOUT = 5.0


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class BatcherState(str, enum.Enum):
    IDLE = "idle"
    WAITING = "waiting"
    FLUSHING = "flushing"


class ViewBatcher:
    """Accepts view events without blocking and flushes them in batches."""

    def __init__(
        self,
        store: FormStore,
        scheduler: Scheduler,
        *,
        queue: ViewQueue | None = None,
        stats: BatcherStats | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        processing_interval: float = DEFAULT_PROCESSING_INTERVAL,
        shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        if processing_interval < 0:
            raise ValueError(f"processing_interval must be >= 0, got {processing_interval}")

        self._store = store
        self._scheduler = scheduler
        self._queue = queue if queue is not None else InMemoryViewQueue()
        self._stats = stats if stats is not None else BatcherStats()
        self._batch_size = batch_size
        self._interval = processing_interval
        self._shutdown_timeout = shutdown_timeout
        self._clock = clock

        self._running = False
        self._stopped = False
        # Guards _stopped against appends from other threads.
        self._ingest_lock = threading.Lock()
        # Loop that owns _timer and _tasks; those are only touched on it.
        self._loop: asyncio.AbstractEventLoop | None = None
        self._timer: Any = None
        self._tasks: set[asyncio.Task[FlushReport]] = set()

        # Per-form locks, dropped once no flush holds or waits on them.
        self._form_locks: dict[str, asyncio.Lock] = {}
        self._form_lock_users: dict[str, int] = {}

    @property
    def state(self) -> BatcherState:
        if self._tasks:
            return BatcherState.FLUSHING
        if self._timer is not None:
            return BatcherState.WAITING
        return BatcherState.IDLE

    @property
    def stats(self) -> BatcherStats:
        return self._stats

    def qsize(self) -> int:
        return self._queue.qsize()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Enable flush scheduling. Views queued before start are picked up.

        When called outside a running loop, the loop is bound by the first
        ``record_view`` made on one.
        """
        self._loop = _running_loop()
        with self._ingest_lock:
            self._running = True
            self._stopped = False
        log.info("batcher_started", batch_size=self._batch_size,
                 processing_interval=self._interval)
        if self._loop is not None:
            self._reschedule()

    async def stop(self) -> None:
        """Flush what is pending, waiting at most ``shutdown_timeout`` seconds.

        In-flight flushes are not cancelled; if the timeout expires they keep
        running in the background and whatever is still queued is dropped.
        Views recorded after this call are counted as dropped.
        """
        with self._ingest_lock:
            self._running = False
            self._stopped = True
        self._cancel_timer()
        pending = self._queue.qsize()
        log.info("batcher_stopping", pending=pending, in_flight=len(self._tasks))

        try:
            await asyncio.wait_for(self._drain(), timeout=self._shutdown_timeout)
        except asyncio.TimeoutError:
            log.warning("shutdown_flush_timed_out", timeout=self._shutdown_timeout)

        remaining = self._queue.qsize()
        if remaining:
            log.warning("views_dropped", count=remaining)
            self._stats.record_dropped(remaining)
            self._queue.take(remaining)
            self._stats.update_queue_depth(self._queue.qsize())
        log.info("batcher_stopped")

    async def _drain(self) -> None:
        await self.join()
        while self._queue.qsize():
            await self.flush(trigger="shutdown")

    async def join(self) -> None:
        """Wait until no flush is in flight."""
        while self._tasks:
            # asyncio.wait, unlike gather, leaves the tasks running if we
            # are cancelled.
            await asyncio.wait(set(self._tasks))

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def record_view(self, form_key: str, referrer: object = None,
                    user_agent: object = None) -> bool:
        """Queue a view. Never blocks on I/O and never raises.

        Safe to call from any thread. Off the event loop thread, the flush
        decision is handed to the loop with ``call_soon_threadsafe``.

        Returns False when ``form_key`` is empty or the batcher was stopped;
        the view is then not queued.
        """
        if not isinstance(form_key, str) or not form_key.strip():
            log.warning("view_rejected", reason="empty form_key")
            self._stats.record_rejected()
            return False

        event = ViewEvent(
            form_key=form_key,
            referrer=normalize_referrer(referrer),
            timestamp_ms=int(self._clock() * 1000),
            user_agent=normalize_user_agent(user_agent),
        )
        with self._ingest_lock:
            stopped = self._stopped
            if not stopped:
                depth = self._queue.append(event)
        if stopped:
            log.warning("view_after_stop", form_key=form_key)
            self._stats.record_dropped(1)
            return False

        self._stats.record_view()
        self._stats.update_queue_depth(depth)

        if not self._running:
            return True

        current = _running_loop()
        if current is not None and (self._loop is None or current is self._loop):
            self._loop = current
            self._on_view_queued()
        elif self._loop is not None:
            try:
                self._loop.call_soon_threadsafe(self._on_view_queued)
            except RuntimeError:
                # Loop closed; the view stays queued for stop() to account for.
                log.warning("flush_handoff_failed", form_key=form_key)
        # Otherwise no loop is bound yet; the view waits in the queue for
        # the next call made on the loop.
        return True

    def _on_view_queued(self) -> None:
        """Decide between a size flush and arming the timer. Loop thread only."""
        if not self._running:
            return
        depth = self._queue.qsize()
        if depth >= self._batch_size:
            self._cancel_timer()
            self._start_flush("size")
        elif depth and self._timer is None and not self._tasks:
            self._schedule_timer()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _schedule_timer(self) -> None:
        self._timer = self._scheduler.schedule_after(self._interval, self._on_timer)
        log.debug("flush_scheduled", delay=self._interval)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._scheduler.cancel(self._timer)
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        self._start_flush("timer")

    def _reschedule(self) -> None:
        """Arm the timer again if views arrived while we were flushing."""
        if not self._running or self._timer is not None:
            return
        if self._queue.qsize() > 0:
            self._schedule_timer()

    def _start_flush(self, trigger: str) -> asyncio.Task[FlushReport] | None:
        """Take a batch off the queue head and apply it in a background task."""
        batch = self._queue.take(self._batch_size)
        self._stats.update_queue_depth(self._queue.qsize())
        if not batch:
            return None

        log.debug("flush_started", trigger=trigger, events=len(batch))
        task = asyncio.get_running_loop().create_task(self._apply_batch(batch, trigger))
        self._tasks.add(task)
        task.add_done_callback(self._on_flush_done)
        return task

    def _on_flush_done(self, task: asyncio.Task[FlushReport]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error("flush_crashed", exc_info=task.exception())
        self._reschedule()

    async def flush(self, trigger: str = "manual") -> FlushReport:
        """Flush one batch now and return its report."""
        self._cancel_timer()
        task = self._start_flush(trigger)
        if task is None:
            self._reschedule()
            return FlushReport(trigger=trigger)
        await asyncio.wait({task})
        return task.result()

    # ------------------------------------------------------------------
    # Applying a batch
    # ------------------------------------------------------------------

    async def _apply_batch(self, batch: list[ViewEvent], trigger: str) -> FlushReport:
        report = FlushReport(trigger=trigger, events=len(batch))
        aggregates = aggregate_views(batch)

        outcomes = await asyncio.gather(
            *(self._apply_form(form_key, agg) for form_key, agg in aggregates.items())
        )
        for outcome in outcomes:
            if outcome == "updated":
                report.forms_updated += 1
            elif outcome == "missing":
                report.forms_missing += 1
            else:
                report.forms_failed += 1

        self._stats.record_flush(report)
        log.info("flush_completed", trigger=trigger, events=report.events,
                 forms_updated=report.forms_updated,
                 forms_missing=report.forms_missing,
                 forms_failed=report.forms_failed)
        return report

    async def _apply_form(self, form_key: str, agg: FormAggregate) -> str:
        try:
            async with self._form_lock(form_key):
                snapshot = await self._store.find_form(form_key)
                if snapshot is None:
                    log.warning("form_missing", form_key=form_key, views=agg.count)
                    return "missing"

                traffic = merge_traffic(snapshot.traffic, agg.traffic_by_source, form_key)
                await self._store.update_form(
                    snapshot.internal_id,
                    FormUpdate(increment_views_by=agg.count, traffic=traffic),
                )
        except Exception:
            log.error("form_update_failed", form_key=form_key, views=agg.count,
                      exc_info=True)
            return "failed"

        log.debug("form_updated", form_key=form_key, views=agg.count)
        return "updated"

    @asynccontextmanager
    async def _form_lock(self, form_key: str):
        lock = self._form_locks.get(form_key)
        if lock is None:
            lock = self._form_locks[form_key] = asyncio.Lock()
        self._form_lock_users[form_key] = self._form_lock_users.get(form_key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._form_lock_users[form_key] -= 1
            if not self._form_lock_users[form_key]:
                del self._form_lock_users[form_key]
                del self._form_locks[form_key]
