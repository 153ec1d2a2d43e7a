"""Tests for the view batcher's scheduling and flush behaviour."""

from __future__ import annotations

import asyncio

import pytest

from formstats.core.batcher import BatcherState, ViewBatcher
from formstats.core.models import FormUpdate, ViewEvent
from formstats.queue.memory_queue import InMemoryViewQueue
from formstats.storage.memory_storage import MemoryFormStore


class RecordingStore(MemoryFormStore):
    """MemoryFormStore that counts every lookup and write."""

    def __init__(self) -> None:
        super().__init__()
        self.calls: list[str] = []

    async def find_form(self, form_key):
        self.calls.append(f"find:{form_key}")
        return await super().find_form(form_key)

    async def update_form(self, internal_id, update):
        self.calls.append(f"update:{internal_id}")
        await super().update_form(internal_id, update)


class FlakyStore(MemoryFormStore):
    """Fails writes for the given form keys."""

    def __init__(self, failing: set[str]) -> None:
        super().__init__()
        self.failing = failing

    async def update_form(self, internal_id, update):
        if self._key_by_id.get(internal_id) in self.failing:
            raise RuntimeError("database unavailable")
        await super().update_form(internal_id, update)


class SlowReadStore(MemoryFormStore):
    """Yields between reading traffic and returning it, to expose races."""

    async def find_form(self, form_key):
        snapshot = await super().find_form(form_key)
        await asyncio.sleep(0.01)
        return snapshot


class HangingStore(MemoryFormStore):
    """Blocks every write until ``release`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.release = asyncio.Event()

    async def update_form(self, internal_id, update):
        await self.release.wait()
        await super().update_form(internal_id, update)


async def _views(store, form_key):
    return (await store.get_form(form_key)).views


@pytest.mark.asyncio
async def test_views_below_batch_size_wait_for_timer(store, scheduler, make_batcher):
    batcher = make_batcher(store)
    for _ in range(3):
        batcher.record_view("f1", "direct")

    assert batcher.state is BatcherState.WAITING
    assert scheduler.scheduled == [30.0]

    scheduler.advance(29)
    await batcher.join()
    assert batcher.qsize() == 3
    assert await _views(store, "f1") == 0

    scheduler.advance(1)
    assert batcher.state is BatcherState.FLUSHING
    await batcher.join()

    form = await store.get_form("f1")
    assert form.views == 3
    assert form.traffic == {"direct": 3}
    assert batcher.state is BatcherState.IDLE
    assert scheduler.pending == 0


@pytest.mark.asyncio
async def test_only_one_timer_per_pending_queue(store, scheduler, make_batcher):
    batcher = make_batcher(store)
    for _ in range(5):
        batcher.record_view("f1", "direct")
        scheduler.advance(1)

    assert scheduler.scheduled == [30.0]
    assert scheduler.pending == 1


@pytest.mark.asyncio
async def test_reaching_batch_size_flushes_immediately(store, scheduler, make_batcher):
    batcher = make_batcher(store)
    for _ in range(10):
        batcher.record_view("f1", "direct")

    # Batch already taken off the queue and the pending timer cancelled.
    assert batcher.qsize() == 0
    assert scheduler.pending == 0
    assert batcher.state is BatcherState.FLUSHING

    await batcher.join()
    assert await _views(store, "f1") == 10
    assert batcher.state is BatcherState.IDLE
    assert batcher.stats.snapshot()["flushes"]["size"] == 1


@pytest.mark.asyncio
async def test_fifteen_views_flush_ten_then_five(store, scheduler, make_batcher):
    batcher = make_batcher(store)
    for _ in range(15):
        batcher.record_view("f1", "direct")

    assert batcher.qsize() == 5
    await batcher.join()

    form = await store.get_form("f1")
    assert form.views == 10
    assert form.traffic == {"direct": 10}

    # Leftovers wait for the rescheduled timer.
    assert batcher.qsize() == 5
    assert batcher.state is BatcherState.WAITING

    scheduler.advance(30)
    await batcher.join()

    form = await store.get_form("f1")
    assert form.views == 15
    assert form.traffic == {"direct": 15}
    assert batcher.qsize() == 0
    assert scheduler.pending == 0


@pytest.mark.asyncio
async def test_flush_groups_referrers_per_form(store, make_batcher):
    batcher = make_batcher(store)
    batcher.record_view("f2", "https://a.com")
    batcher.record_view("f2", "https://b.com")

    report = await batcher.flush()

    assert report.events == 2
    assert report.forms_updated == 1
    form = await store.get_form("f2")
    assert form.views == 2
    assert form.traffic == {"https://a.com": 1, "https://b.com": 1}


@pytest.mark.asyncio
async def test_interleaved_forms_count_independently(store, make_batcher):
    batcher = make_batcher(store)
    for i in range(6):
        batcher.record_view("f1" if i % 2 else "f3", "https://news.example")

    await batcher.flush()

    assert (await store.get_form("f1")).traffic == {"https://news.example": 3}
    assert (await store.get_form("f3")).traffic == {"https://news.example": 3}


@pytest.mark.asyncio
async def test_no_views_no_timer_no_storage_calls(scheduler, make_batcher):
    store = RecordingStore()
    make_batcher(store)

    scheduler.advance(3600)

    assert scheduler.scheduled == []
    assert store.calls == []


@pytest.mark.asyncio
async def test_views_accumulate_across_flushes(store, make_batcher):
    batcher = make_batcher(store)
    seen = []
    for n in (3, 1, 4):
        for _ in range(n):
            batcher.record_view("f1", "direct")
        await batcher.flush()
        seen.append(await _views(store, "f1"))

    assert seen == [3, 4, 8]


@pytest.mark.asyncio
async def test_merge_keeps_existing_traffic(store, make_batcher):
    snapshot = await store.find_form("f1")
    await store.update_form(snapshot.internal_id, FormUpdate(
        increment_views_by=7, traffic={"direct": 5, "https://old.example": 2},
    ))
    batcher = make_batcher(store)
    batcher.record_view("f1", "direct")
    batcher.record_view("f1", "https://new.example")

    await batcher.flush()

    form = await store.get_form("f1")
    assert form.views == 9
    assert form.traffic == {
        "direct": 6,
        "https://old.example": 2,
        "https://new.example": 1,
    }


@pytest.mark.asyncio
async def test_failed_form_does_not_block_others(make_batcher):
    store = FlakyStore(failing={"a"})
    await store.create_form("a")
    await store.create_form("b")
    batcher = make_batcher(store)
    batcher.record_view("a", "direct")
    batcher.record_view("b", "direct")

    report = await batcher.flush()

    assert report.forms_failed == 1
    assert report.forms_updated == 1
    assert await _views(store, "b") == 1
    assert await _views(store, "a") == 0
    # Failed views are not put back on the queue.
    assert batcher.qsize() == 0
    assert batcher.stats.snapshot()["forms_failed"] == 1


@pytest.mark.asyncio
async def test_missing_form_is_skipped(store, make_batcher):
    batcher = make_batcher(store)
    batcher.record_view("deleted-form", "direct")
    batcher.record_view("f1", "direct")

    report = await batcher.flush()

    assert report.forms_missing == 1
    assert report.forms_updated == 1
    assert await _views(store, "f1") == 1


@pytest.mark.asyncio
async def test_overlapping_flushes_do_not_lose_updates(make_batcher):
    store = SlowReadStore()
    await store.create_form("f1")
    batcher = make_batcher(store, batch_size=2)

    for _ in range(4):
        batcher.record_view("f1", "direct")

    # Two size-triggered flushes for the same form are in flight at once.
    assert batcher.qsize() == 0
    await batcher.join()

    form = await store.get_form("f1")
    assert form.views == 4
    assert form.traffic == {"direct": 4}


def test_record_view_normalizes_inputs():
    queue = InMemoryViewQueue()
    batcher = ViewBatcher(store=MemoryFormStore(), scheduler=None, queue=queue,
                          clock=lambda: 12.5)

    batcher.record_view("f1", None, "Mozilla/5.0")
    batcher.record_view("f1", "   ", "")
    batcher.record_view("f1", 42)
    batcher.record_view("f1", " https://a.com ")

    assert queue.take(10) == [
        ViewEvent("f1", "direct", 12500, "Mozilla/5.0"),
        ViewEvent("f1", "direct", 12500, None),
        ViewEvent("f1", "direct", 12500, None),
        ViewEvent("f1", "https://a.com", 12500, None),
    ]


@pytest.mark.asyncio
async def test_empty_form_key_is_ignored(store, scheduler, make_batcher):
    batcher = make_batcher(store)

    assert batcher.record_view("", "direct") is False
    assert batcher.record_view("   ") is False

    assert batcher.qsize() == 0
    assert scheduler.pending == 0
    assert batcher.stats.snapshot()["views_rejected"] == 2


@pytest.mark.asyncio
async def test_views_before_start_are_scheduled_on_start(store, scheduler, make_batcher):
    batcher = make_batcher(store, start=False)
    batcher.record_view("f1")
    assert scheduler.pending == 0

    batcher.start()
    assert scheduler.pending == 1

    scheduler.advance(30)
    await batcher.join()
    assert await _views(store, "f1") == 1


@pytest.mark.asyncio
async def test_stop_flushes_everything_pending(store, scheduler, make_batcher):
    batcher = make_batcher(store)
    for _ in range(25):
        batcher.record_view("f1", "direct")

    await batcher.stop()

    assert await _views(store, "f1") == 25
    assert batcher.qsize() == 0
    assert scheduler.pending == 0
    snap = batcher.stats.snapshot()
    assert snap["flushes"]["size"] == 2
    assert snap["flushes"]["shutdown"] == 1
    assert snap["views_dropped"] == 0


@pytest.mark.asyncio
async def test_stop_gives_up_after_timeout(make_batcher):
    store = HangingStore()
    await store.create_form("f1")
    batcher = make_batcher(store, batch_size=2, shutdown_timeout=0.05)
    for _ in range(3):
        batcher.record_view("f1", "direct")

    await batcher.stop()

    assert batcher.stats.snapshot()["views_dropped"] == 1
    assert batcher.qsize() == 0

    # The stuck flush was not cancelled and still lands once unblocked.
    store.release.set()
    await batcher.join()
    assert await _views(store, "f1") == 2


def test_rejects_invalid_batch_size():
    with pytest.raises(ValueError):
        ViewBatcher(store=MemoryFormStore(), scheduler=None, batch_size=0)


@pytest.mark.asyncio
async def test_record_view_from_worker_threads(store, make_batcher):
    batcher = make_batcher(store, batch_size=3)

    def visitor():
        for _ in range(7):
            batcher.record_view("f1", "direct")

    await asyncio.gather(*(asyncio.to_thread(visitor) for _ in range(3)))
    # Let the handed-off flush decisions run on the loop.
    await asyncio.sleep(0)
    await batcher.join()

    # Nothing lost: everything is either stored or still queued.
    assert await _views(store, "f1") + batcher.qsize() == 21
    assert batcher.stats.snapshot()["views_received"] == 21
    assert batcher.stats.snapshot()["views_flushed"] >= 18

    while batcher.qsize():
        await batcher.flush()
    assert await _views(store, "f1") == 21


def test_record_view_without_a_loop_keeps_views_queued():
    batcher = ViewBatcher(store=MemoryFormStore(), scheduler=None, batch_size=2)
    batcher.start()

    for _ in range(5):
        assert batcher.record_view("f1", "direct") is True

    assert batcher.qsize() == 5


@pytest.mark.asyncio
async def test_view_after_stop_is_counted_as_dropped(store, make_batcher):
    batcher = make_batcher(store)
    batcher.record_view("f1", "direct")
    await batcher.stop()

    assert batcher.record_view("f1", "direct") is False

    assert batcher.qsize() == 0
    assert await _views(store, "f1") == 1
    snap = batcher.stats.snapshot()
    assert snap["views_dropped"] == 1
    assert snap["views_received"] == 1
