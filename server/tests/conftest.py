"""Shared test fixtures."""

from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

import formstats.main as main_module
from formstats.config import AppConfig
from formstats.core.batcher import ViewBatcher
from formstats.core.stats import BatcherStats
from formstats.storage.memory_storage import MemoryFormStore


class FakeScheduler:
    """Manually advanced clock + scheduler for deterministic timer tests."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start
        self._next_id = 0
        self._pending: dict[int, tuple[float, object]] = {}
        self.scheduled: list[float] = []

    def clock(self) -> float:
        return self.now

    def schedule_after(self, delay, callback):
        self._next_id += 1
        self._pending[self._next_id] = (self.now + delay, callback)
        self.scheduled.append(delay)
        return self._next_id

    def cancel(self, handle) -> None:
        self._pending.pop(handle, None)

    @property
    def pending(self) -> int:
        return len(self._pending)

    def advance(self, seconds: float) -> None:
        """Move time forward, firing due callbacks in deadline order."""
        self.now += seconds
        while True:
            due = [(when, hid) for hid, (when, _) in self._pending.items() if when <= self.now]
            if not due:
                return
            _, hid = min(due)
            _, callback = self._pending.pop(hid)
            callback()


@pytest.fixture
def scheduler():
    return FakeScheduler()


@pytest.fixture
async def store():
    s = MemoryFormStore()
    for key in ("f1", "f2", "f3"):
        await s.create_form(key, name=f"Form {key}")
    return s


@pytest.fixture
def make_batcher(scheduler):
    def _make(store, *, batch_size=10, processing_interval=30.0, shutdown_timeout=5.0,
              start=True):
        batcher = ViewBatcher(
            store=store,
            scheduler=scheduler,
            batch_size=batch_size,
            processing_interval=processing_interval,
            shutdown_timeout=shutdown_timeout,
            clock=scheduler.clock,
        )
        if start:
            batcher.start()
        return batcher
    return _make


@pytest.fixture(autouse=True)
def _init_server(tmp_path):
    """Initialize server singletons for every test, using a temp directory."""
    config = AppConfig()
    config.storage.path = str(tmp_path / "forms.json")
    config.logging.level = "warning"
    # Keep flushes out of the way unless a test triggers one explicitly.
    config.batcher.processing_interval_seconds = 3600.0

    stats = BatcherStats()
    store = MemoryFormStore()
    batcher = main_module.build_batcher(config, store, stats)
    batcher.start()

    # Patch module-level singletons
    main_module._config = config
    main_module._stats = stats
    main_module._store = store
    main_module._batcher = batcher

    yield

    # Cleanup
    main_module._config = None
    main_module._stats = None
    main_module._store = None
    main_module._batcher = None


@pytest.fixture
async def client():
    from formstats.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
