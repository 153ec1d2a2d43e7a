"""formstats server — main entry point.

This is the only file that knows about concrete implementations.
It wires together the core, queue, scheduling, storage, and API layers.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import FastAPI

from formstats.api.forms import router as forms_router
from formstats.api.monitoring import router as monitoring_router
from formstats.api.views import router as views_router
from formstats.config import AppConfig, load_config
from formstats.core.batcher import ViewBatcher
from formstats.core.stats import BatcherStats
from formstats.queue.memory_queue import InMemoryViewQueue
from formstats.scheduling.asyncio_scheduler import AsyncioScheduler
from formstats.storage.base import FormStore
from formstats.storage.file_storage import FileFormStore
from formstats.storage.memory_storage import MemoryFormStore

log = structlog.get_logger()

# Module-level singletons (set during startup)
_batcher: ViewBatcher | None = None
_store: FormStore | None = None
_stats: BatcherStats | None = None
_config: AppConfig | None = None


def get_batcher() -> ViewBatcher:
    assert _batcher is not None, "Server not initialized"
    return _batcher


def get_store() -> FormStore:
    assert _store is not None, "Server not initialized"
    return _store


def get_stats() -> BatcherStats:
    assert _stats is not None, "Server not initialized"
    return _stats


def get_config() -> AppConfig:
    assert _config is not None, "Server not initialized"
    return _config


def _setup_logging(config: AppConfig) -> None:
    """Configure structlog based on the logging config."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if config.logging.format == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(config.logging.level.upper()),
        ),
    )


def build_store(config: AppConfig) -> FormStore:
    backend = config.storage.backend
    if backend == "file":
        return FileFormStore(path=config.storage.path)
    if backend == "memory":
        return MemoryFormStore()
    raise ValueError(f"unknown storage backend: {backend!r}")


def build_batcher(config: AppConfig, store: FormStore, stats: BatcherStats) -> ViewBatcher:
    return ViewBatcher(
        store=store,
        scheduler=AsyncioScheduler(),
        queue=InMemoryViewQueue(),
        stats=stats,
        batch_size=config.batcher.batch_size,
        processing_interval=config.batcher.processing_interval_seconds,
        shutdown_timeout=config.batcher.shutdown_timeout_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown.

    uvicorn turns SIGINT/SIGTERM into lifespan shutdown, which is where the
    final flush of pending views happens.
    """
    global _batcher, _store, _stats, _config

    _config = load_config()
    _setup_logging(_config)

    log.info("server_starting",
             env=_config.server.env,
             storage_backend=_config.storage.backend,
             batch_size=_config.batcher.batch_size)

    # Create components
    _stats = BatcherStats()
    _store = build_store(_config)
    _batcher = build_batcher(_config, _store, _stats)
    _batcher.start()

    log.info("server_started",
             host=_config.server.host,
             port=_config.server.port)

    yield

    # Shutdown
    await _batcher.stop()
    log.info("server_stopped")


app = FastAPI(
    title="formstats",
    description="Subscription form view counter",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(views_router)
app.include_router(forms_router)
app.include_router(monitoring_router)


def run() -> None:
    """Serve the app with uvicorn using the configured host and port."""
    config = load_config()
    uvicorn.run(
        "formstats.main:app",
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level.lower(),
    )


if __name__ == "__main__":
    run()
