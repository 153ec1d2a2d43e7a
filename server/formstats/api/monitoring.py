"""Health check and monitoring endpoints."""

from __future__ import annotations

from fastapi import APIRouter

router = APIRouter(prefix="/api/v1")


@router.get("/health")
async def health() -> dict:
    """Basic health check."""
    from formstats.main import get_batcher, get_config

    batcher = get_batcher()
    config = get_config()

    return {
        "status": "ok",
        "version": "0.1.0",
        "uptime_seconds": batcher.stats.snapshot()["uptime_seconds"],
        "queue_depth": batcher.qsize(),
        "batcher_state": batcher.state.value,
        "storage_backend": config.storage.backend,
    }


@router.get("/stats")
async def stats() -> dict:
    """Batcher statistics.

    ``flushes`` counts completed flushes per trigger: ``size`` when the queue
    reached the batch size, ``timer`` when the processing interval elapsed,
    ``shutdown`` during the final drain and ``manual`` for explicit calls.
    """
    from formstats.main import get_config, get_stats

    config = get_config()
    snapshot = get_stats().snapshot()
    snapshot["batch_size"] = config.batcher.batch_size
    snapshot["processing_interval_seconds"] = config.batcher.processing_interval_seconds
    return snapshot
