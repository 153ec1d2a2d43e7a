"""Batch aggregation and traffic merging.

Pure functions, no I/O. The batcher folds a batch of ViewEvents into one
FormAggregate per form, then merges each aggregate's per-source counts into
the traffic mapping currently held by the store.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

import structlog

from formstats.core.models import DIRECT_REFERRER, FormAggregate, ViewEvent

log = structlog.get_logger()


def normalize_referrer(value: object) -> str:
    """Return a usable referrer string, or the ``direct`` sentinel."""
    if not isinstance(value, str):
        return DIRECT_REFERRER
    value = value.strip()
    return value or DIRECT_REFERRER


def normalize_user_agent(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    return value.strip() or None


def aggregate_views(events: Iterable[ViewEvent]) -> dict[str, FormAggregate]:
    """Group events by form key, counting views and referrers."""
    aggregates: dict[str, FormAggregate] = {}
    for event in events:
        agg = aggregates.get(event.form_key)
        if agg is None:
            agg = aggregates[event.form_key] = FormAggregate()
        agg.add(event.referrer)
    return aggregates


def sanitize_traffic(raw: object, form_key: str = "") -> dict[str, int]:
    """Keep only integer counts from a stored traffic mapping.

    Stored traffic is loosely typed JSON. Non-mapping values are treated as
    empty; entries with non-numeric counts are dropped.
    """
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        log.warning("traffic_not_a_mapping", form_key=form_key,
                    type=type(raw).__name__)
        return {}

    clean: dict[str, int] = {}
    for source, count in raw.items():
        # bool is an int subclass but never a real count
        if isinstance(count, bool) or not isinstance(count, (int, float)):
            log.warning("traffic_value_dropped", form_key=form_key,
                        source=source, value=repr(count))
            continue
        clean[str(source)] = int(count)
    return clean


def merge_traffic(current: object, increments: Mapping[str, int],
                  form_key: str = "") -> dict[str, int]:
    """Add per-source increments onto the stored traffic (union of keys)."""
    merged = sanitize_traffic(current, form_key)
    for source, count in increments.items():
        merged[source] = merged.get(source, 0) + count
    return merged
