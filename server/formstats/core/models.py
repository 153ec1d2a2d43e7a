"""formstats — core internal data models.

These are plain dataclasses with no framework dependencies.
HTTP payloads and stored documents are converted to/from these at the boundary.
"""

from __future__ import annotations

from dataclasses import dataclass, field

# Referrer recorded when a view arrives without a usable source.
DIRECT_REFERRER = "direct"


@dataclass(frozen=True)
class ViewEvent:
    form_key: str
    referrer: str
    timestamp_ms: int
    user_agent: str | None = None


@dataclass
class FormAggregate:
    """Counts for one form, built fresh from a single batch."""
    count: int = 0
    traffic_by_source: dict[str, int] = field(default_factory=dict)

    def add(self, referrer: str) -> None:
        self.count += 1
        self.traffic_by_source[referrer] = self.traffic_by_source.get(referrer, 0) + 1


@dataclass(frozen=True)
class FormSnapshot:
    """What a store returns on lookup: enough to merge traffic."""
    internal_id: str
    traffic: dict[str, object]


@dataclass(frozen=True)
class FormUpdate:
    increment_views_by: int
    traffic: dict[str, int]


@dataclass
class FormRecord:
    internal_id: str
    form_key: str
    name: str = ""
    views: int = 0
    traffic: dict[str, int] = field(default_factory=dict)

    def top_sources(self, limit: int = 10) -> list[tuple[str, int]]:
        ranked = sorted(self.traffic.items(), key=lambda kv: (-kv[1], kv[0]))
        return ranked[:limit]


@dataclass
class FlushReport:
    trigger: str
    events: int = 0
    forms_updated: int = 0
    forms_missing: int = 0
    forms_failed: int = 0
