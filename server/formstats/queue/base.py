"""Queue interface (port) for pending view events."""

from __future__ import annotations

from typing import Protocol, TYPE_CHECKING

if TYPE_CHECKING:
    from formstats.core.models import ViewEvent


class ViewQueue(Protocol):
    """Port: FIFO buffer of view events waiting to be flushed."""

    def append(self, event: ViewEvent) -> int: ...

    def take(self, max_items: int) -> list[ViewEvent]: ...

    def qsize(self) -> int: ...
