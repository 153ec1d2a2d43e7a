"""Scheduler interface (port) for delayed callbacks."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, Protocol


class Scheduler(Protocol):
    """Port: runs a callback once after a delay, on the event loop thread."""

    def schedule_after(self, delay: float, callback: Callable[[], None]) -> Any: ...

    def cancel(self, handle: Any) -> None: ...
