"""asyncio implementation of Scheduler."""

from __future__ import annotations

import asyncio
from collections.abc import Callable


class AsyncioScheduler:
    """Scheduler backed by ``loop.call_later``. Zero dependencies.

    Must be used from code running on the event loop.
    """

    def schedule_after(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)

    def cancel(self, handle: asyncio.TimerHandle) -> None:
        handle.cancel()
