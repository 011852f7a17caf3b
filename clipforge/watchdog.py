"""No-progress watchdog and a first-settle-wins race between a task and a timer."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

logger = logging.getLogger(__name__)


class Watchdog:
    """Timer that fires once ``interval_s`` passes without a :meth:`reset`.

    The expiry is exposed as a future so it can be raced against other work.
    Every exit path must call :meth:`disarm`, otherwise a stale timer could fire
    while a later, unrelated job is running.
    """

    def __init__(self, interval_s: float) -> None:
        self.interval_s = interval_s
        self._loop = asyncio.get_running_loop()
        self._handle: Optional[asyncio.TimerHandle] = None
        self.expired: asyncio.Future = self._loop.create_future()
        self.started_at = self._loop.time()
        self.resets = 0

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def arm(self) -> None:
        if self.expired.done():
            return
        self._cancel_handle()
        self._handle = self._loop.call_later(self.interval_s, self._fire)

    def reset(self) -> None:
        if self._handle is None:
            return
        self.resets += 1
        self.arm()

    def disarm(self) -> None:
        self._cancel_handle()
        if not self.expired.done():
            self.expired.cancel()

    def elapsed_ms(self) -> float:
        return (self._loop.time() - self.started_at) * 1000

    def _cancel_handle(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        if not self.expired.done():
            self.expired.set_result(self.elapsed_ms())


class Abandoned:
    """Marker for a task whose result must never be observed."""

    def __init__(self, task: asyncio.Task, label: str) -> None:
        self.task = task
        self.label = label
        task.add_done_callback(self._discard)

    def _discard(self, task: asyncio.Task) -> None:
        if task.cancelled():
            logger.debug("Abandoned %s was cancelled", self.label)
            return
        exc = task.exception()
        if exc is not None:
            logger.debug("Discarding late failure of abandoned %s: %s", self.label, exc)
        else:
            logger.debug("Discarding late result of abandoned %s", self.label)


async def first_settled(task: asyncio.Task, timer: "asyncio.Future[Any]") -> bool:
    """Wait for whichever of ``task`` and ``timer`` settles first.

    Returns ``True`` when ``task`` won. The timer never cancels the task; the
    caller decides what to do with a task that lost the race.
    """

    if timer.done() and not task.done():
        return False
    done, _ = await asyncio.wait({task, timer}, return_when=asyncio.FIRST_COMPLETED)
    return task in done


__all__ = ["Abandoned", "Watchdog", "first_settled"]
