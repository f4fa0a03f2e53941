"""Cancellable periodic tasks driven by an injectable clock."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Callable, Optional, Protocol

LOGGER = logging.getLogger(__name__)


class Clock(Protocol):
    """Time source used by :class:`PeriodicTask`."""

    def monotonic(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Clock backed by ``time.monotonic`` and ``asyncio.sleep``."""

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class PeriodicTask:
    """Invoke a synchronous callback on a fixed period.

    Deadlines are computed from the clock rather than accumulated sleeps, so
    a slow callback does not drift the schedule. Missed periods are skipped,
    never replayed in a burst. Exceptions raised by the callback are logged
    and the task keeps running.

    The callback runs to completion between two awaits, so cancelling the
    task never leaves a callback half applied.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: Callable[[], object],
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        if interval <= 0:
            raise ValueError(f"{name}: interval must be positive (got {interval})")
        self.name = name
        self.interval = interval
        self._callback = callback
        self._clock = clock or SystemClock()
        self._task: Optional[asyncio.Task[None]] = None
        self.runs = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            LOGGER.warning("Periodic task %s already running", self.name)
            return
        self._task = asyncio.create_task(self._run(), name=f"periodic:{self.name}")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _run(self) -> None:
        deadline = self._clock.monotonic() + self.interval
        while True:
            delay = deadline - self._clock.monotonic()
            if delay > 0:
                await self._clock.sleep(delay)

            try:
                self._callback()
            except Exception:
                self.failures += 1
                LOGGER.exception("Periodic task %s raised; continuing", self.name)
            finally:
                self.runs += 1

            deadline += self.interval
            now = self._clock.monotonic()
            if deadline <= now:
                skipped = int((now - deadline) // self.interval) + 1
                LOGGER.debug(
                    "Periodic task %s fell behind; skipping %d period(s)",
                    self.name,
                    skipped,
                )
                deadline += skipped * self.interval
