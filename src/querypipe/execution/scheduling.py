"""Timer scheduling abstraction.

Every delayed action in the pipeline (batch flush windows, retry delays,
debounced cache GC) goes through a ``Scheduler`` so tests can substitute
``VirtualScheduler`` and advance time deterministically instead of sleeping.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from collections.abc import Callable
from typing import Protocol

from querypipe.core.logging import get_logger

_logger = get_logger("scheduling")


class TimerHandle(Protocol):
    """Cancellable handle for a scheduled callback."""

    def cancel(self) -> None: ...

    def cancelled(self) -> bool: ...


class Scheduler(Protocol):
    """Clock and delayed-callback source."""

    def now(self) -> float:
        """Current time in seconds (monotonic)."""
        ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """Run ``callback`` once after ``delay`` seconds."""
        ...

    async def sleep(self, delay: float) -> None:
        """Suspend the caller for ``delay`` seconds."""
        ...


# ─── Real event loop ──────────────────────────────────────────────────


class AsyncioScheduler:
    """Scheduler backed by the running asyncio event loop."""

    def now(self) -> float:
        try:
            return asyncio.get_running_loop().time()
        except RuntimeError:
            return time.monotonic()

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return asyncio.get_running_loop().call_later(max(delay, 0.0), callback)

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(max(delay, 0.0))


# ─── Virtual time ─────────────────────────────────────────────────────


class VirtualTimer:
    """Timer registered with a VirtualScheduler."""

    __slots__ = ("when", "callback", "_cancelled")

    def __init__(self, when: float, callback: Callable[[], None]) -> None:
        self.when = when
        self.callback = callback
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    def cancelled(self) -> bool:
        return self._cancelled


class VirtualScheduler:
    """Deterministic scheduler whose clock only moves when told to.

    Usage::

        scheduler = VirtualScheduler()
        batcher = RequestBatcher(config, scheduler=scheduler)
        task = asyncio.create_task(batcher.add_to_batch(request, forward))
        await scheduler.advance(0.1)  # fires the flush timer
    """

    def __init__(self, start: float = 0.0, settle_rounds: int = 50) -> None:
        self._now = start
        self._settle_rounds = settle_rounds
        self._timers: list[tuple[float, int, VirtualTimer]] = []
        self._sequence = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> VirtualTimer:
        timer = VirtualTimer(self._now + max(delay, 0.0), callback)
        heapq.heappush(self._timers, (timer.when, next(self._sequence), timer))
        return timer

    async def sleep(self, delay: float) -> None:
        if delay <= 0:
            await asyncio.sleep(0)
            return
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()

        def _wake() -> None:
            if not future.done():
                future.set_result(None)

        timer = self.call_later(delay, _wake)
        try:
            await future
        finally:
            timer.cancel()

    @property
    def pending(self) -> int:
        """Number of live (uncancelled) timers."""
        return sum(1 for _, _, t in self._timers if not t.cancelled())

    async def settle(self) -> None:
        """Yield to the event loop until already-ready work has run."""
        for _ in range(self._settle_rounds):
            await asyncio.sleep(0)

    async def advance(self, seconds: float) -> None:
        """Move the clock forward, firing due timers in order."""
        target = self._now + seconds
        await self.settle()
        while self._timers and self._timers[0][0] <= target:
            _, _, timer = heapq.heappop(self._timers)
            if timer.cancelled():
                continue
            self._now = max(self._now, timer.when)
            try:
                timer.callback()
            except Exception:
                _logger.warning("scheduler.callback_error", exc_info=True)
            await self.settle()
        self._now = target
        await self.settle()

    async def run_until_idle(self, limit: float = 3600.0) -> None:
        """Fire timers until none remain (bounded by ``limit`` seconds)."""
        deadline = self._now + limit
        await self.settle()
        while self._timers and self._now < deadline:
            next_when = self._timers[0][0]
            await self.advance(max(next_when - self._now, 0.0))


__all__ = [
    "AsyncioScheduler",
    "Scheduler",
    "TimerHandle",
    "VirtualScheduler",
    "VirtualTimer",
]
