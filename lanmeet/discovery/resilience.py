"""Task helpers shared by the discovery loops.

Provides:
- ``PeriodicTask``: fixed-cadence async loop that ends on a shared stop event
- ``supervised_task``: create_task wrapper that logs failures and can keep
  the task in a caller-owned registry until it finishes
"""

from __future__ import annotations

import asyncio
from typing import Any, Coroutine

from loguru import logger


# ---------------------------------------------------------------------------
# Periodic loop
# ---------------------------------------------------------------------------

class PeriodicTask:
    """Runs ``tick()`` every *interval* seconds until *stop_event* is set.

    There is no backoff: the cadence is fixed.  Exceptions raised by ``tick``
    are logged and the loop carries on with the next tick.  Setting the stop
    event wakes the loop immediately instead of waiting out the interval.
    ``reschedule()`` changes the interval of a running loop and restarts the
    current wait with the new value.

    Parameters
    ----------
    name:
        Human-readable label for logging.
    interval:
        Seconds between ticks.
    stop_event:
        Shared event; once set, the loop finishes after the current tick.
    """

    def __init__(self, name: str, interval: float, stop_event: asyncio.Event) -> None:
        self.name = name
        self.interval = interval
        self._stop = stop_event
        self._rescheduled = asyncio.Event()

    async def tick(self) -> None:
        raise NotImplementedError

    def reschedule(self, interval: float) -> None:
        """Use *interval* from now on; the pending wait starts over."""
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval!r}")
        logger.debug("[Discovery/{}] interval {:.3f}s -> {:.3f}s", self.name, self.interval, interval)
        self.interval = interval
        self._rescheduled.set()

    async def run(self) -> None:
        logger.debug("[Discovery/{}] started (interval={:.3f}s)", self.name, self.interval)
        while not self._stop.is_set():
            try:
                await self.tick()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("[Discovery/{}] tick error: {}", self.name, exc)
            if await self._pause():
                break
        logger.debug("[Discovery/{}] stopped", self.name)

    async def _pause(self) -> bool:
        """Wait one interval, restarting on reschedule.  True if stopped."""
        while True:
            self._rescheduled.clear()
            stop = asyncio.ensure_future(self._stop.wait())
            rescheduled = asyncio.ensure_future(self._rescheduled.wait())
            try:
                await asyncio.wait(
                    [stop, rescheduled],
                    timeout=self.interval,
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                stop.cancel()
                rescheduled.cancel()
            if self._stop.is_set():
                return True
            if not self._rescheduled.is_set():
                return False


# ---------------------------------------------------------------------------
# Supervised task: create_task with failure logging and optional tracking
# ---------------------------------------------------------------------------

def supervised_task(
    coro: Coroutine[Any, Any, Any],
    *,
    name: str = "",
    registry: set[asyncio.Task] | None = None,
) -> asyncio.Task:
    """Start *coro* as a task whose failure is logged instead of lost.

    With a *registry*, the task is held there while it runs and discarded
    when it finishes, so the owner keeps a strong reference and can wait for
    or cancel whatever is still outstanding.
    """
    task = asyncio.create_task(coro, name=name or None)
    if registry is not None:
        registry.add(task)

    def _on_done(t: asyncio.Task) -> None:
        if registry is not None:
            registry.discard(t)
        if t.cancelled():
            logger.debug("[Discovery] task {} cancelled", t.get_name())
            return
        exc = t.exception()
        if exc is not None:
            logger.opt(exception=exc).error("[Discovery] task {} failed: {}", t.get_name(), exc)

    task.add_done_callback(_on_done)
    return task
