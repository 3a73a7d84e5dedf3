"""Tests for the periodic loop and supervised task helpers."""

from __future__ import annotations

import asyncio
import time

import pytest

from lanmeet.discovery.resilience import PeriodicTask, supervised_task


class _Counter(PeriodicTask):
    def __init__(self, interval: float, stop: asyncio.Event, fail_first: bool = False):
        super().__init__("test", interval, stop)
        self.n = 0
        self.fail_first = fail_first

    async def tick(self) -> None:
        self.n += 1
        if self.fail_first and self.n == 1:
            raise ValueError("boom")


# ---------------------------------------------------------------------------
# PeriodicTask
# ---------------------------------------------------------------------------

class TestPeriodicTask:
    @pytest.mark.asyncio
    async def test_ticks_repeatedly(self):
        stop = asyncio.Event()
        loop = _Counter(0.05, stop)
        task = asyncio.create_task(loop.run())
        await asyncio.sleep(0.18)
        stop.set()
        await task
        assert loop.n >= 3

    @pytest.mark.asyncio
    async def test_tick_exception_does_not_stop(self):
        stop = asyncio.Event()
        loop = _Counter(0.05, stop, fail_first=True)
        task = asyncio.create_task(loop.run())
        await asyncio.sleep(0.2)
        stop.set()
        await task
        # Should have continued after the exception
        assert loop.n >= 2

    @pytest.mark.asyncio
    async def test_stop_is_prompt(self):
        stop = asyncio.Event()
        loop = _Counter(10.0, stop)
        task = asyncio.create_task(loop.run())
        await asyncio.sleep(0.01)
        started = time.monotonic()
        stop.set()
        await asyncio.wait_for(task, timeout=1.0)
        assert time.monotonic() - started < 0.5
        assert loop.n == 1

    @pytest.mark.asyncio
    async def test_preset_stop_never_ticks(self):
        stop = asyncio.Event()
        stop.set()
        loop = _Counter(0.01, stop)
        await loop.run()
        assert loop.n == 0

    @pytest.mark.asyncio
    async def test_reschedule_restarts_wait(self):
        stop = asyncio.Event()
        loop = _Counter(10.0, stop)
        task = asyncio.create_task(loop.run())
        await asyncio.sleep(0.01)
        assert loop.n == 1
        loop.reschedule(0.02)
        await asyncio.sleep(0.15)
        stop.set()
        await asyncio.wait_for(task, timeout=1.0)
        assert loop.interval == 0.02
        assert loop.n >= 3

    @pytest.mark.asyncio
    async def test_reschedule_to_longer_interval(self):
        stop = asyncio.Event()
        loop = _Counter(0.02, stop)
        task = asyncio.create_task(loop.run())
        await asyncio.sleep(0.05)
        loop.reschedule(10.0)
        ticks = loop.n
        await asyncio.sleep(0.1)
        assert loop.n == ticks
        stop.set()
        await asyncio.wait_for(task, timeout=1.0)

    def test_reschedule_rejects_non_positive(self):
        loop = _Counter(1.0, asyncio.Event())
        with pytest.raises(ValueError):
            loop.reschedule(0)


# ---------------------------------------------------------------------------
# supervised_task
# ---------------------------------------------------------------------------

class TestSupervisedTask:
    @pytest.mark.asyncio
    async def test_normal_completion(self):
        async def good():
            return 42

        task = supervised_task(good(), name="test-good")
        result = await task
        assert result == 42

    @pytest.mark.asyncio
    async def test_exception_logged(self):
        async def bad():
            raise RuntimeError("oops")

        task = supervised_task(bad(), name="test-bad")
        with pytest.raises(RuntimeError):
            await task

    @pytest.mark.asyncio
    async def test_cancelled_no_error(self):
        async def slow():
            await asyncio.sleep(100)

        task = supervised_task(slow(), name="test-cancel")
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    @pytest.mark.asyncio
    async def test_registry_holds_running_task(self):
        registry: set[asyncio.Task] = set()
        release = asyncio.Event()

        async def waiter():
            await release.wait()

        task = supervised_task(waiter(), name="test-registry", registry=registry)
        assert registry == {task}
        release.set()
        await task
        await asyncio.sleep(0)
        assert registry == set()

    @pytest.mark.asyncio
    async def test_registry_released_on_failure_and_cancel(self):
        registry: set[asyncio.Task] = set()

        async def bad():
            raise RuntimeError("oops")

        async def slow():
            await asyncio.sleep(100)

        failing = supervised_task(bad(), registry=registry)
        cancelled = supervised_task(slow(), registry=registry)
        cancelled.cancel()
        await asyncio.gather(failing, cancelled, return_exceptions=True)
        await asyncio.sleep(0)
        assert registry == set()
