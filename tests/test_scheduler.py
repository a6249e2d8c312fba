"""Tests for PeriodicTask."""

import asyncio

import pytest

from mongogui.core.scheduler import PeriodicTask


class TestPeriodicTask:
    """Tests for the cooperative periodic ticker."""

    def test_interval_must_be_positive(self):
        with pytest.raises(ValueError):
            PeriodicTask("bad", 0, lambda: None)

    @pytest.mark.asyncio
    async def test_run_once_supports_sync_and_async_callbacks(self):
        async def async_callback():
            return "async"

        sync_task = PeriodicTask("sync", 60, lambda: "sync")
        async_task = PeriodicTask("async", 60, async_callback)

        assert await sync_task.run_once() == "sync"
        assert await async_task.run_once() == "async"
        assert sync_task.runs == 1
        assert async_task.runs == 1

    @pytest.mark.asyncio
    async def test_start_runs_callback_repeatedly_until_stopped(self):
        calls = []
        task = PeriodicTask("tick", 0.01, lambda: calls.append(1))

        task.start()
        assert task.running
        await asyncio.sleep(0.1)
        await task.stop()

        assert not task.running
        assert len(calls) >= 2
        count = len(calls)
        await asyncio.sleep(0.05)
        assert len(calls) == count

    @pytest.mark.asyncio
    async def test_run_on_start_runs_immediately(self):
        calls = []
        task = PeriodicTask("eager", 60, lambda: calls.append(1), run_on_start=True)

        task.start()
        await asyncio.sleep(0.01)
        await task.stop()

        assert calls == [1]

    @pytest.mark.asyncio
    async def test_errors_do_not_stop_the_loop(self):
        """Test that a failing run is logged and the next run still happens."""
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")

        task = PeriodicTask("flaky", 0.01, flaky)
        task.start()
        await asyncio.sleep(0.1)
        await task.stop()

        assert len(calls) >= 2

    @pytest.mark.asyncio
    async def test_start_twice_keeps_single_loop(self):
        task = PeriodicTask("once", 60, lambda: None)
        task.start()
        first = task._task
        task.start()
        assert task._task is first
        await task.stop()

    @pytest.mark.asyncio
    async def test_stop_without_start_is_noop(self):
        task = PeriodicTask("idle", 60, lambda: None)
        await task.stop()
        assert not task.running
