"""Cooperative periodic tasks owned by the service manager."""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)


def task_done_callback(task: asyncio.Task[Any]) -> None:
    """Log unhandled exceptions from background tasks."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Background task {task.get_name()} failed: {exc}")


class PeriodicTask:
    """Run a callback every `interval` seconds until stopped.

    The callback may be a plain function or a coroutine function. Errors
    raised by a run are logged and the loop keeps going.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: Callable[[], Any] | Callable[[], Awaitable[Any]],
        run_on_start: bool = False,
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.interval = interval
        self._callback = callback
        self._run_on_start = run_on_start
        self._task: asyncio.Task[None] | None = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Schedule the loop on the running event loop."""
        if self.running:
            logger.warning(f"Periodic task {self.name} is already running")
            return
        self._task = asyncio.create_task(self._loop(), name=self.name)
        self._task.add_done_callback(task_done_callback)
        logger.info(f"Periodic task {self.name} started (interval: {self.interval}s)")

    async def stop(self) -> None:
        """Cancel the loop and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info(f"Periodic task {self.name} stopped")

    async def run_once(self) -> Any:
        """Execute the callback a single time."""
        result = self._callback()
        if inspect.isawaitable(result):
            result = await result
        self.runs += 1
        return result

    async def _loop(self) -> None:
        if self._run_on_start:
            await self._safe_run()
        while True:
            await asyncio.sleep(self.interval)
            await self._safe_run()

    async def _safe_run(self) -> None:
        try:
            await self.run_once()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"Error in periodic task {self.name}")
