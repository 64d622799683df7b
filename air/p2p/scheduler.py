"""
Scheduler — recurring tasks that shutdown can cancel.

Each recurring job waits its interval *after* the previous run completes,
so the effective period drifts by the job's own latency. A failing run is
logged and the loop carries on; cancellation always propagates.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Coroutine

log = logging.getLogger(__name__)


class Scheduler:
    """Owns every background task of a node.

    Usage:
        scheduler = Scheduler()
        scheduler.every("heartbeat", 60, registry.heartbeat)
        ...
        await scheduler.cancel_all()
    """

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task] = {}
        self.runs: dict[str, int] = {}
        self.failures: dict[str, int] = {}

    @property
    def names(self) -> list[str]:
        return [name for name, task in self._tasks.items() if not task.done()]

    def __contains__(self, name: str) -> bool:
        return name in self.names

    def every(
        self,
        name: str,
        interval: float,
        func: Callable[[], Awaitable[Any]],
        run_first: bool = True,
    ) -> asyncio.Task:
        """Run ``func`` now (or after one interval) and then after each interval."""
        if name in self:
            raise ValueError(f"Task already scheduled: {name}")
        return self._start(name, self._loop(name, interval, func, run_first))

    def spawn(self, name: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        """Run a long-lived coroutine under the scheduler's ownership."""
        if name in self:
            coro.close()
            raise ValueError(f"Task already scheduled: {name}")
        return self._start(name, coro)

    def _start(self, name: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        task.add_done_callback(self._task_done_cleanup)
        self._tasks[name] = task
        return task

    async def _loop(
        self,
        name: str,
        interval: float,
        func: Callable[[], Awaitable[Any]],
        run_first: bool,
    ) -> None:
        if not run_first:
            await asyncio.sleep(interval)
        while True:
            try:
                await func()
                self.runs[name] = self.runs.get(name, 0) + 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.failures[name] = self.failures.get(name, 0) + 1
                log.warning("Task %s failed: %s", name, e)
            await asyncio.sleep(interval)

    def _task_done_cleanup(self, task: asyncio.Task) -> None:
        """Drop finished tasks and surface unexpected exits."""
        name = task.get_name()
        if self._tasks.get(name) is task:
            del self._tasks[name]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("Task %s exited: %s", name, exc)

    def cancel(self, name: str) -> bool:
        task = self._tasks.get(name)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def cancel_all(self) -> None:
        """Cancel every task and wait for them to finish."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        log.debug("Cancelled %d scheduled tasks", len(tasks))
