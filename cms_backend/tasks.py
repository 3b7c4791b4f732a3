"""Periodic background maintenance.

Each task runs in its own asyncio task with its own error boundary, so one
task's failure never stops its siblings. All tasks are cancelled on shutdown.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


@dataclass
class PeriodicTask:
    name: str
    interval_seconds: float
    action: Callable[[], Awaitable[Any] | Any]
    runs: int = 0
    failures: int = 0


class BackgroundTasksRunner:

    def __init__(self):
        self._tasks: list[PeriodicTask] = []
        self._running: list[asyncio.Task] = []

    @property
    def is_running(self) -> bool:
        return any(not t.done() for t in self._running)

    @property
    def tasks(self) -> list[PeriodicTask]:
        return list(self._tasks)

    def add(self, name: str, interval_seconds: float, action: Callable[[], Awaitable[Any] | Any]) -> PeriodicTask:
        task = PeriodicTask(name, interval_seconds, action)
        self._tasks.append(task)
        return task

    async def run_once(self, task: PeriodicTask):
        try:
            result = task.action()
            if asyncio.iscoroutine(result):
                result = await result
            task.runs += 1
            logger.debug("Background task ran | task=%s | result=%s", task.name, result)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            task.failures += 1
            logger.warning("Background task failed | task=%s | %s", task.name, str(e)[:200])

    async def _loop(self, task: PeriodicTask):
        while True:
            await asyncio.sleep(task.interval_seconds)
            await self.run_once(task)

    def start(self):
        if self.is_running:
            return
        self._running = [
            asyncio.create_task(self._loop(task), name=f"periodic:{task.name}")
            for task in self._tasks
        ]
        logger.info("Background tasks started | count=%d", len(self._running))

    async def stop(self):
        for running in self._running:
            running.cancel()
        await asyncio.gather(*self._running, return_exceptions=True)
        self._running = []
        logger.info("Background tasks stopped")
