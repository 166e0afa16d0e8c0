"""
Firmware feature: cooperative timed tasks.

The device main loop calls `run_due(now_ms)` on every pass; each task runs
when its next due time has passed. A failing task is logged and rescheduled,
it never stops the others.
"""

import logging
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)

TaskCallback = Callable[[int], None]


@dataclass
class TimedTask:
    name: str
    interval_ms: int
    callback: TaskCallback
    next_due_ms: int = 0
    one_shot: bool = False


class TaskScheduler:
    def __init__(self):
        self._tasks: dict[str, TimedTask] = {}

    def add(
        self,
        name: str,
        interval_ms: int,
        callback: TaskCallback,
        start_ms: int = 0,
        one_shot: bool = False,
    ) -> TimedTask:
        """Register (or replace) a task, first due at `start_ms`."""
        task = TimedTask(name, interval_ms, callback, next_due_ms=start_ms, one_shot=one_shot)
        self._tasks[name] = task
        return task

    def remove(self, name: str) -> None:
        self._tasks.pop(name, None)

    def has(self, name: str) -> bool:
        return name in self._tasks

    def run_due(self, now_ms: int) -> list[str]:
        ran = []
        for task in list(self._tasks.values()):
            if self._tasks.get(task.name) is not task or now_ms < task.next_due_ms:
                continue
            if task.one_shot:
                del self._tasks[task.name]
            else:
                task.next_due_ms = now_ms + task.interval_ms
            try:
                task.callback(now_ms)
            except Exception as e:
                logger.error(f"❌ Task '{task.name}' failed: {e}", exc_info=True)
            ran.append(task.name)
        return ran
