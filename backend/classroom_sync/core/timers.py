"""
Revocable single-shot timers on the running asyncio loop.

Each component owns its own `TimerRegistry`; a timer is identified by a key
(e.g. "flush:AA:BB:..") and arming a key again revokes the previous handle.
Cancelling revokes the task itself instead of leaving a flag for the callback
to check late.
"""

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class TimerRegistry:
    def __init__(self, name: str):
        self.name = name
        self._tasks: dict[str, asyncio.Task] = {}

    def arm(self, key: str, delay: float, callback: Callable[[], Awaitable[None]]) -> asyncio.Task:
        self.cancel(key)
        task = asyncio.get_running_loop().create_task(self._run(key, delay, callback))
        self._tasks[key] = task
        return task

    async def _run(self, key: str, delay: float, callback: Callable[[], Awaitable[None]]) -> None:
        await asyncio.sleep(delay)
        # Fired: from here on the handle can no longer be revoked
        if self._tasks.get(key) is asyncio.current_task():
            del self._tasks[key]
        try:
            await callback()
        except Exception as e:
            logger.error(f"❌ [{self.name}] timer '{key}' failed: {e}", exc_info=True)

    def cancel(self, key: str) -> bool:
        task = self._tasks.pop(key, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def cancel_prefix(self, prefix: str) -> int:
        keys = [k for k in self._tasks if k.startswith(prefix)]
        return sum(1 for k in keys if self.cancel(k))

    def is_armed(self, key: str) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    def cancel_all(self) -> None:
        for key in list(self._tasks):
            self.cancel(key)
