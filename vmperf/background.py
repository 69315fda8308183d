import asyncio
import logging
from typing import Awaitable, Optional, Set

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """Fire-and-forget task set.

    Holds references so pending tasks are not garbage collected, and logs
    failures instead of surfacing them to whoever spawned the task.
    """

    def __init__(self, name: str):
        self.name = name
        self._tasks: Set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Awaitable, description: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)

        def _done(t: asyncio.Task):
            self._tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error("%s: background %s failed: %s", self.name, description, exc)

        task.add_done_callback(_done)
        return task

    async def join(self, timeout: Optional[float] = None) -> int:
        """Wait for outstanding tasks; returns how many were still running at the timeout."""
        if not self._tasks:
            return 0
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        return len(pending)
