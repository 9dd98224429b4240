import asyncio
import logging
from typing import Awaitable, Set

logger = logging.getLogger(__name__)


class TaskQueue:
    """Fire-and-forget work on the running event loop. Failures are logged, not raised."""

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def submit(self, coro: Awaitable, name: str = "background") -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        task.add_done_callback(lambda t: self._done(t, name))
        self._tasks.add(task)
        return task

    def _done(self, task: asyncio.Task, name: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Background task '{name}' failed: {exc}", exc_info=exc)

    def __len__(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
