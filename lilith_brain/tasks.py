from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine, Set

logger = logging.getLogger("lilith_brain.tasks")


class BackgroundTasks:
    """Owns detached fire-and-forget tasks so they are not garbage collected mid-flight.

    Callers never await the spawned work. Failures are logged and counted, never re-raised.
    """

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task[Any]] = set()
        self.failures = 0
        self.completed = 0

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            self.completed += 1
            return
        self.failures += 1
        logger.error(
            "[tasks] background task failed name=%s error=%s",
            task.get_name(),
            exc,
            exc_info=(type(exc), exc, exc.__traceback__),
        )

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for the currently pending tasks, including ones they spawn while running."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._tasks:
            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            if remaining == 0.0:
                break
            await asyncio.wait(set(self._tasks), timeout=remaining)

    async def cancel_all(self) -> None:
        pending = list(self._tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
