"""Supervised fire-and-forget tasks.

Work that must outlive the request that started it (a gateway restart) is
handed to a ``BackgroundTasks`` registry instead of a bare
``asyncio.create_task``: the registry holds a strong reference so the task
is not garbage collected mid-flight, logs failures instead of dropping
them, and lets shutdown wait for outstanding work.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Coroutine
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from moltkeeper.logger import logger


@dataclass(frozen=True)
class TaskFailure:
    name: str
    error: str
    at: str


class BackgroundTasks:
    def __init__(self, *, max_failures: int = 20) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()
        self.failures: deque[TaskFailure] = deque(maxlen=max_failures)

    def spawn(
        self,
        coro: Coroutine[Any, Any, Any],
        *,
        name: str | None = None,
    ) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            # exc_info carries the traceback; logger.exception() needs an
            # active except block, which a done-callback does not have.
            logger.error(
                "Background task failed",
                task_name=task.get_name(),
                exc_info=exc,
            )
            self.failures.append(
                TaskFailure(
                    name=task.get_name(),
                    error=str(exc),
                    at=datetime.now(UTC).isoformat(),
                )
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float) -> None:
        """Wait for outstanding tasks, cancelling whatever is left at the deadline."""
        if not self._tasks:
            return
        tasks = list(self._tasks)
        _, still_running = await asyncio.wait(tasks, timeout=timeout)
        for task in still_running:
            logger.warning("Cancelling background task at shutdown", task_name=task.get_name())
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
