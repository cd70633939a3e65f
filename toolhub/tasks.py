"""Fire-and-forget task tracking.

Telemetry writes (device last-seen updates, command responses) must never
hold up the caller, but their failures still belong in the log.  Tasks are
kept referenced until they finish so the event loop cannot collect them
mid-flight.
"""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Any, Coroutine

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """A set of detached tasks whose failures are logged, never raised."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], description: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(partial(self._done, description))
        return task

    def _done(self, description: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Background %s failed: %s", description, exc)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for pending tasks; cancel whatever is still running after *timeout*."""
        if not self._tasks:
            return
        pending = list(self._tasks)
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)

    def __len__(self) -> int:
        return len(self._tasks)
