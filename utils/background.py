"""
Fire-and-forget background work.

Generation and research run after the triggering response has been sent.
spawn() never blocks and never raises into the caller; any failure inside the
task is logged at the task boundary.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Set

logger = logging.getLogger(__name__)


class BackgroundJobRunner:
    """Schedules detached coroutines on the running event loop."""

    def __init__(self):
        # Strong references: the loop only keeps weak ones to running tasks.
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending_count(self) -> int:
        return len(self._tasks)

    def spawn(
        self,
        fn: Callable[..., Awaitable[Any]],
        *args: Any,
        name: Optional[str] = None,
    ) -> Optional[asyncio.Task]:
        """
        Start fn(*args) as a background task and return immediately.

        Returns the task (useful in tests) or None when it could not be scheduled.
        """
        label = name or getattr(fn, "__name__", "background-task")
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.error(f"Cannot spawn {label}: no running event loop")
            return None

        task = loop.create_task(self._guarded(fn, args, label), name=label)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.debug(f"Spawned background task {label}")
        return task

    async def _guarded(self, fn: Callable[..., Awaitable[Any]], args: tuple, label: str) -> Any:
        try:
            return await fn(*args)
        except asyncio.CancelledError:
            logger.warning(f"Background task {label} cancelled")
            raise
        except Exception:
            logger.exception(f"Background task {label} failed")
            return None

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight tasks, including ones they spawn while draining."""
        while self._tasks:
            pending = list(self._tasks)
            _, not_done = await asyncio.wait(pending, timeout=timeout)
            if not_done:
                logger.warning(f"{len(not_done)} background task(s) still running after {timeout}s")
                return
