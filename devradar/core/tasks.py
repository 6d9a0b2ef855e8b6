"""
Best-effort side effects.

Work whose failure must never reach the caller (heatmap counters, achievement
grants and their broadcasts) runs through a ``BestEffort`` runner: failures
are logged and counted, never raised.
"""

import asyncio
import logging
from typing import Awaitable, Optional, Set

from devradar.core.logging import log_event
from devradar.core.metrics import best_effort_failures_total


class BestEffort:
    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("devradar.tasks")
        self._tasks: Set[asyncio.Task] = set()

    def _record_failure(self, name: str, exc: BaseException, user_id: Optional[str]) -> None:
        best_effort_failures_total.inc(labels={"task": name})
        log_event(
            "error",
            "task.failed",
            logger=self.logger,
            user_id=user_id,
            event_type=name,
            error_code="best_effort_failed",
            extra={"error": repr(exc)},
        )

    async def run(self, name: str, coro: Awaitable, *, user_id: Optional[str] = None) -> bool:
        """Await ``coro``; return False instead of raising when it fails."""
        try:
            await coro
            return True
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._record_failure(name, exc, user_id)
            return False

    def spawn(self, name: str, coro: Awaitable, *, user_id: Optional[str] = None) -> asyncio.Task:
        """Schedule ``coro`` in the background. The task is tracked until done."""
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                self._record_failure(name, exc, user_id)

        task.add_done_callback(_done)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight background tasks (used at shutdown and in tests)."""
        tasks = list(self._tasks)
        if not tasks:
            return
        done, not_done = await asyncio.wait(tasks, timeout=timeout)
        for task in not_done:
            task.cancel()
