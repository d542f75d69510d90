"""Fire-and-forget task bookkeeping."""

from __future__ import annotations

import asyncio
from typing import Any, Coroutine, Optional, Set

import structlog

logger = structlog.get_logger(__name__)


class BackgroundTasks:
    """
    Runs coroutines detached from the caller.

    Holds strong references until completion, logs failures with the task
    label and the call id, and never lets an exception escape.
    """

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    def spawn(
        self,
        coro: Coroutine[Any, Any, Any],
        *,
        label: str,
        call_control_id: Optional[str] = None,
    ) -> asyncio.Task:
        task = asyncio.create_task(self._guard(coro, label, call_control_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    async def _guard(
        coro: Coroutine[Any, Any, Any],
        label: str,
        call_control_id: Optional[str],
    ) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(
                "Background task failed",
                task=label,
                call_control_id=call_control_id,
                error_type=type(e).__name__,
                error=str(e),
            )

    def __len__(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight tasks (including ones spawned while waiting)."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._tasks:
            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            if remaining == 0.0:
                break
            pending = list(self._tasks)
            await asyncio.wait(pending, timeout=remaining)

    async def cancel_all(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
