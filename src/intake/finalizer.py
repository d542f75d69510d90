"""
Transcript finalizer for the free-text issue question.

Deepgram emits several final transcripts while a caller describes a problem.
`IssueAccumulator` joins them into one answer and decides when the caller is
done, using two timers:

- finalize timer: fires after `silence_ms` without a new accepted chunk
- max-listen timer: fires after `max_listen_ms`

Both are re-armed on every accepted chunk (rolling ceiling). With
`anchored_ceiling=True` the max-listen timer is armed once at `begin()` and
left alone, so the ceiling counts from step entry.

Either timer calls `on_finalize(reason)`. The owner must call `claim()` from
there; only the first claim per listening window returns the buffer.
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Optional

import structlog

from src.intake.text import normalize_free_text

logger = structlog.get_logger(__name__)

FinalizeCallback = Callable[[str], Awaitable[None]]


class IssueAccumulator:
    """Buffer + debounce state for one free-text step."""

    def __init__(
        self,
        *,
        on_finalize: FinalizeCallback,
        silence_ms: int = 2000,
        max_listen_ms: int = 20000,
        dedup_window_ms: int = 800,
        anchored_ceiling: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._on_finalize = on_finalize
        self.silence_ms = silence_ms
        self.max_listen_ms = max_listen_ms
        self.dedup_window_ms = dedup_window_ms
        self.anchored_ceiling = anchored_ceiling
        self._clock = clock

        self.buffer: str = ""
        self.last_chunk: str = ""
        self.last_chunk_at: float = 0.0
        self.last_heard_at: float = 0.0
        self.listening_active: bool = False
        self._finalize_task: Optional[asyncio.Task] = None
        self._max_listen_task: Optional[asyncio.Task] = None

    @property
    def has_pending_timers(self) -> bool:
        return any(
            task is not None and not task.done()
            for task in (self._finalize_task, self._max_listen_task)
        )

    def begin(self) -> None:
        """Reset the buffer and open a new listening window."""
        self.cancel_timers()
        self.buffer = ""
        self.last_chunk = ""
        self.last_chunk_at = 0.0
        self.last_heard_at = self._clock()
        self.listening_active = True
        self._max_listen_task = self._arm(self.max_listen_ms, "max_listen")

    def add_chunk(self, text: str, now: Optional[float] = None) -> bool:
        """
        Offer a final transcript chunk.

        Returns True if the chunk was appended, False if it was empty, a
        duplicate of the previous chunk inside the dedup window, or arrived
        while no listening window is open.
        """
        if not self.listening_active:
            return False

        chunk = normalize_free_text(text)
        if not chunk:
            return False

        now = self._clock() if now is None else now
        if (
            self.last_chunk
            and chunk == self.last_chunk
            and (now - self.last_chunk_at) * 1000 < self.dedup_window_ms
        ):
            logger.debug("Issue chunk dropped as duplicate", text=chunk)
            return False

        self.last_chunk = chunk
        self.last_chunk_at = now
        self.buffer = f"{self.buffer} {chunk}".strip() if self.buffer else chunk
        self.last_heard_at = now

        self._cancel(self._finalize_task)
        self._finalize_task = self._arm(self.silence_ms, "silence")
        if not self.anchored_ceiling:
            self._cancel(self._max_listen_task)
            self._max_listen_task = self._arm(self.max_listen_ms, "max_listen")
        return True

    def claim(self) -> Optional[str]:
        """
        Close the listening window and return the normalized buffer.

        Returns None if the window was already closed (a racing timer or a
        second trigger), which makes finalization idempotent.
        """
        if not self.listening_active:
            return None
        self.listening_active = False
        self.cancel_timers()
        return normalize_free_text(self.buffer)

    def cancel_timers(self) -> None:
        self._cancel(self._finalize_task)
        self._cancel(self._max_listen_task)
        self._finalize_task = None
        self._max_listen_task = None

    @staticmethod
    def _cancel(task: Optional[asyncio.Task]) -> None:
        # A timer that is itself running the finalize callback must not cancel itself.
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()

    def _arm(self, delay_ms: int, reason: str) -> asyncio.Task:
        return asyncio.create_task(self._fire_after(delay_ms / 1000.0, reason))

    async def _fire_after(self, delay_s: float, reason: str) -> None:
        try:
            await asyncio.sleep(delay_s)
            await self._on_finalize(reason)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("Issue finalize failed", reason=reason, error=str(e))
