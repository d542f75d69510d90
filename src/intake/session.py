"""
Per-call media session.

A `CallSession` owns both ends of the audio relay: the telephony WebSocket the
provider streams into, and the Deepgram connection audio is forwarded to.
Final transcripts are queued and handled one at a time by the session's
worker, in arrival order.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

import structlog

if TYPE_CHECKING:
    from src.intake.dashboard import DashboardContext
    from src.intake.stt import DeepgramSTT

logger = structlog.get_logger(__name__)

TranscriptHandler = Callable[[str, str], Awaitable[None]]


@dataclass
class QueuedTranscript:
    text: str
    confidence: Optional[float] = None
    received_at: float = field(default_factory=time.time)


@dataclass
class CallSession:
    """State for one connected media stream."""
    call_control_id: str
    telephony: Any
    stt: Optional["DeepgramSTT"] = None
    context: Optional["DashboardContext"] = None
    closed: bool = False
    flow_complete: bool = False
    final_count: int = 0
    media_frames: int = 0
    logged_first_message: bool = False
    started_at: float = field(default_factory=time.time)
    queue: "asyncio.Queue[QueuedTranscript]" = field(default_factory=asyncio.Queue)
    worker_task: Optional[asyncio.Task] = None

    @property
    def accepts_audio(self) -> bool:
        return not self.closed and self.stt is not None and self.stt.is_connected

    def start_worker(self, handler: TranscriptHandler) -> None:
        if self.worker_task is None or self.worker_task.done():
            self.worker_task = asyncio.create_task(self._worker(handler))

    def enqueue(self, item: QueuedTranscript) -> None:
        self.queue.put_nowait(item)

    async def stop_worker(self) -> None:
        task = self.worker_task
        self.worker_task = None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _worker(self, handler: TranscriptHandler) -> None:
        """Process queued final transcripts sequentially."""
        try:
            while not self.closed:
                queued = await self.queue.get()
                try:
                    await handler(self.call_control_id, queued.text)
                except Exception as e:
                    logger.error(
                        "Transcript handling failed",
                        call_control_id=self.call_control_id,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                finally:
                    self.queue.task_done()
        except asyncio.CancelledError:
            pass
