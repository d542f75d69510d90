"""
Silence / reprompt timer.

At most one pending reply timer per call, kept in the store's
`reply_timers` registry. Firing removes the entry before speaking, so a timer
that has fired can be re-scheduled immediately.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import structlog

from src.intake.config import Config, get_config
from src.intake.store import CallStore
from src.intake.telnyx_client import CallControlClient

logger = structlog.get_logger(__name__)

REPROMPT_TEXT = "How can I help you today?"


class ReplyTimers:
    """Schedules and cancels the per-call reprompt deadline."""

    def __init__(
        self,
        store: CallStore,
        call_control: CallControlClient,
        config: Optional[Config] = None,
    ):
        self.store = store
        self.call_control = call_control
        self.config = config or get_config()

    def is_pending(self, call_control_id: str) -> bool:
        task = self.store.reply_timers.get(call_control_id)
        return task is not None and not task.done()

    def schedule(self, call_control_id: str) -> bool:
        """Arm the reprompt timer. No-op (returns False) if one is already pending."""
        if call_control_id in self.store.reply_timers:
            return False

        delay_s = self.config.silence_reprompt_ms / 1000.0
        self.store.reply_timers[call_control_id] = asyncio.create_task(
            self._fire_after(call_control_id, delay_s)
        )
        logger.info(
            "Reply timer scheduled",
            call_control_id=call_control_id,
            timeout_ms=self.config.silence_reprompt_ms,
        )
        return True

    def cancel(self, call_control_id: str, reason: str) -> bool:
        task = self.store.reply_timers.pop(call_control_id, None)
        if task is None:
            return False
        if not task.done():
            task.cancel()
        logger.info("Reply timer canceled", call_control_id=call_control_id, reason=reason)
        return True

    async def _fire_after(self, call_control_id: str, delay_s: float) -> None:
        try:
            await asyncio.sleep(delay_s)
        except asyncio.CancelledError:
            return

        # Self-clearing: drop the registry entry before the side effect.
        if self.store.reply_timers.get(call_control_id) is asyncio.current_task():
            del self.store.reply_timers[call_control_id]
        logger.info("Reply timer fired", call_control_id=call_control_id)

        try:
            ok = await self.call_control.speak(call_control_id, REPROMPT_TEXT)
        except Exception as e:
            logger.error(
                "Silence reprompt failed",
                call_control_id=call_control_id,
                error=str(e),
            )
            return
        if not ok:
            logger.warning("Silence reprompt not delivered", call_control_id=call_control_id)
