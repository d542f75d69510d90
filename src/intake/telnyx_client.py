"""
Telnyx Call Control actions.

Every action is fire-and-forget from the engine's point of view: failures are
logged with the call id, the action name and whatever the API returned, and
`send_action` reports them as `False` instead of raising.
"""

from __future__ import annotations

import time
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx
import structlog

from src.intake.config import Config, get_config

logger = structlog.get_logger(__name__)


class CallControlClient:
    """Thin async client for `POST /calls/{id}/actions/{action}`."""

    def __init__(
        self,
        config: Optional[Config] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or get_config()
        self._transport = transport

    def _action_url(self, call_control_id: str, action: str) -> str:
        return (
            f"{self.config.telnyx_api_base.rstrip('/')}"
            f"/calls/{quote(call_control_id, safe='')}/actions/{action}"
        )

    async def send_action(
        self,
        call_control_id: str,
        action: str,
        body: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """POST a Call Control action. Returns True on a 2xx response."""
        if not self.config.telnyx_api_key:
            logger.error(
                "TELNYX_API_KEY is not set; skipping Call Control action",
                action=action,
                call_control_id=call_control_id,
            )
            return False

        url = self._action_url(call_control_id, action)
        headers = {
            "Authorization": f"Bearer {self.config.telnyx_api_key}",
            "Content-Type": "application/json",
        }

        started = time.time()
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.http_timeout_seconds),
                transport=self._transport,
            ) as client:
                resp = await client.post(url, json=body, headers=headers)
        except httpx.HTTPError as e:
            logger.error(
                "Telnyx action threw",
                action=action,
                call_control_id=call_control_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        if resp.is_success:
            logger.debug(
                "Telnyx action sent",
                action=action,
                call_control_id=call_control_id,
                status=resp.status_code,
                elapsed_ms=round((time.time() - started) * 1000, 2),
            )
            return True

        logger.error(
            "Telnyx action failed",
            action=action,
            call_control_id=call_control_id,
            status=resp.status_code,
            body=resp.text[:500],
        )
        return False

    async def answer(self, call_control_id: str) -> bool:
        return await self.send_action(call_control_id, "answer")

    async def speak(self, call_control_id: str, text: str) -> bool:
        return await self.send_action(
            call_control_id,
            "speak",
            {
                "payload": text,
                "voice": self.config.telnyx_voice,
                "language": self.config.telnyx_language,
            },
        )

    async def streaming_start(self, call_control_id: str, stream_url: str) -> bool:
        return await self.send_action(
            call_control_id,
            "streaming_start",
            {"stream_url": stream_url, "stream_track": "inbound_track"},
        )
