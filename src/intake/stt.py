"""
Deepgram Speech-to-Text streaming client.

Telnyx streams mu-law 8kHz, and Deepgram accepts it directly
(`encoding=mulaw&sample_rate=8000`), so audio is forwarded byte for byte:
no resampling, no reframing.

Results arrive as JSON records:
    {"is_final": bool, "channel": {"alternatives": [{"transcript": str, "confidence": float}]}}
Malformed messages are dropped one at a time; the session keeps running.
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import structlog
import websockets

from src.intake.config import Config, get_config

logger = structlog.get_logger(__name__)


@dataclass
class TranscriptionResult:
    """Result from STT."""
    text: str
    is_final: bool
    confidence: Optional[float] = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class STTMetrics:
    """Per-connection counters."""
    audio_bytes: int = 0
    messages: int = 0
    final_transcripts: int = 0
    dropped_messages: int = 0


def parse_result(data: Any) -> Optional[TranscriptionResult]:
    """
    Extract the first alternative from a Deepgram result record.

    Returns None for records without a channel/alternatives (metadata,
    speech-started events, ...) and for anything that is not a dict.
    """
    if not isinstance(data, dict):
        return None
    channel = data.get("channel")
    if not isinstance(channel, dict):
        return None
    alternatives = channel.get("alternatives")
    if not isinstance(alternatives, list) or not alternatives:
        return None
    alt = alternatives[0]
    if not isinstance(alt, dict):
        return None

    transcript = alt.get("transcript")
    confidence = alt.get("confidence")
    return TranscriptionResult(
        text=transcript if isinstance(transcript, str) else "",
        is_final=bool(data.get("is_final", False)),
        confidence=float(confidence) if isinstance(confidence, (int, float)) else None,
    )


class DeepgramSTT:
    """
    Deepgram streaming STT client using raw WebSocket.
    """

    def __init__(
        self,
        on_transcript: Optional[Callable[[TranscriptionResult], Awaitable[None]]] = None,
        config: Optional[Config] = None,
        call_control_id: Optional[str] = None,
    ):
        if config is None:
            config = get_config()

        self.config = config
        self.call_control_id = call_control_id
        self._on_transcript = on_transcript
        self._ws = None
        self._is_connected = False
        self._metrics = STTMetrics()
        self._receive_task: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    @property
    def metrics(self) -> STTMetrics:
        return self._metrics

    async def connect(self) -> bool:
        """Connect to Deepgram streaming API."""
        if self._is_connected:
            return True

        headers = {"Authorization": f"Token {self.config.deepgram_api_key}"}
        try:
            self._ws = await websockets.connect(
                self.config.deepgram_ws_url,
                additional_headers=headers,
                open_timeout=10,
            )
        except Exception as e:
            logger.error(
                "Deepgram connection failed",
                call_control_id=self.call_control_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            self._ws = None
            return False

        self._is_connected = True
        logger.info("Deepgram STT connected", call_control_id=self.call_control_id)
        self._receive_task = asyncio.create_task(self._receive_loop())
        return True

    async def disconnect(self) -> None:
        """Disconnect from Deepgram."""
        self._is_connected = False

        task = self._receive_task
        self._receive_task = None
        if task and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if self._ws:
            try:
                await self._ws.close()
            except Exception as e:
                logger.warning("Error closing Deepgram connection", error=str(e))

        self._ws = None
        logger.info(
            "Deepgram STT disconnected",
            call_control_id=self.call_control_id,
            audio_bytes=self._metrics.audio_bytes,
            final_transcripts=self._metrics.final_transcripts,
            dropped_messages=self._metrics.dropped_messages,
        )

    async def send_audio(self, audio_bytes: bytes) -> bool:
        """Send raw audio to Deepgram. Returns False if the frame was dropped."""
        if not self._is_connected or not self._ws:
            return False

        try:
            await self._ws.send(audio_bytes)
        except Exception as e:
            logger.error("Failed to send audio to Deepgram", error=str(e))
            return False
        self._metrics.audio_bytes += len(audio_bytes)
        return True

    async def _receive_loop(self) -> None:
        """Receive and process messages from Deepgram."""
        try:
            async for message in self._ws:
                if not self._is_connected:
                    break
                await self.handle_raw_message(message)

        except websockets.exceptions.ConnectionClosed:
            logger.info("Deepgram connection closed", call_control_id=self.call_control_id)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("Deepgram receive loop error", error=str(e))
        finally:
            self._is_connected = False

    async def handle_raw_message(self, message: Any) -> None:
        """Decode one Deepgram message and hand any result to the callback."""
        self._metrics.messages += 1
        try:
            data = json.loads(message)
        except (TypeError, ValueError):
            self._metrics.dropped_messages += 1
            logger.warning("Invalid JSON from Deepgram", call_control_id=self.call_control_id)
            return

        if isinstance(data, dict) and str(data.get("type", "")).lower() == "error":
            logger.error(
                "Deepgram error",
                call_control_id=self.call_control_id,
                error=data.get("message", "Unknown"),
            )
            return

        result = parse_result(data)
        if result is None:
            return
        if result.is_final:
            self._metrics.final_transcripts += 1

        if self._on_transcript:
            try:
                await self._on_transcript(result)
            except Exception as e:
                logger.error(
                    "Error processing Deepgram message",
                    call_control_id=self.call_control_id,
                    error=str(e),
                )
