"""
Media relay: telephony audio in, transcripts out.

One WebSocket per call (`/media?call_control_id=...`). Inbound mu-law frames
are forwarded to Deepgram as-is; final transcripts are routed to the intake
flow when one exists for the call, otherwise to the FAQ responder.

Nothing is ever written back to the telephony socket. Speech goes out through
Call Control `speak`.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Optional

import structlog

from src.intake.config import Config, get_config
from src.intake.faq import FaqResponder
from src.intake.flow import IntakeFlow
from src.intake.session import CallSession, QueuedTranscript
from src.intake.store import CallStore
from src.intake.stt import DeepgramSTT, TranscriptionResult
from src.intake.telnyx_protocol import MediaEventType, call_control_id_from_url, parse_media_frame
from src.intake.timers import ReplyTimers

logger = structlog.get_logger(__name__)

# Policy violation: missing call id, missing credentials, duplicate stream.
CLOSE_POLICY = 1008
CLOSE_NORMAL = 1000

STTFactory = Callable[..., DeepgramSTT]


class MediaRelay:
    """Owns every `CallSession` in the store."""

    def __init__(
        self,
        store: CallStore,
        reply_timers: ReplyTimers,
        flow: IntakeFlow,
        faq: FaqResponder,
        config: Optional[Config] = None,
        stt_factory: Optional[STTFactory] = None,
    ):
        self.store = store
        self.reply_timers = reply_timers
        self.flow = flow
        self.faq = faq
        self.config = config or get_config()
        self._stt_factory = stt_factory or DeepgramSTT

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    async def serve(self, websocket: Any) -> None:
        """Run one accepted media connection until it closes."""
        call_control_id = call_control_id_from_url(str(websocket.url))
        if not call_control_id:
            logger.warning("Media connection without call_control_id; closing")
            await self._close(websocket, CLOSE_POLICY)
            return

        if not self.config.deepgram_api_key:
            logger.error("DEEPGRAM_API_KEY missing; closing media connection", call_control_id=call_control_id)
            await self._close(websocket, CLOSE_POLICY)
            return

        session = await self._attach(call_control_id, websocket)
        if session is None:
            return

        try:
            while not session.closed:
                try:
                    message = await websocket.receive()
                except RuntimeError:
                    # Socket already closed from our side (teardown on hangup).
                    break
                if message.get("type") == "websocket.disconnect":
                    logger.info("Media connection disconnected", call_control_id=call_control_id)
                    break
                # Binary frames go through the same parser and are dropped there if malformed.
                await self.handle_frame(session, message.get("text") or message.get("bytes") or "")
        finally:
            if not session.closed and session.telephony is websocket:
                await self.teardown(call_control_id, reason="media_closed")
            elif session.telephony is not websocket:
                logger.info("Superseded media connection closed", call_control_id=call_control_id)

    async def _attach(self, call_control_id: str, websocket: Any) -> Optional[CallSession]:
        """Create the session for a new stream, or hand an existing one the new socket."""
        existing = self.store.get_session(call_control_id)
        if existing is not None and not existing.closed:
            if not self.store.is_known(call_control_id):
                logger.warning(
                    "Duplicate media connection for unknown call; closing",
                    call_control_id=call_control_id,
                )
                await self._close(websocket, CLOSE_POLICY)
                return None
            logger.info("Media connection reused", call_control_id=call_control_id)
            existing.telephony = websocket
            return existing

        session = CallSession(
            call_control_id=call_control_id,
            telephony=websocket,
            context=self.store.contexts.get(call_control_id),
        )
        self.store.sessions[call_control_id] = session
        session.start_worker(self.route_transcript)
        logger.info(
            "Media connection opened",
            call_control_id=call_control_id,
            context_cached=session.context is not None,
        )

        async def on_transcript(result: TranscriptionResult) -> None:
            await self.on_transcript(session, result)

        stt = self._stt_factory(
            on_transcript=on_transcript,
            config=self.config,
            call_control_id=call_control_id,
        )
        session.stt = stt
        if not await stt.connect():
            await self.teardown(call_control_id, reason="stt_connect_failed")
            return None

        if session.closed:
            # Hung up while Deepgram was connecting.
            await stt.disconnect()
            return None
        return session

    async def handle_frame(self, session: CallSession, raw: Any) -> None:
        """Decode one telephony frame and forward its audio."""
        if not session.logged_first_message:
            session.logged_first_message = True
            logger.info(
                "First media message",
                call_control_id=session.call_control_id,
                length=len(raw) if raw else 0,
            )

        try:
            frame = parse_media_frame(raw)
        except ValueError as e:
            logger.warning(
                "Malformed media frame dropped",
                call_control_id=session.call_control_id,
                error=str(e),
            )
            return

        if frame.event_type == MediaEventType.STOP:
            logger.info("Media stream stop", call_control_id=session.call_control_id)
            return
        if not frame.is_media or not session.accepts_audio:
            return

        session.media_frames += 1
        await session.stt.send_audio(frame.payload)

    # ------------------------------------------------------------------
    # Transcripts
    # ------------------------------------------------------------------

    async def on_transcript(self, session: CallSession, result: TranscriptionResult) -> None:
        if session.closed or session.flow_complete:
            return
        text = (result.text or "").strip()
        if not result.is_final or not text:
            return

        session.final_count += 1
        self.reply_timers.cancel(session.call_control_id, reason="final_transcript")
        logger.info(
            "Final transcript",
            call_control_id=session.call_control_id,
            text=text,
            confidence=result.confidence,
            final_count=session.final_count,
        )
        session.enqueue(QueuedTranscript(text=text, confidence=result.confidence))

    async def route_transcript(self, call_control_id: str, text: str) -> None:
        session = self.store.get_session(call_control_id)
        if session is not None and session.flow_complete:
            return
        if self.store.get_flow(call_control_id) is not None:
            await self.flow.handle_transcript(call_control_id, text)
        else:
            await self.faq.respond(call_control_id, text)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def teardown(self, call_control_id: str, reason: str) -> None:
        """Drop every piece of state for the call. Safe to call repeatedly."""
        self.reply_timers.cancel(call_control_id, reason=reason)
        session = self.store.sessions.pop(call_control_id, None)
        self.store.contexts.pop(call_control_id, None)
        self.store.answered.discard(call_control_id)
        self.flow.discard(call_control_id)

        if session is None or session.closed:
            return
        session.closed = True

        stt = session.stt
        session.stt = None
        if stt is not None:
            try:
                await stt.disconnect()
            except Exception as e:
                logger.error("Error stopping STT", call_control_id=call_control_id, error=str(e))

        await session.stop_worker()
        await self._close(session.telephony, CLOSE_NORMAL)

        logger.info(
            "Session torn down",
            call_control_id=call_control_id,
            reason=reason,
            final_transcripts=session.final_count,
            media_frames=session.media_frames,
            duration_s=round(time.time() - session.started_at, 2),
        )

    @staticmethod
    async def _close(websocket: Any, code: int) -> None:
        try:
            await websocket.close(code=code)
        except Exception as e:
            logger.debug("Media socket close failed", error=str(e))
