"""
Call lifecycle orchestration.

Webhook events drive everything outside the media socket:

    call.initiated -> answer
    call.answered  -> fetch dashboard context, speak greeting, arm the reply
                      timer, start media streaming, start the intake flow
    call.hangup    -> cancel the reply timer and tear the call down

`build_engine()` wires one object graph around a single `CallStore`; the
server keeps one engine, tests build their own with fakes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

import structlog

from src.intake.config import Config, get_config
from src.intake.dashboard import DashboardClient
from src.intake.faq import FaqResponder
from src.intake.flow import IntakeFlow
from src.intake.relay import MediaRelay, STTFactory
from src.intake.store import CallStore
from src.intake.tasks import BackgroundTasks
from src.intake.telnyx_client import CallControlClient
from src.intake.telnyx_protocol import CallEvent, CallEventType
from src.intake.timers import ReplyTimers

logger = structlog.get_logger(__name__)


def build_stream_url(config: Config, call_control_id: str, host: Optional[str] = None) -> str:
    """
    Media WebSocket URL for `streaming_start`.

    MEDIA_WS_URL wins, then the host the webhook arrived on, then PUBLIC_HOST.
    Returns "" when none is available.
    """
    if config.media_ws_url:
        base = config.media_ws_url
    elif host:
        base = f"wss://{host}/media"
    elif config.public_host:
        base = f"wss://{config.public_host}/media"
    else:
        return ""
    sep = "&" if "?" in base else "?"
    return f"{base}{sep}call_control_id={quote(call_control_id, safe='')}"


@dataclass
class CallEngine:
    config: Config
    store: CallStore
    call_control: CallControlClient
    dashboard: DashboardClient
    tasks: BackgroundTasks
    reply_timers: ReplyTimers
    flow: IntakeFlow
    faq: FaqResponder
    relay: MediaRelay

    async def handle_event(self, event: CallEvent, host: Optional[str] = None) -> None:
        logger.info("Call event", **event.log_fields())

        call_control_id = event.call_control_id
        if not call_control_id:
            logger.warning("Call event without call_control_id; ignoring", event_type=event.event_type)
            return

        if event.event_type == CallEventType.INITIATED.value:
            await self.call_control.answer(call_control_id)
        elif event.event_type == CallEventType.ANSWERED.value:
            await self.on_answered(event, host)
        elif event.event_type == CallEventType.HANGUP.value:
            self.reply_timers.cancel(call_control_id, reason="hangup")
            await self.relay.teardown(call_control_id, reason="hangup")

    async def on_answered(self, event: CallEvent, host: Optional[str] = None) -> None:
        call_control_id = event.call_control_id
        self.store.answered.add(call_control_id)

        result = await self.dashboard.fetch_context(event.to_number)
        if call_control_id not in self.store.answered:
            logger.info("Call ended while fetching context", call_control_id=call_control_id)
            return

        if result.context is not None:
            self.store.contexts[call_control_id] = result.context
            session = self.store.get_session(call_control_id)
            if session is not None:
                session.context = result.context

        await self.call_control.speak(call_control_id, result.greeting)
        if call_control_id not in self.store.answered:
            logger.info("Call ended during greeting", call_control_id=call_control_id)
            return
        self.reply_timers.schedule(call_control_id)

        self.tasks.spawn(
            self.start_streaming(call_control_id, host),
            label="streaming_start",
            call_control_id=call_control_id,
        )

        if self.config.intake_flow_enabled:
            self.reply_timers.cancel(call_control_id, reason="flow_start")
            self.tasks.spawn(
                self.start_flow(event),
                label="flow_start",
                call_control_id=call_control_id,
            )

    async def start_flow(self, event: CallEvent) -> None:
        call_control_id = event.call_control_id
        if call_control_id not in self.store.answered:
            logger.info("Call ended before flow start", call_control_id=call_control_id)
            return
        await self.flow.start(call_control_id, event.to_number, event.from_number)

    async def start_streaming(self, call_control_id: str, host: Optional[str] = None) -> bool:
        if not self.config.deepgram_api_key:
            logger.warning("DEEPGRAM_API_KEY missing; not starting media stream", call_control_id=call_control_id)
            return False

        stream_url = build_stream_url(self.config, call_control_id, host)
        if not stream_url:
            logger.warning("No media host available; not starting media stream", call_control_id=call_control_id)
            return False

        logger.info("Starting media stream", call_control_id=call_control_id, stream_url=stream_url)
        return await self.call_control.streaming_start(call_control_id, stream_url)

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Tear down live calls and wait for background work."""
        for call_control_id in self.store.call_ids():
            await self.relay.teardown(call_control_id, reason="shutdown")
        await self.tasks.drain(timeout=timeout)
        await self.tasks.cancel_all()


def build_engine(
    config: Optional[Config] = None,
    *,
    store: Optional[CallStore] = None,
    call_control: Optional[CallControlClient] = None,
    dashboard: Optional[DashboardClient] = None,
    stt_factory: Optional[STTFactory] = None,
) -> CallEngine:
    """Wire the engine. Any collaborator can be swapped for a fake."""
    config = config or get_config()
    store = store or CallStore()
    call_control = call_control or CallControlClient(config)
    dashboard = dashboard or DashboardClient(config)
    tasks = BackgroundTasks()

    reply_timers = ReplyTimers(store, call_control, config)
    flow = IntakeFlow(store, call_control, dashboard, tasks, config)
    faq = FaqResponder(store, call_control)
    relay = MediaRelay(store, reply_timers, flow, faq, config, stt_factory=stt_factory)

    return CallEngine(
        config=config,
        store=store,
        call_control=call_control,
        dashboard=dashboard,
        tasks=tasks,
        reply_timers=reply_timers,
        flow=flow,
        faq=faq,
        relay=relay,
    )
