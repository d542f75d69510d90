"""
Scripted intake call harness.

Drives one call through the engine end to end (answer webhook, media stream,
final transcripts, hangup) with recording stand-ins for Telnyx, Deepgram and
the dashboard, then asserts on what was spoken and the submitted ticket.

Usage:
  python scripts/intake_flow_harness.py
"""

from __future__ import annotations

import asyncio
import os
import sys
from dataclasses import replace
from typing import Any, Dict, List, Optional

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from src.intake.config import get_config
from src.intake.dashboard import DashboardContext, GreetingResult, MaintenanceTicket
from src.intake.engine import build_engine
from src.intake.flow import INTAKE_FLOW, StepId
from src.intake.stt import TranscriptionResult
from src.intake.telnyx_protocol import CallEvent

CALL_ID = "v3:harness-call"


class RecordingCallControl:
    def __init__(self) -> None:
        self.spoken: List[str] = []
        self.actions: List[str] = []

    async def send_action(self, call_control_id: str, action: str, body: Optional[Dict[str, Any]] = None) -> bool:
        self.actions.append(action)
        if action == "speak" and body:
            self.spoken.append(body["payload"])
            print(f"  agent: {body['payload']}")
        return True

    async def answer(self, call_control_id: str) -> bool:
        return await self.send_action(call_control_id, "answer")

    async def speak(self, call_control_id: str, text: str) -> bool:
        return await self.send_action(call_control_id, "speak", {"payload": text})

    async def streaming_start(self, call_control_id: str, stream_url: str) -> bool:
        return await self.send_action(call_control_id, "streaming_start", {"stream_url": stream_url})


class RecordingDashboard:
    def __init__(self) -> None:
        self.tickets: List[MaintenanceTicket] = []

    async def fetch_context(self, to_number: Optional[str]) -> GreetingResult:
        greeting = "Thanks for calling Maple Court maintenance."
        return GreetingResult(
            greeting=greeting,
            source="dashboard",
            context=DashboardContext(greeting=greeting),
            http_status="200",
        )

    async def submit_ticket(self, ticket: MaintenanceTicket) -> bool:
        self.tickets.append(ticket)
        return True


class ScriptedSTT:
    """Stands in for Deepgram; the harness pushes transcripts directly."""

    instances: List["ScriptedSTT"] = []

    def __init__(self, on_transcript=None, config=None, call_control_id=None) -> None:
        self.on_transcript = on_transcript
        self.connected = False
        ScriptedSTT.instances.append(self)

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def connect(self) -> bool:
        self.connected = True
        return True

    async def send_audio(self, data: bytes) -> bool:
        return True

    async def disconnect(self) -> None:
        self.connected = False

    async def say(self, text: str) -> None:
        print(f"  caller: {text}")
        await self.on_transcript(TranscriptionResult(text=text, is_final=True, confidence=0.95))


class IdleTelephony:
    """Media socket that stays open until closed."""

    def __init__(self) -> None:
        self.url = f"wss://harness.local/media?call_control_id={CALL_ID}"
        self._closed = asyncio.Event()

    async def receive(self) -> Dict[str, Any]:
        await self._closed.wait()
        return {"type": "websocket.disconnect", "code": 1000}

    async def close(self, code: int = 1000) -> None:
        self._closed.set()


def webhook(event_type: str) -> CallEvent:
    return CallEvent.from_webhook({
        "data": {
            "event_type": event_type,
            "payload": {"call_control_id": CALL_ID, "to": "+15550001111", "from": "+15552223333"},
        }
    })


async def settle(seconds: float = 0.05) -> None:
    await asyncio.sleep(seconds)


async def run() -> None:
    config = replace(
        get_config(),
        deepgram_api_key=get_config().deepgram_api_key or "harness",
        public_host=get_config().public_host or "harness.local",
        issue_silence_finalize_ms=200,
        issue_max_listen_ms=2000,
    )
    call_control = RecordingCallControl()
    dashboard = RecordingDashboard()
    engine = build_engine(config, call_control=call_control, dashboard=dashboard, stt_factory=ScriptedSTT)

    print("call.initiated / call.answered")
    await engine.handle_event(webhook("call.initiated"))
    await engine.handle_event(webhook("call.answered"), host="harness.local")
    await engine.tasks.drain(timeout=2.0)
    assert "streaming_start" in call_control.actions

    media = asyncio.create_task(engine.relay.serve(IdleTelephony()))
    await settle()
    stt = ScriptedSTT.instances[-1]

    await stt.say("Unit 204")
    await settle()
    await stt.say("There's water")
    await settle(0.1)
    await stt.say("leaking under the kitchen sink")
    await settle(0.1)
    await stt.say("leaking under the kitchen sink")  # duplicate final, dropped
    await settle(0.4)  # silence finalize

    state = engine.store.get_flow(CALL_ID)
    assert state.step == StepId.PERMISSION_TO_ENTER, state.step
    assert state.fields["issue_description"] == "There's water leaking under the kitchen sink"

    await stt.say("hmm")
    await settle()
    await stt.say("yes that's fine")
    await settle()
    await stt.say("no pets")
    await settle()
    await engine.tasks.drain(timeout=2.0)

    prompts = {step.step_id: step.prompt for step in INTAKE_FLOW.steps}
    assert call_control.spoken.count(prompts[StepId.PERMISSION_TO_ENTER]) == 2
    assert call_control.spoken[-1] == prompts[StepId.END_CALL]
    assert len(dashboard.tickets) == 1
    ticket = dashboard.tickets[0]
    assert ticket.unit_number == "Unit 204"
    assert ticket.is_emergency is True
    assert ticket.permission_to_enter is True
    assert ticket.pets_present is False

    print("call.hangup")
    await engine.handle_event(webhook("call.hangup"))
    await asyncio.wait_for(media, timeout=2.0)
    assert not engine.store.tracks(CALL_ID)

    print("\nticket:")
    print(ticket.model_dump_json(indent=2))


def main() -> None:
    asyncio.run(run())
    print("\nOK: intake_flow_harness")


if __name__ == "__main__":
    main()
