"""
Apartment maintenance intake flow.

The step table below is the single source of truth: prompts, input types,
field names, retry limits and the emergency keyword list all come from it,
and transitions are driven by walking it in order.

Persisted steps (where the flow waits for the caller):
    unit_number -> issue_description -> permission_to_enter -> pets_present -> complete

Steps between two input steps are executed while walking:
- compute steps (emergency detection) write a derived field
- say steps are spoken, optionally only when the call is an emergency
- the implicit greeting is skipped; the call-answer greeting already covers it

Reaching the end of the table completes the flow: the ticket is built and
handed to the ingestion client exactly once, in the background.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog

from src.intake.config import Config, get_config
from src.intake.dashboard import DashboardClient, MaintenanceTicket
from src.intake.finalizer import IssueAccumulator
from src.intake.store import CallStore
from src.intake.tasks import BackgroundTasks
from src.intake.telnyx_client import CallControlClient
from src.intake.text import (
    EMERGENCY_KEYWORDS,
    emergency_hits,
    is_too_short_issue,
    parse_yes_no,
    word_count,
)

logger = structlog.get_logger(__name__)


class StepId(str, Enum):
    """Intake flow step identifiers."""
    GREETING = "greeting"
    UNIT_NUMBER = "unit_number"
    ISSUE_DESCRIPTION = "issue_description"
    EMERGENCY_DETECTION = "emergency_detection"
    EMERGENCY_ACK = "emergency_ack"
    PERMISSION_TO_ENTER = "permission_to_enter"
    PETS_PRESENT = "pets_present"
    CONFIRMATION = "confirmation"
    END_CALL = "end_call"
    COMPLETE = "complete"


class StepKind(str, Enum):
    IMPLICIT = "implicit"
    TEXT = "text"
    FREE_TEXT = "free_text"
    YES_NO = "yes_no"
    COMPUTE = "compute"
    SAY = "say"


INPUT_KINDS = (StepKind.TEXT, StepKind.FREE_TEXT, StepKind.YES_NO)


@dataclass(frozen=True)
class FlowStep:
    step_id: StepId
    kind: StepKind
    prompt: str = ""
    field_name: Optional[str] = None
    max_retries: int = 0
    only_if_emergency: bool = False
    source_field: Optional[str] = None
    emergency_keywords: tuple[str, ...] = ()

    @property
    def waits_for_input(self) -> bool:
        return self.kind in INPUT_KINDS


@dataclass(frozen=True)
class FlowConfig:
    flow: str
    steps: tuple[FlowStep, ...]

    def index_of(self, step_id: StepId) -> int:
        for i, step in enumerate(self.steps):
            if step.step_id == step_id:
                return i
        raise KeyError(step_id)

    def get(self, step_id: StepId) -> Optional[FlowStep]:
        for step in self.steps:
            if step.step_id == step_id:
                return step
        return None


INTAKE_FLOW = FlowConfig(
    flow="apartment_maintenance_intake_v1",
    steps=(
        FlowStep(
            StepId.GREETING,
            StepKind.IMPLICIT,
            prompt=(
                "Thanks for calling apartment maintenance. "
                "I'm here to help with your maintenance request."
            ),
        ),
        FlowStep(
            StepId.UNIT_NUMBER,
            StepKind.TEXT,
            prompt="To get this started, what is your unit number?",
            field_name="unit_number",
        ),
        FlowStep(
            StepId.ISSUE_DESCRIPTION,
            StepKind.FREE_TEXT,
            prompt="Please briefly describe the maintenance issue you're experiencing.",
            field_name="issue_description",
        ),
        FlowStep(
            StepId.EMERGENCY_DETECTION,
            StepKind.COMPUTE,
            field_name="is_emergency",
            source_field="issue_description",
            emergency_keywords=EMERGENCY_KEYWORDS,
        ),
        FlowStep(
            StepId.EMERGENCY_ACK,
            StepKind.SAY,
            prompt=(
                "I understand this sounds urgent. If you're in danger, please call 911 now. "
                "I'll log this as an emergency for maintenance."
            ),
            only_if_emergency=True,
        ),
        FlowStep(
            StepId.PERMISSION_TO_ENTER,
            StepKind.YES_NO,
            prompt="Do we have permission to enter your unit if you're not home? Please say yes or no.",
            field_name="permission_to_enter",
            max_retries=1,
        ),
        FlowStep(
            StepId.PETS_PRESENT,
            StepKind.YES_NO,
            prompt="Are there any pets in the unit? Please say yes or no.",
            field_name="pets_present",
            max_retries=1,
        ),
        FlowStep(
            StepId.CONFIRMATION,
            StepKind.SAY,
            prompt="Got it. I'll submit this maintenance ticket now.",
        ),
        FlowStep(
            StepId.END_CALL,
            StepKind.SAY,
            prompt="Thank you for calling. Goodbye.",
        ),
    ),
)


@dataclass
class FlowState:
    """Per-call questionnaire state."""
    call_control_id: str
    issue: IssueAccumulator
    step: StepId = StepId.GREETING
    fields: Dict[str, Any] = field(default_factory=dict)
    retries: Dict[str, int] = field(default_factory=dict)
    ingested: bool = False
    started_at: float = field(default_factory=time.time)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def is_complete(self) -> bool:
        return self.step == StepId.COMPLETE


def _fmt(value: Any) -> str:
    if value is None:
        return "unknown"
    if isinstance(value, bool):
        return "yes" if value else "no"
    return str(value)


class IntakeFlow:
    """
    Drives the intake questionnaire for every call in the store.

    Transcript handling and timer-driven finalization both take the per-call
    lock, so a call's steps advance strictly one at a time.
    """

    def __init__(
        self,
        store: CallStore,
        call_control: CallControlClient,
        dashboard: DashboardClient,
        tasks: BackgroundTasks,
        config: Optional[Config] = None,
        flow_config: FlowConfig = INTAKE_FLOW,
    ):
        self.store = store
        self.call_control = call_control
        self.dashboard = dashboard
        self.tasks = tasks
        self.config = config or get_config()
        self.flow_config = flow_config

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(
        self,
        call_control_id: str,
        to_number: Optional[str] = None,
        from_number: Optional[str] = None,
    ) -> FlowState:
        existing = self.store.get_flow(call_control_id)
        if existing is not None:
            logger.warning(
                "Flow already started; ignoring duplicate start",
                call_control_id=call_control_id,
                step=existing.step.value,
            )
            return existing

        state = FlowState(
            call_control_id=call_control_id,
            issue=self._new_accumulator(call_control_id),
            fields={"to_number": to_number or "", "from_number": from_number or ""},
        )
        self.store.flows[call_control_id] = state
        logger.info("Flow started", call_control_id=call_control_id, flow=self.flow_config.flow)

        async with state.lock:
            await self._enter_next(state, after=StepId.GREETING)
        return state

    def discard(self, call_control_id: str) -> Optional[FlowState]:
        """Remove the flow state and cancel its timers."""
        state = self.store.flows.pop(call_control_id, None)
        if state is not None:
            state.issue.cancel_timers()
            state.issue.listening_active = False
        return state

    def _new_accumulator(self, call_control_id: str) -> IssueAccumulator:
        async def on_finalize(reason: str) -> None:
            await self.finalize_issue(call_control_id, reason=reason)

        return IssueAccumulator(
            on_finalize=on_finalize,
            silence_ms=self.config.issue_silence_finalize_ms,
            max_listen_ms=self.config.issue_max_listen_ms,
            dedup_window_ms=self.config.issue_append_dedup_window_ms,
            anchored_ceiling=self.config.issue_max_listen_anchored,
        )

    # ------------------------------------------------------------------
    # Transcript handling
    # ------------------------------------------------------------------

    async def handle_transcript(self, call_control_id: str, transcript: str) -> bool:
        """
        Feed one final transcript into the flow.

        Returns False when there is no flow for the call or it is complete.
        """
        state = self.store.get_flow(call_control_id)
        if state is None:
            return False

        async with state.lock:
            if self.store.get_flow(call_control_id) is not state or state.is_complete:
                return False

            step = self.flow_config.get(state.step)
            if step is None or not step.waits_for_input:
                return False

            if step.kind == StepKind.TEXT:
                await self._handle_text(state, step, transcript)
            elif step.kind == StepKind.FREE_TEXT:
                self._handle_free_text(state, transcript)
            elif step.kind == StepKind.YES_NO:
                await self._handle_yes_no(state, step, transcript)
            return True

    async def _handle_text(self, state: FlowState, step: FlowStep, transcript: str) -> None:
        value = (transcript or "").strip()
        if not value:
            return
        state.fields[step.field_name] = value
        logger.info(
            "Field captured",
            call_control_id=state.call_control_id,
            field=step.field_name,
            value=value,
        )
        await self._enter_next(state, after=step.step_id)

    def _handle_free_text(self, state: FlowState, transcript: str) -> None:
        accepted = state.issue.add_chunk(transcript)
        logger.debug(
            "Issue chunk",
            call_control_id=state.call_control_id,
            accepted=accepted,
            buffer_chars=len(state.issue.buffer),
        )

    async def _handle_yes_no(self, state: FlowState, step: FlowStep, transcript: str) -> None:
        parsed = parse_yes_no(transcript)
        if parsed is None:
            tries = state.retries.get(step.step_id.value, 0)
            if tries < step.max_retries:
                state.retries[step.step_id.value] = tries + 1
                logger.info(
                    "Yes/no answer not understood; re-prompting",
                    call_control_id=state.call_control_id,
                    step=step.step_id.value,
                    retry=tries + 1,
                )
                await self._say(state, step.prompt)
                return

        state.fields[step.field_name] = parsed
        logger.info(
            "Field captured",
            call_control_id=state.call_control_id,
            field=step.field_name,
            value=parsed,
        )
        await self._enter_next(state, after=step.step_id)

    async def finalize_issue(self, call_control_id: str, reason: str = "manual") -> bool:
        """
        Close the free-text listening window and advance.

        Safe to call from both timers and more than once: only the first call
        for a listening window does anything.
        """
        state = self.store.get_flow(call_control_id)
        if state is None:
            return False

        async with state.lock:
            if self.store.get_flow(call_control_id) is not state:
                return False
            step = self.flow_config.get(state.step)
            if step is None or step.kind != StepKind.FREE_TEXT:
                return False

            issue = state.issue.claim()
            if issue is None:
                return False

            state.fields[step.field_name] = issue
            logger.info(
                "Issue finalized",
                call_control_id=call_control_id,
                reason=reason,
                chars=len(issue),
                words=word_count(issue),
                too_short=is_too_short_issue(issue),
                issue=issue,
            )
            await self._enter_next(state, after=step.step_id)
            return True

    # ------------------------------------------------------------------
    # Table walking
    # ------------------------------------------------------------------

    async def _enter_next(self, state: FlowState, *, after: StepId) -> None:
        """Run compute/say steps after `after` until the next input step or the end."""
        start = self.flow_config.index_of(after) + 1
        for step in self.flow_config.steps[start:]:
            if step.kind == StepKind.IMPLICIT:
                continue

            if step.kind == StepKind.COMPUTE:
                self._compute(state, step)
                continue

            if step.kind == StepKind.SAY:
                if step.only_if_emergency and not state.fields.get("is_emergency"):
                    continue
                logger.info(
                    "Speaking flow line",
                    call_control_id=state.call_control_id,
                    step=step.step_id.value,
                )
                await self._say(state, step.prompt)
                continue

            state.step = step.step_id
            if step.kind == StepKind.FREE_TEXT:
                state.issue.begin()
                logger.info(
                    "Issue listening started",
                    call_control_id=state.call_control_id,
                    silence_finalize_ms=state.issue.silence_ms,
                    max_listen_ms=state.issue.max_listen_ms,
                    anchored_ceiling=state.issue.anchored_ceiling,
                )
            logger.info("Prompting", call_control_id=state.call_control_id, step=step.step_id.value)
            await self._say(state, step.prompt)
            return

        self._complete(state)

    def _compute(self, state: FlowState, step: FlowStep) -> None:
        source = state.fields.get(step.source_field or "", "")
        hits: List[str] = emergency_hits(source, step.emergency_keywords or EMERGENCY_KEYWORDS)
        state.fields[step.field_name] = bool(hits)
        logger.info(
            "Emergency detection",
            call_control_id=state.call_control_id,
            emergency=bool(hits),
            keywords_hit=hits,
        )

    def _complete(self, state: FlowState) -> None:
        state.step = StepId.COMPLETE
        call_control_id = state.call_control_id
        logger.info(
            "Flow completed",
            call_control_id=call_control_id,
            fields={
                k: state.fields.get(k)
                for k in (
                    "unit_number",
                    "issue_description",
                    "is_emergency",
                    "permission_to_enter",
                    "pets_present",
                )
            },
        )

        if not state.ingested:
            state.ingested = True
            ticket = self.build_ticket(state)
            self.tasks.spawn(
                self.dashboard.submit_ticket(ticket),
                label="ticket_ingest",
                call_control_id=call_control_id,
            )

        session = self.store.get_session(call_control_id)
        if session is not None:
            session.flow_complete = True

    async def _say(self, state: FlowState, text: str) -> None:
        await self.call_control.speak(state.call_control_id, text)

    # ------------------------------------------------------------------
    # Ticket
    # ------------------------------------------------------------------

    @staticmethod
    def summarize(fields: Dict[str, Any]) -> str:
        lines = [
            f"Unit: {fields.get('unit_number') or ''}",
            f"Issue: {fields.get('issue_description') or ''}",
            f"Emergency: {_fmt(bool(fields.get('is_emergency')))}",
            f"Permission to enter: {_fmt(fields.get('permission_to_enter'))}",
            f"Pets present: {_fmt(fields.get('pets_present'))}",
            f"Caller: {fields.get('from_number') or ''}",
        ]
        return "\n".join(lines)

    def build_ticket(self, state: FlowState) -> MaintenanceTicket:
        fields = state.fields
        return MaintenanceTicket(
            call_control_id=state.call_control_id,
            to_number=fields.get("to_number") or "",
            from_number=fields.get("from_number") or "",
            unit_number=fields.get("unit_number") or "",
            issue_description=fields.get("issue_description") or "",
            is_emergency=bool(fields.get("is_emergency")),
            permission_to_enter=fields.get("permission_to_enter"),
            pets_present=fields.get("pets_present"),
            transcript=self.summarize(fields),
        )
