"""
FlowSync dashboard client.

Two calls:
- GET  /api/voice/context?phoneNumber=...   -> greeting + FAQ entries for the dialed number
- POST /api/ingest/maintenance-event        -> one ticket per completed intake flow

Both degrade quietly: missing configuration, HTTP errors and bad payloads are
logged and turned into the fallback greeting / a `False` submit result.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, List, Optional

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from src.intake.config import Config, get_config

logger = structlog.get_logger(__name__)


def _as_text(value: Any) -> str:
    return value if isinstance(value, str) else ""


class FaqEntry(BaseModel):
    """A read-only FAQ entry from the dashboard."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    question: str = ""
    keywords: List[str] = Field(default_factory=list)
    answer: str = ""

    @field_validator("question", "answer", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        return _as_text(value)

    @field_validator("keywords", mode="before")
    @classmethod
    def _coerce_keywords(cls, value: Any) -> List[str]:
        if not isinstance(value, list):
            return []
        return [kw for kw in value if isinstance(kw, str)]


class DashboardContext(BaseModel):
    """Per-number context: optional greeting and the FAQ list."""

    model_config = ConfigDict(extra="ignore")

    greeting: Optional[str] = None
    faqs: List[FaqEntry] = Field(default_factory=list)

    @classmethod
    def from_payload(cls, data: Any) -> "DashboardContext":
        """
        Parse a context response.

        Accepts `{"context": {...}}` or the bare object, and `greeting_line` as an
        alias for `greeting`. Malformed FAQ entries are skipped individually.
        """
        if isinstance(data, dict) and isinstance(data.get("context"), dict):
            data = data["context"]
        if not isinstance(data, dict):
            return cls()

        greeting = data.get("greeting") or data.get("greeting_line")
        faqs: List[FaqEntry] = []
        raw_faqs = data.get("faqs")
        if isinstance(raw_faqs, list):
            for raw in raw_faqs:
                if not isinstance(raw, dict):
                    continue
                try:
                    faqs.append(FaqEntry.model_validate(raw))
                except ValidationError:
                    logger.warning("Skipping malformed FAQ entry")

        return cls(
            greeting=greeting if isinstance(greeting, str) and greeting.strip() else None,
            faqs=faqs,
        )


class MaintenanceTicket(BaseModel):
    """Ticket submitted once per completed intake flow."""

    call_control_id: str
    to_number: str = ""
    from_number: str = ""
    unit_number: str = ""
    issue_description: str = ""
    is_emergency: bool = False
    permission_to_enter: Optional[bool] = None
    pets_present: Optional[bool] = None
    transcript: str = ""
    created_at: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )


@dataclass
class GreetingResult:
    """Outcome of the call-answer context fetch."""
    greeting: str
    source: str  # "dashboard" | "fallback"
    context: Optional[DashboardContext] = None
    http_status: str = "skipped"


class DashboardClient:
    """Async client for the FlowSync dashboard API."""

    def __init__(
        self,
        config: Optional[Config] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or get_config()
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.flowsync_base_url,
            timeout=httpx.Timeout(self.config.http_timeout_seconds),
            headers={"x-api-key": self.config.flowsync_api_key},
            transport=self._transport,
        )

    async def fetch_context(self, to_number: Optional[str]) -> GreetingResult:
        """Fetch the context for the dialed number and pick the greeting."""
        fallback = self.config.fallback_greeting

        if not to_number or not self.config.flowsync_enabled:
            logger.info(
                "Dashboard context",
                to_number=to_number or "unknown",
                http_status="skipped",
                greeting_source="fallback",
            )
            return GreetingResult(greeting=fallback, source="fallback")

        try:
            async with self._client() as client:
                resp = await client.get(
                    "/api/voice/context", params={"phoneNumber": to_number}
                )
        except httpx.HTTPError as e:
            logger.info(
                "Dashboard context",
                to_number=to_number,
                http_status="error",
                greeting_source="fallback",
                error=str(e),
            )
            return GreetingResult(greeting=fallback, source="fallback", http_status="error")

        context: Optional[DashboardContext] = None
        if resp.is_success:
            try:
                context = DashboardContext.from_payload(resp.json())
            except ValueError:
                context = DashboardContext()

        greeting = context.greeting if context else None
        source = "dashboard" if greeting else "fallback"
        logger.info(
            "Dashboard context",
            to_number=to_number,
            http_status=resp.status_code,
            greeting_source=source,
            faqs=len(context.faqs) if context else 0,
        )
        return GreetingResult(
            greeting=greeting or fallback,
            source=source,
            context=context,
            http_status=str(resp.status_code),
        )

    async def submit_ticket(self, ticket: MaintenanceTicket) -> bool:
        """POST a maintenance ticket. Never raises."""
        call_control_id = ticket.call_control_id
        if not self.config.flowsync_enabled:
            logger.info(
                "Ticket ingest",
                call_control_id=call_control_id,
                http_status="skipped",
                bytes=0,
            )
            return False

        body = ticket.model_dump_json().encode("utf-8")
        try:
            async with self._client() as client:
                resp = await client.post(
                    "/api/ingest/maintenance-event",
                    content=body,
                    headers={"Content-Type": "application/json"},
                )
        except httpx.HTTPError as e:
            logger.error(
                "Ticket ingest",
                call_control_id=call_control_id,
                http_status="error",
                bytes=len(body),
                error=str(e),
            )
            return False

        logger.info(
            "Ticket ingest",
            call_control_id=call_control_id,
            http_status=resp.status_code,
            bytes=len(body),
        )
        if not resp.is_success:
            logger.error(
                "Ticket ingest rejected",
                call_control_id=call_control_id,
                status=resp.status_code,
                body=resp.text[:500],
            )
        return resp.is_success
