"""
Telnyx wire formats.

Media streaming WebSocket (inbound frames only; we never write back):
- connected: initial connection
- start: stream started, contains call_control_id and media format
- media: audio as base64 mu-law 8kHz (`media.payload`, or top-level `payload`)
- dtmf / mark / error: informational
- stop: stream stopped

Call Control webhooks:
    {"data": {"event_type": "call.answered", "payload": {"call_control_id": ..., "to": ..., "from": ...}}}
"""

import base64
import binascii
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, urlsplit

import msgspec

decoder = msgspec.json.Decoder()


class MediaEventType(str, Enum):
    """Telnyx media stream event types."""
    CONNECTED = "connected"
    START = "start"
    MEDIA = "media"
    DTMF = "dtmf"
    MARK = "mark"
    ERROR = "error"
    STOP = "stop"
    UNKNOWN = "unknown"


class CallEventType(str, Enum):
    """Call Control webhook events the engine acts on."""
    INITIATED = "call.initiated"
    ANSWERED = "call.answered"
    HANGUP = "call.hangup"


@dataclass
class MediaFrame:
    """Parsed media stream frame."""
    event: str
    payload: Optional[bytes] = None
    has_payload: bool = False
    has_media_payload: bool = False

    @property
    def is_media(self) -> bool:
        return self.event == MediaEventType.MEDIA.value and bool(self.payload)

    @property
    def event_type(self) -> MediaEventType:
        try:
            return MediaEventType(self.event)
        except ValueError:
            return MediaEventType.UNKNOWN


def parse_media_frame(raw_message: Any) -> MediaFrame:
    """
    Parse a raw media stream message.

    Raises:
        ValueError: If the message is not a JSON object or the payload is not valid base64
    """
    if isinstance(raw_message, str):
        raw_message = raw_message.encode("utf-8")
    try:
        message = decoder.decode(raw_message)
    except msgspec.DecodeError as e:
        raise ValueError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise ValueError("Media frame is not an object")

    event = message.get("event")
    event = event if isinstance(event, str) else ""

    top_payload = message.get("payload")
    media = message.get("media")
    media_payload = media.get("payload") if isinstance(media, dict) else None

    frame = MediaFrame(
        event=event,
        has_payload=bool(top_payload),
        has_media_payload=bool(media_payload),
    )

    encoded = top_payload or media_payload
    if event != MediaEventType.MEDIA.value or not isinstance(encoded, str) or not encoded:
        return frame

    try:
        frame.payload = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid media payload: {e}")
    return frame


def call_control_id_from_url(url: str) -> Optional[str]:
    """Extract `call_control_id` from a connection URL or query string."""
    query = urlsplit(url).query if "?" in url or "://" in url else url
    values = parse_qs(query).get("call_control_id")
    if not values:
        return None
    value = values[0].strip()
    return value or None


def _phone(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


def resolve_to_number(payload: Optional[Dict[str, Any]]) -> Optional[str]:
    """Dialed number: to_number, to_phone_number, to.{phone_number,number}, or to."""
    if not payload:
        return None
    for key in ("to_number", "to_phone_number"):
        found = _phone(payload.get(key))
        if found:
            return found
    to = payload.get("to")
    if isinstance(to, dict):
        return _phone(to.get("phone_number")) or _phone(to.get("number"))
    return _phone(to)


def resolve_from_number(payload: Optional[Dict[str, Any]]) -> Optional[str]:
    """Caller number: from, from_number, or from.{phone_number,number}."""
    if not payload:
        return None
    found = _phone(payload.get("from")) or _phone(payload.get("from_number"))
    if found:
        return found
    origin = payload.get("from")
    if isinstance(origin, dict):
        return _phone(origin.get("phone_number")) or _phone(origin.get("number"))
    return None


@dataclass
class CallEvent:
    """A parsed Call Control webhook event."""
    event_type: str
    call_control_id: Optional[str]
    to_number: Optional[str] = None
    from_number: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_webhook(cls, body: Any) -> "CallEvent":
        data = body.get("data") if isinstance(body, dict) else None
        data = data if isinstance(data, dict) else {}
        event_type = data.get("event_type")
        payload = data.get("payload")
        payload = payload if isinstance(payload, dict) else {}
        call_control_id = payload.get("call_control_id")

        return cls(
            event_type=event_type if isinstance(event_type, str) and event_type else "unknown",
            call_control_id=call_control_id if isinstance(call_control_id, str) and call_control_id else None,
            to_number=resolve_to_number(payload),
            from_number=resolve_from_number(payload),
            payload=payload,
        )

    def log_fields(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "call_control_id": self.call_control_id,
            "from_number": self.from_number,
            "to_number": self.to_number,
        }
