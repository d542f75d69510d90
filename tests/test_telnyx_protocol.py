"""
Tests for Telnyx media frames and webhook parsing.
"""

import base64
import json

import pytest

from src.intake.telnyx_protocol import (
    CallEvent,
    MediaEventType,
    call_control_id_from_url,
    parse_media_frame,
    resolve_from_number,
    resolve_to_number,
)


class TestMediaFrames:
    """Tests for parse_media_frame()."""

    def test_media_payload_is_decoded(self, media_message, sample_ulaw_audio):
        frame = parse_media_frame(media_message)
        assert frame.is_media
        assert frame.event_type == MediaEventType.MEDIA
        assert frame.payload == sample_ulaw_audio
        assert frame.has_media_payload
        assert not frame.has_payload

    def test_top_level_payload_is_accepted(self):
        raw = json.dumps({"event": "media", "payload": base64.b64encode(b"\x7f\x7f").decode()})
        frame = parse_media_frame(raw)
        assert frame.payload == b"\x7f\x7f"
        assert frame.has_payload

    def test_bytes_input(self, media_message):
        assert parse_media_frame(media_message.encode()).is_media

    def test_non_media_events_carry_no_audio(self):
        for event in ("connected", "start", "stop", "dtmf", "mark"):
            frame = parse_media_frame(json.dumps({"event": event}))
            assert not frame.is_media
            assert frame.payload is None
        assert parse_media_frame(json.dumps({"event": "stop"})).event_type == MediaEventType.STOP

    def test_unknown_event(self):
        frame = parse_media_frame(json.dumps({"event": "mystery"}))
        assert frame.event_type == MediaEventType.UNKNOWN
        assert parse_media_frame("{}").event == ""

    def test_media_without_payload(self):
        frame = parse_media_frame(json.dumps({"event": "media", "media": {}}))
        assert not frame.is_media

    @pytest.mark.parametrize("raw", ["not json", "[1, 2]", '"media"'])
    def test_invalid_messages_raise_value_error(self, raw):
        with pytest.raises(ValueError):
            parse_media_frame(raw)

    def test_invalid_base64_raises_value_error(self):
        with pytest.raises(ValueError):
            parse_media_frame(json.dumps({"event": "media", "media": {"payload": "@@not-base64@@"}}))


class TestCallControlIdFromUrl:
    """Tests for call_control_id_from_url()."""

    def test_full_url(self):
        assert call_control_id_from_url("wss://host/media?call_control_id=v3%3Aabc") == "v3:abc"

    def test_query_string(self):
        assert call_control_id_from_url("call_control_id=abc&x=1") == "abc"

    def test_missing(self):
        assert call_control_id_from_url("wss://host/media") is None
        assert call_control_id_from_url("wss://host/media?call_control_id=") is None
        assert call_control_id_from_url("") is None


class TestNumbers:
    """Tests for phone number resolution."""

    def test_to_number_variants(self):
        assert resolve_to_number({"to": "+1555"}) == "+1555"
        assert resolve_to_number({"to_number": "+1666", "to": "+1555"}) == "+1666"
        assert resolve_to_number({"to_phone_number": "+1777"}) == "+1777"
        assert resolve_to_number({"to": {"phone_number": "+1888"}}) == "+1888"
        assert resolve_to_number({"to": {"number": "+1999"}}) == "+1999"
        assert resolve_to_number({}) is None
        assert resolve_to_number(None) is None

    def test_from_number_variants(self):
        assert resolve_from_number({"from": "+1222"}) == "+1222"
        assert resolve_from_number({"from_number": "+1333"}) == "+1333"
        assert resolve_from_number({"from": {"phone_number": "+1444"}}) == "+1444"
        assert resolve_from_number({"from": "  "}) is None


class TestCallEvent:
    """Tests for CallEvent.from_webhook()."""

    def test_answered_event(self):
        event = CallEvent.from_webhook({
            "data": {
                "event_type": "call.answered",
                "payload": {"call_control_id": "v3:abc", "to": "+15550001111", "from": "+15552223333"},
            }
        })
        assert event.event_type == "call.answered"
        assert event.call_control_id == "v3:abc"
        assert event.to_number == "+15550001111"
        assert event.from_number == "+15552223333"
        assert event.log_fields()["call_control_id"] == "v3:abc"

    @pytest.mark.parametrize("body", [None, {}, {"data": "x"}, {"data": {"payload": []}}, ["data"]])
    def test_malformed_bodies(self, body):
        event = CallEvent.from_webhook(body)
        assert event.event_type == "unknown"
        assert event.call_control_id is None
