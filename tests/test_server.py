"""
Tests for the FastAPI server endpoints.
"""

import time
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from server import app as server_app
from src.intake.config import get_config
from src.intake.engine import build_engine
from src.intake.relay import CLOSE_POLICY
from src.intake.store import CallStore


class RecordingSTT:
    """Connected transcription stand-in that keeps the audio it is sent."""

    def __init__(self, on_transcript=None, config=None, call_control_id=None):
        self.audio = []
        self.is_connected = False

    async def connect(self):
        self.is_connected = True
        return True

    async def send_audio(self, data):
        self.audio.append(data)
        return True

    async def disconnect(self):
        self.is_connected = False


@pytest.fixture
def client():
    # No context manager: skip the lifespan so no engine is built from the real config.
    yield TestClient(server_app.app)
    server_app.set_engine(None)


class TestHealth:
    """Tests for /health and /metrics."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["active_calls"] == 0
        assert "timestamp" in data

    def test_metrics_include_registry_counts(self, client):
        server_app.set_engine(build_engine(get_config()))
        data = client.get("/metrics").json()
        assert data["sessions"] == 0
        assert data["flows"] == 0
        assert data["background_tasks"] == 0
        assert "uptime_seconds" in data


class TestWebhook:
    """Tests for POST /telnyx/call."""

    def test_event_is_acknowledged_and_dispatched(self, client):
        engine = MagicMock()
        engine.handle_event = AsyncMock()
        engine.store = CallStore()
        server_app.set_engine(engine)

        response = client.post(
            "/telnyx/call",
            json={"data": {"event_type": "call.initiated", "payload": {"call_control_id": "v3:abc"}}},
            headers={"host": "hooks.example.com"},
        )

        assert response.status_code == 200
        assert response.json() == {"ok": True}
        engine.handle_event.assert_called_once()
        event = engine.handle_event.call_args.args[0]
        assert event.event_type == "call.initiated"
        assert event.call_control_id == "v3:abc"
        assert engine.handle_event.call_args.kwargs["host"] == "hooks.example.com"

    def test_non_json_body_still_returns_200(self, client):
        engine = MagicMock()
        engine.handle_event = AsyncMock()
        server_app.set_engine(engine)

        response = client.post("/telnyx/call", content=b"not json")

        assert response.status_code == 200
        event = engine.handle_event.call_args.args[0]
        assert event.event_type == "unknown"
        assert event.call_control_id is None


class TestMediaSocket:
    """Tests for WS /media."""

    def test_connection_without_call_id_is_closed(self, client):
        server_app.set_engine(build_engine(get_config()))

        with client.websocket_connect("/media") as ws:
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_text()

        assert exc.value.code == CLOSE_POLICY

    def test_binary_frame_does_not_end_the_call(self, client, media_message, sample_ulaw_audio):
        stts = []

        def factory(**kwargs):
            stts.append(RecordingSTT(**kwargs))
            return stts[-1]

        engine = build_engine(get_config(), call_control=AsyncMock(), dashboard=AsyncMock(), stt_factory=factory)
        server_app.set_engine(engine)

        with client.websocket_connect("/media?call_control_id=call-b") as ws:
            ws.send_bytes(b"\x00\x01garbage")
            ws.send_text(media_message)

            deadline = time.monotonic() + 2.0
            while not (stts and stts[0].audio) and time.monotonic() < deadline:
                time.sleep(0.01)

            assert stts[0].audio == [sample_ulaw_audio]
            assert "call-b" in engine.store.sessions
            assert not engine.store.sessions["call-b"].closed
