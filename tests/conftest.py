"""
Pytest configuration and fixtures.
"""

import os
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import patch

import pytest


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "8080",
        "LOG_LEVEL": "DEBUG",
        "TELNYX_API_KEY": "test_telnyx_key",
        "TELNYX_API_BASE": "https://api.telnyx.test/v2",
        "DEEPGRAM_API_KEY": "test_deepgram_key",
        "MEDIA_WS_URL": "",
        "FLOWSYNC_BASE_URL": "https://dashboard.test",
        "FLOWSYNC_API_KEY": "test_flowsync_key",
        "INTAKE_FLOW_ENABLED": "true",
        "ISSUE_MAX_LISTEN_ANCHORED": "false",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.intake.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


class RecordingCallControl:
    """Call Control stand-in that records every action instead of sending it."""

    def __init__(self, ok: bool = True):
        self.ok = ok
        self.actions: List[Tuple[str, str, Optional[Dict[str, Any]]]] = []

    async def send_action(self, call_control_id: str, action: str, body: Optional[Dict[str, Any]] = None) -> bool:
        self.actions.append((call_control_id, action, body))
        return self.ok

    async def answer(self, call_control_id: str) -> bool:
        return await self.send_action(call_control_id, "answer")

    async def speak(self, call_control_id: str, text: str) -> bool:
        return await self.send_action(call_control_id, "speak", {"payload": text})

    async def streaming_start(self, call_control_id: str, stream_url: str) -> bool:
        return await self.send_action(
            call_control_id,
            "streaming_start",
            {"stream_url": stream_url, "stream_track": "inbound_track"},
        )

    def spoken(self, call_control_id: Optional[str] = None) -> List[str]:
        return [
            body["payload"]
            for cid, action, body in self.actions
            if action == "speak" and (call_control_id is None or cid == call_control_id)
        ]


@pytest.fixture
def call_control():
    return RecordingCallControl()


@pytest.fixture
def fast_config():
    """Config with millisecond-scale timers."""
    from dataclasses import replace
    from src.intake.config import get_config

    return replace(
        get_config(),
        silence_reprompt_ms=50,
        issue_silence_finalize_ms=40,
        issue_max_listen_ms=400,
        issue_append_dedup_window_ms=800,
    )


@pytest.fixture
def sample_ulaw_audio():
    """Generate sample mu-law audio (silence)."""
    return b"\xff" * 160  # 20ms of silence


@pytest.fixture
def media_message(sample_ulaw_audio):
    """Sample Telnyx media message."""
    import base64
    import json

    return json.dumps({
        "event": "media",
        "stream_id": "st-1",
        "media": {
            "track": "inbound",
            "chunk": "1",
            "timestamp": "20",
            "payload": base64.b64encode(sample_ulaw_audio).decode(),
        },
    })
