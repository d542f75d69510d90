"""
Configuration management for the maintenance intake call engine.

Loads environment variables and provides a strongly-typed configuration object.
Missing credentials are not fatal: each collaborator degrades to its documented
fallback and logs. Only invalid values are rejected at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)

DEFAULT_GREETING = (
    "Hi, thanks for calling. Someone from the FlowSync team will be with you shortly."
)
DEFAULT_DEEPGRAM_WS_URL = (
    "wss://api.deepgram.com/v1/listen?encoding=mulaw&sample_rate=8000"
)


class ConfigError(Exception):
    """Raised when configuration is invalid."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str = ""
    port: int = 8080
    log_level: str = "INFO"

    # Telnyx (Call Control)
    telnyx_api_key: str = ""
    telnyx_api_base: str = "https://api.telnyx.com/v2"
    telnyx_voice: str = "female"
    telnyx_language: str = "en-US"

    # Deepgram (STT)
    deepgram_api_key: str = ""
    deepgram_ws_url: str = DEFAULT_DEEPGRAM_WS_URL

    # Media stream target handed to Telnyx on streaming_start.
    # Falls back to wss://<request host>/media, then wss://<public_host>/media.
    media_ws_url: str = ""

    # FlowSync dashboard (context + ticket ingestion)
    flowsync_base_url: str = ""
    flowsync_api_key: str = ""
    http_timeout_seconds: float = 10.0

    # Feature flags
    # - intake_flow_enabled=False routes every final transcript to the FAQ matcher.
    # - issue_max_listen_anchored=True pins the issue ceiling to step entry
    #   instead of re-arming it on every accepted chunk.
    intake_flow_enabled: bool = True
    issue_max_listen_anchored: bool = False

    # Timing (milliseconds)
    silence_reprompt_ms: int = 9000
    issue_silence_finalize_ms: int = 2000
    issue_max_listen_ms: int = 20000
    issue_append_dedup_window_ms: int = 800

    # Speech
    fallback_greeting: str = DEFAULT_GREETING

    @property
    def ws_url(self) -> str:
        """Default media WebSocket URL derived from the public host."""
        if self.media_ws_url:
            return self.media_ws_url
        if self.public_host:
            return f"wss://{self.public_host}/media"
        return ""

    @property
    def flowsync_enabled(self) -> bool:
        return bool(self.flowsync_base_url and self.flowsync_api_key)

    def validate(self) -> None:
        """Validate configuration values. Missing credentials only produce warnings."""
        problems = []

        if not (0 < self.port < 65536):
            problems.append(f"PORT out of range: {self.port}")
        for name in (
            "silence_reprompt_ms",
            "issue_silence_finalize_ms",
            "issue_max_listen_ms",
        ):
            if getattr(self, name) <= 0:
                problems.append(f"{name.upper()} must be positive")
        if self.issue_append_dedup_window_ms < 0:
            problems.append("ISSUE_APPEND_DEDUP_WINDOW_MS must not be negative")
        if self.http_timeout_seconds <= 0:
            problems.append("HTTP_TIMEOUT_SECONDS must be positive")

        if problems:
            raise ConfigError(
                "Invalid configuration: " + "; ".join(problems) + "\n"
                "Please check your .env file."
            )

        missing = []
        if not self.telnyx_api_key:
            missing.append("TELNYX_API_KEY")
        if not self.deepgram_api_key:
            missing.append("DEEPGRAM_API_KEY")
        if not self.flowsync_enabled:
            missing.append("FLOWSYNC_BASE_URL/FLOWSYNC_API_KEY")
        if missing:
            logger.warning(
                "Configuration incomplete; affected features will be skipped",
                missing=missing,
            )

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            telnyx_api_base=self.telnyx_api_base,
            media_ws_url=self.ws_url or "derived-from-request",
            flowsync_base_url=self.flowsync_base_url or "NOT SET",
            intake_flow_enabled=self.intake_flow_enabled,
            issue_max_listen_anchored=self.issue_max_listen_anchored,
            silence_reprompt_ms=self.silence_reprompt_ms,
            issue_silence_finalize_ms=self.issue_silence_finalize_ms,
            issue_max_listen_ms=self.issue_max_listen_ms,
            issue_append_dedup_window_ms=self.issue_append_dedup_window_ms,
            telnyx_key_set=bool(self.telnyx_api_key),
            deepgram_key_set=bool(self.deepgram_api_key),
            flowsync_key_set=bool(self.flowsync_api_key),
        )


def _get_bool(key: str, default: bool = False) -> bool:
    """Get a boolean from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    return Config(
        # Server
        public_host=os.getenv("PUBLIC_HOST", ""),
        port=_get_int("PORT", 8080),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Telnyx
        telnyx_api_key=os.getenv("TELNYX_API_KEY", ""),
        telnyx_api_base=os.getenv("TELNYX_API_BASE", "https://api.telnyx.com/v2").rstrip("/"),
        telnyx_voice=os.getenv("TELNYX_VOICE", "female"),
        telnyx_language=os.getenv("TELNYX_LANGUAGE", "en-US"),

        # Deepgram
        deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
        deepgram_ws_url=os.getenv("DEEPGRAM_WS_URL", DEFAULT_DEEPGRAM_WS_URL),
        media_ws_url=os.getenv("MEDIA_WS_URL", ""),

        # FlowSync
        flowsync_base_url=os.getenv("FLOWSYNC_BASE_URL", "").rstrip("/"),
        flowsync_api_key=os.getenv("FLOWSYNC_API_KEY", ""),
        http_timeout_seconds=_get_float("HTTP_TIMEOUT_SECONDS", 10.0),

        # Feature flags
        intake_flow_enabled=_get_bool("INTAKE_FLOW_ENABLED", True),
        issue_max_listen_anchored=_get_bool("ISSUE_MAX_LISTEN_ANCHORED", False),

        # Timing
        silence_reprompt_ms=_get_int("SILENCE_REPROMPT_MS", 9000),
        issue_silence_finalize_ms=_get_int("ISSUE_SILENCE_FINALIZE_MS", 2000),
        issue_max_listen_ms=_get_int("ISSUE_MAX_LISTEN_MS", 20000),
        issue_append_dedup_window_ms=_get_int("ISSUE_APPEND_DEDUP_WINDOW_MS", 800),

        # Speech
        fallback_greeting=os.getenv("FALLBACK_GREETING", DEFAULT_GREETING),
    )


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
