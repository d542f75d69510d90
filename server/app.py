"""
FastAPI server for the maintenance intake call engine.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- POST /telnyx/call: Telnyx Call Control webhook
- WS /media: Telnyx media stream WebSocket
"""

import asyncio
import sys

# Use uvloop for faster asyncio (Linux only)
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass  # uvloop not available on Windows

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Dict, Any, Optional
import logging

from fastapi import FastAPI, WebSocket, Request
from fastapi.responses import JSONResponse
import structlog
import uvicorn

from src.intake.config import get_config, init_config, ConfigError
from src.intake.engine import CallEngine, build_engine
from src.intake.tasks import BackgroundTasks
from src.intake.telnyx_protocol import CallEvent


def configure_logging(log_level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if log_level != "DEBUG" else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

logger = structlog.get_logger(__name__)


@dataclass
class ServerMetrics:
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    webhooks_received: int = 0
    total_connections: int = 0
    active_connections: int = 0
    errors: int = 0

    def to_dict(self, engine: Optional[CallEngine] = None) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "webhooks_received": self.webhooks_received,
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "errors": self.errors,
        }
        if engine is not None:
            data.update(engine.store.counts())
            data["background_tasks"] = len(engine.tasks)
        return data


# Global metrics
metrics = ServerMetrics()

# Webhook handling runs detached from the request so Telnyx gets its 200 right away.
webhook_tasks = BackgroundTasks()

_engine: Optional[CallEngine] = None


def get_engine() -> CallEngine:
    """Process-wide engine, built on first use."""
    global _engine
    if _engine is None:
        _engine = build_engine(get_config())
    return _engine


def set_engine(engine: Optional[CallEngine]) -> None:
    """Swap the engine (tests)."""
    global _engine
    _engine = engine


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting maintenance intake server...")

    try:
        config = init_config()
        configure_logging(config.log_level)
        get_engine()

        logger.info(
            "Server ready",
            port=config.port,
            public_host=config.public_host,
            ws_url=config.ws_url,
            intake_flow_enabled=config.intake_flow_enabled,
        )

    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)
    except SystemExit:
        raise
    except Exception as e:
        logger.error("Startup failed", error=str(e))
        sys.exit(1)

    yield

    logger.info("Shutting down server...")
    await webhook_tasks.drain(timeout=5.0)
    if _engine is not None:
        await _engine.shutdown()


app = FastAPI(
    title="Maintenance Intake Voice Agent",
    description="Telnyx call engine for apartment maintenance intake",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    active_calls = len(_engine.store.sessions) if _engine is not None else 0
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": active_calls,
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict(_engine))


@app.post("/telnyx/call")
async def telnyx_webhook(request: Request) -> JSONResponse:
    """
    Telnyx Call Control webhook.

    Always answers 200; the event is handled in the background.
    """
    metrics.webhooks_received += 1
    try:
        body = await request.json()
    except ValueError:
        logger.warning("Webhook body is not JSON")
        body = None

    event = CallEvent.from_webhook(body)
    host = request.headers.get("host")
    webhook_tasks.spawn(
        get_engine().handle_event(event, host=host),
        label=f"webhook:{event.event_type}",
        call_control_id=event.call_control_id,
    )
    return JSONResponse(content={"ok": True})


@app.websocket("/media")
async def media_endpoint(websocket: WebSocket) -> None:
    """
    Telnyx media stream WebSocket endpoint.

    Inbound audio only; the relay forwards it to Deepgram.
    """
    await websocket.accept()

    metrics.total_connections += 1
    metrics.active_connections += 1
    logger.info("WebSocket connected", active_connections=metrics.active_connections)

    try:
        await get_engine().relay.serve(websocket)
    except Exception as e:
        logger.error("WebSocket handler error", error=str(e))
        metrics.errors += 1
    finally:
        metrics.active_connections -= 1
        logger.info("WebSocket closed", active_connections=metrics.active_connections)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler."""
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        error=str(exc),
    )
    metrics.errors += 1

    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
    )


def main() -> None:
    """Run the server."""
    config = get_config()
    configure_logging(config.log_level)

    logger.info("Starting server", port=config.port)

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=config.port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
