"""
FastAPI server for the Twilio call flow agent.

Endpoints:
- GET /health: Health check
- GET /metrics: JSON metrics
- POST /incoming: TwiML for the Twilio voice webhook
- WS /connection: Twilio Media Streams WebSocket
"""

import asyncio
import sys

# Use uvloop for faster asyncio (Linux/macOS only)
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass  # uvloop not available on Windows

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict

import structlog
import uvicorn
from fastapi import FastAPI, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from src.callflow.config import ConfigError, get_config, init_config
from src.callflow.errors import ToolRegistryError
from src.callflow.session import SessionRegistry, create_session
from src.callflow.tools import get_registry


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
    total_connections: int = 0
    active_connections: int = 0
    total_calls: int = 0
    interruptions: int = 0
    errors: int = 0

    def to_dict(self, active_calls: int = 0) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "total_calls": self.total_calls,
            "active_calls": active_calls,
            "interruptions": self.interruptions,
            "errors": self.errors,
        }


metrics = ServerMetrics()
sessions = SessionRegistry()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting call flow server...")

    try:
        config = init_config()
        configure_logging(config.log_level)

        # Every catalog tool must have a handler before the first call arrives.
        registry = get_registry()

        logger.info(
            "Server ready",
            port=config.port,
            public_host=config.public_host,
            ws_url=config.ws_url,
            tools=registry.names,
        )

    except (ConfigError, ToolRegistryError) as e:
        logger.error("Startup error", error_type=type(e).__name__, error=str(e))
        sys.exit(1)
    except SystemExit:
        raise
    except Exception as e:
        logger.error("Startup failed", error=str(e))
        sys.exit(1)

    yield

    logger.info("Shutting down server...", active_calls=len(sessions))
    for session_id in sessions:
        session = sessions.remove(session_id)
        if session:
            await session.stop()


app = FastAPI(
    title="Call Flow Agent",
    description="Conversational voice agent for Twilio phone calls",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": len(sessions),
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict(active_calls=len(sessions)))


@app.post("/incoming")
@app.get("/incoming")
async def incoming_call(request: Request) -> Response:
    """
    Twilio voice webhook.

    Returns TwiML that connects the call's audio to our WebSocket endpoint.
    """
    config = get_config()

    twiml = f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Connect>
        <Stream url="{config.ws_url}" />
    </Connect>
</Response>"""

    logger.info("Generated TwiML", ws_url=config.ws_url)

    return Response(
        content=twiml,
        media_type="application/xml",
    )


@app.websocket("/connection")
async def connection_endpoint(websocket: WebSocket) -> None:
    """
    Twilio Media Streams WebSocket endpoint.

    One connection carries one call; the session is created here and removed
    from the registry when the socket closes.
    """
    await websocket.accept()

    metrics.total_connections += 1
    metrics.active_connections += 1
    metrics.total_calls += 1

    session_id = f"call_{int(time.time() * 1000)}_{metrics.total_connections}"
    logger.info("WebSocket connected", session_id=session_id, active_calls=len(sessions) + 1)

    session = None

    async def send_message(message: str) -> None:
        """Send a message to the WebSocket."""
        try:
            await websocket.send_text(message)
        except Exception as e:
            logger.error("Failed to send WebSocket message", error=str(e))

    try:
        session = await create_session(send_message, registry=get_registry())
        sessions.add(session_id, session)

        while True:
            try:
                message = await websocket.receive_text()
                await session.handle_message(message)

            except WebSocketDisconnect:
                logger.info("WebSocket disconnected", session_id=session_id)
                break
            except Exception as e:
                logger.error(
                    "Error handling WebSocket message",
                    session_id=session_id,
                    error=str(e),
                )
                metrics.errors += 1
                # A single bad message must not end the call.
                continue

    except Exception as e:
        logger.error(
            "WebSocket handler error",
            session_id=session_id,
            error=str(e),
        )
        metrics.errors += 1

    finally:
        sessions.remove(session_id)
        if session:
            try:
                await session.stop()
            except Exception as e:
                logger.error("Error stopping session", error=str(e))
            metrics.interruptions += session.metrics.interruptions

        metrics.active_connections -= 1

        logger.info(
            "Call ended",
            session_id=session_id,
            active_calls=len(sessions),
        )


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
