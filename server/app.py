"""
FastAPI server for the Conversation Relay voice assistant.

Endpoints:
- GET /: Liveness text
- GET /health: Health check
- GET /metrics: JSON metrics
- GET /assistants: Configured assistants
- GET /assistant?name=: One assistant
- POST /twiml: Generate ConversationRelay TwiML for the Twilio voice webhook
- WS /conversation-relay: ConversationRelay WebSocket
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
from html import escape
from typing import Dict, Any, Optional
import logging

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse
import structlog
import uvicorn

from src.relay.config import get_config, init_config, ConfigError
from src.relay.assistants import get_assistant_service


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

    # Set log level
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

logger = structlog.get_logger(__name__)

# ConversationRelay policy-violation close code, used after a rejected setup
WS_CLOSE_SETUP_REJECTED = 1008


@dataclass
class ServerMetrics:
    """Server-wide metrics."""
    start_time: float = field(default_factory=time.time)
    total_connections: int = 0
    active_connections: int = 0
    total_sessions: int = 0
    active_sessions: int = 0
    rejected_setups: int = 0
    silence_timeouts: int = 0
    errors: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_seconds": round(time.time() - self.start_time, 2),
            "total_connections": self.total_connections,
            "active_connections": self.active_connections,
            "total_sessions": self.total_sessions,
            "active_sessions": self.active_sessions,
            "rejected_setups": self.rejected_setups,
            "silence_timeouts": self.silence_timeouts,
            "errors": self.errors,
        }


# Global metrics
metrics = ServerMetrics()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info("Starting Conversation Relay server...")

    try:
        # Initialize and validate configuration
        config = init_config()
        configure_logging(config.log_level)

        assistants = await get_assistant_service().get_assistants()

        # Validate every LLM provider and model the assistants use
        from src.relay.llm import initialize_llm
        await initialize_llm(config, assistants)

        logger.info(
            "Server ready",
            port=config.port,
            public_host=config.public_host,
            ws_url=config.ws_url,
            assistants=len(assistants),
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

    # Shutdown
    logger.info("Shutting down server...")


# Create FastAPI app
app = FastAPI(
    title="Conversation Relay Voice Assistant",
    description="LLM voice assistant for Twilio ConversationRelay calls",
    version="1.0.0",
    lifespan=lifespan,
)


@app.get("/")
async def root() -> PlainTextResponse:
    return PlainTextResponse("WebSocket Server Running")


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_sessions": metrics.active_sessions,
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    """Metrics endpoint."""
    return JSONResponse(content=metrics.to_dict())


@app.get("/assistants")
async def list_assistants() -> JSONResponse:
    """All configured assistants."""
    logger.info("Fetching configured assistants")
    assistants = await get_assistant_service().get_assistants()
    return JSONResponse(content=[a.to_dict() for a in assistants])


@app.get("/assistant")
async def get_assistant(name: Optional[str] = None) -> JSONResponse:
    """One assistant by name."""
    assistant = await get_assistant_service().get_assistant(name)
    if assistant is None:
        return JSONResponse(status_code=404, content={"message": "Assistant not found"})
    return JSONResponse(content=assistant.to_dict())


@app.post("/twiml")
@app.get("/twiml")
async def generate_twiml(request: Request) -> Response:
    """
    Generate TwiML for the Twilio voice webhook.

    Connects the call to our ConversationRelay WebSocket with the voice
    settings of the assistant named in the `assistant` query parameter.
    """
    config = get_config()
    name = request.query_params.get("assistant") or "default"

    assistant = await get_assistant_service().get_assistant(name)
    if assistant is None:
        logger.warning("TwiML requested for unknown assistant", assistant=name)
        return JSONResponse(status_code=404, content={"message": "Assistant not found"})

    twiml = f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Connect>
        <ConversationRelay url="{escape(config.ws_url)}">
            <Language code="{escape(assistant.language_code)}" ttsProvider="{escape(assistant.tts_provider)}" voice="{escape(assistant.tts_voice)}" />
            <Parameter name="assistant" value="{escape(assistant.assistant_name)}" />
        </ConversationRelay>
    </Connect>
</Response>"""

    logger.info("Generated TwiML", ws_url=config.ws_url, assistant=assistant.assistant_name)

    return Response(
        content=twiml,
        media_type="application/xml",
    )


@app.websocket("/conversation-relay")
async def conversation_relay(websocket: WebSocket) -> None:
    """
    ConversationRelay WebSocket endpoint.

    Runs one SessionController for the lifetime of the connection.
    """
    await websocket.accept()

    metrics.total_connections += 1
    metrics.active_connections += 1

    connection_id = f"conn_{int(time.time() * 1000)}"
    logger.info("WebSocket connected", connection_id=connection_id)

    # Import here to avoid circular imports and speed up startup
    from src.relay.session import SessionController, SessionState

    async def send_message(message: str) -> None:
        """Send a message to the WebSocket."""
        try:
            await websocket.send_text(message)
        except Exception as e:
            logger.error("Failed to send WebSocket message", error=str(e))

    async def close_transport() -> None:
        try:
            await websocket.close()
        except Exception as e:
            logger.debug("WebSocket already closed", error=str(e))

    controller = SessionController(
        send_message,
        assistant_service=get_assistant_service(),
        close_transport=close_transport,
    )
    controller.open()
    counted_session = False
    close_reason = "connection_closed"

    try:
        while controller.state != SessionState.CLOSED:
            try:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(message.get("code", 1000))
            except WebSocketDisconnect:
                logger.info("WebSocket disconnected", connection_id=connection_id)
                break

            # Binary frames go to the parser too; bad ones are dropped there
            payload = message.get("text")
            if payload is None:
                payload = message.get("bytes")
            await controller.handle_message(payload)

            if controller.is_active and not counted_session:
                counted_session = True
                metrics.total_sessions += 1
                metrics.active_sessions += 1

            if controller.session.setup_rejected and not controller.is_active:
                metrics.rejected_setups += 1
                close_reason = "setup_rejected"
                await websocket.close(code=WS_CLOSE_SETUP_REJECTED)
                break

    except Exception as e:
        logger.error(
            "WebSocket handler error",
            connection_id=connection_id,
            error=str(e),
        )
        metrics.errors += 1
        close_reason = "transport_error"

    finally:
        if controller.session.close_reason == "silence_timeout":
            metrics.silence_timeouts += 1
        controller.close(close_reason)

        metrics.active_connections -= 1
        if counted_session:
            metrics.active_sessions -= 1

        logger.info(
            "Connection ended",
            connection_id=connection_id,
            session_id=controller.session.id,
            active_sessions=metrics.active_sessions,
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
    try:
        config = get_config()
    except Exception:
        # Use defaults if config fails
        config = type('Config', (), {'port': 3000, 'log_level': 'INFO'})()

    configure_logging(getattr(config, 'log_level', 'INFO'))

    logger.info(
        "Starting server",
        port=getattr(config, 'port', 3000),
    )

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=getattr(config, 'port', 3000),
        log_level=getattr(config, 'log_level', 'INFO').lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
