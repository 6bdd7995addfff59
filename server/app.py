"""
FastAPI server for the voice bridge.

Endpoints:
- GET /, GET /health: liveness
- GET /metrics: server-wide call and turn counters
- GET|POST /incoming-call, /twiml: TwiML for the Twilio voice webhook
- WS /media-stream: Twilio Media Streams socket, one TurnController per call
"""

import asyncio
import sys

# Use uvloop for faster asyncio (Linux only)
try:
    import uvloop
    asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
except ImportError:
    pass  # uvloop not available on Windows

import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from typing import Any, Dict
from xml.sax.saxutils import quoteattr

from fastapi import FastAPI, Request, Response, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
import structlog
import uvicorn

from src.voicebridge.config import ConfigError, get_config, init_config


def configure_logging(log_level: str = "INFO") -> None:
    """
    Route structlog through stdlib logging.

    Call-scoped fields bound with `structlog.contextvars` (call_id, stream_sid)
    are merged into every event logged from that call's tasks.
    """
    renderer = structlog.dev.ConsoleRenderer() if log_level == "DEBUG" else structlog.processors.JSONRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
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
    """Counters shared by every call handled by this process."""
    start_time: float = field(default_factory=time.time)
    total_calls: int = 0
    active_calls: int = 0
    turns_committed: int = 0
    barge_ins: int = 0
    utterances: int = 0
    errors: int = 0

    def call_started(self) -> None:
        self.total_calls += 1
        self.active_calls += 1

    def call_ended(self, controller: Any) -> None:
        self.active_calls -= 1
        self.turns_committed += controller.turns_committed
        self.barge_ins += controller.barge_ins
        self.utterances += controller.utterances

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("start_time")
        data["uptime_seconds"] = round(time.time() - self.start_time, 2)
        return data


metrics = ServerMetrics()


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        config = init_config()
    except ConfigError as e:
        logger.error("Configuration error", error=str(e))
        sys.exit(1)

    configure_logging(config.log_level)
    logger.info("Voice bridge ready", port=config.port, ws_path=config.ws_path)

    yield

    logger.info("Voice bridge stopping", active_calls=metrics.active_calls)


app = FastAPI(
    title="Voice Bridge",
    description="Twilio phone calls bridged to OpenAI Realtime and ElevenLabs",
    version="1.0.0",
    lifespan=lifespan,
)


def build_twiml(stream_url: str) -> str:
    """TwiML that connects the call audio to our media socket."""
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        "<Response>\n"
        "    <Connect>\n"
        f"        <Stream url={quoteattr(stream_url)} />\n"
        "    </Connect>\n"
        "</Response>"
    )


@app.get("/")
async def root() -> JSONResponse:
    return JSONResponse(content={"message": "Twilio Media Stream Server is running!"})


@app.get("/health")
async def health_check() -> JSONResponse:
    return JSONResponse(
        content={
            "status": "healthy",
            "timestamp": time.time(),
            "active_calls": metrics.active_calls,
        }
    )


@app.get("/metrics")
async def get_metrics() -> JSONResponse:
    return JSONResponse(content=metrics.to_dict())


@app.api_route("/incoming-call", methods=["GET", "POST"])
@app.api_route("/twiml", methods=["GET", "POST"])
async def incoming_call(request: Request) -> Response:
    """
    Twilio voice webhook.

    The stream URL uses PUBLIC_HOST when configured, otherwise the Host the
    webhook was delivered to (e.g. an ngrok tunnel).
    """
    config = get_config()
    stream_url = config.ws_url(config.public_host or request.headers.get("host", ""))
    logger.info("Incoming call", stream_url=stream_url)
    return Response(content=build_twiml(stream_url), media_type="application/xml")


@app.websocket("/media-stream")
async def media_stream(websocket: WebSocket) -> None:
    await websocket.accept()

    # Import here to speed up startup
    from src.voicebridge.turn_controller import TurnController

    call_id = uuid.uuid4().hex[:12]
    structlog.contextvars.bind_contextvars(call_id=call_id)
    metrics.call_started()
    logger.info("Media stream connected", active_calls=metrics.active_calls)

    async def close_call() -> None:
        await websocket.close()

    controller = TurnController(websocket.send_text, close_call=close_call)

    try:
        while True:
            try:
                message = await websocket.receive_text()
            except (WebSocketDisconnect, RuntimeError):
                break

            try:
                await controller.handle_message(message)
            except Exception:
                # One bad event must not take the call down
                logger.exception("Media event failed", state=controller.state.value)
                metrics.errors += 1
    finally:
        try:
            await controller.stop()
        except Exception:
            logger.exception("Call teardown failed")
            metrics.errors += 1

        metrics.call_ended(controller)
        logger.info(
            "Media stream closed",
            stream_sid=controller.stream_sid or None,
            call_sid=controller.call_sid or None,
            turns=controller.turns_committed,
            barge_ins=controller.barge_ins,
            active_calls=metrics.active_calls,
        )
        structlog.contextvars.unbind_contextvars("call_id")


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled exception", path=request.url.path, error=str(exc))
    metrics.errors += 1
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def main() -> None:
    """Run the server."""
    config = get_config()
    configure_logging(config.log_level)

    uvicorn.run(
        "server.app:app",
        host="0.0.0.0",
        port=config.port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
