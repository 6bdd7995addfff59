"""
OpenAI Realtime session used as a text-out reasoning backend.

Caller audio (g711_ulaw 8kHz) goes in; generated text comes out. The session
is opened once per call and is only usable after the backend acknowledges the
`session.update` handshake with `session.updated`.

Inbound events are dispatched through a table of handlers, each returning a
structured `ReasoningEvent` (or None) that is handed to the owner callback.
"""

from __future__ import annotations

import asyncio
import base64
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import structlog
import websockets
import websockets.exceptions

from src.voicebridge.audio import TWILIO_FRAME_SIZE
from src.voicebridge.config import Config, get_config

logger = structlog.get_logger(__name__)

OPENAI_REALTIME_URL = "wss://api.openai.com/v1/realtime"

_TRANSPORT_ERRORS = (websockets.exceptions.WebSocketException, OSError, asyncio.TimeoutError)


class ReasoningEventType(str, Enum):
    READY = "ready"
    COMMITTED = "committed"
    RESPONSE_COMPLETED = "response_completed"
    ERROR = "error"
    CLOSED = "closed"


@dataclass(frozen=True)
class ReasoningEvent:
    type: ReasoningEventType
    text: str = ""
    details: dict[str, Any] = field(default_factory=dict)


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("utf-8")


def extract_response_text(response: Any) -> str:
    """
    Pull the final assistant text out of a `response.done` payload.

    Handles both flat `output_text` parts and `message` items carrying
    `text` / `output_text` content parts.
    """
    if not isinstance(response, dict):
        return ""

    parts: list[str] = []
    for item in response.get("output") or []:
        if not isinstance(item, dict):
            continue
        if item.get("type") == "output_text" and isinstance(item.get("text"), str):
            parts.append(item["text"])
            continue
        if item.get("type") != "message":
            continue
        for content in item.get("content") or []:
            if (
                isinstance(content, dict)
                and content.get("type") in ("text", "output_text")
                and isinstance(content.get("text"), str)
            ):
                parts.append(content["text"])

    return " ".join(p.strip() for p in parts if p.strip()).strip()


class ReasoningChannel:
    """
    Duplex session to the reasoning backend for one call.

    - `connect()` opens the socket and sends the configuration handshake
    - `append_audio(frame)` forwards caller audio once ready
    - `commit(buffered_bytes)` closes a turn and requests a response
    - `close()` ends the session
    """

    def __init__(
        self,
        *,
        on_event: Callable[[ReasoningEvent], Awaitable[None]],
        config: Optional[Config] = None,
        connect: Optional[Callable[..., Any]] = None,
    ):
        self.config = config or get_config()
        self._on_event = on_event
        self._connect = connect or websockets.connect

        self._ws: Optional[Any] = None
        self._recv_task: Optional[asyncio.Task] = None
        self._ready = False
        self._closing = False
        self._text_buffer = ""
        self._dropped_frames = 0

        self._handlers: dict[str, Callable[[dict], Optional[ReasoningEvent]]] = {
            "session.updated": self._on_session_updated,
            "input_audio_buffer.committed": self._on_committed,
            "response.created": self._on_response_created,
            "response.output_text.delta": self._on_text_delta,
            "response.text.delta": self._on_text_delta,
            "response.done": self._on_response_done,
            "response.completed": self._on_response_done,
            "error": self._on_error,
        }

    @property
    def is_ready(self) -> bool:
        return self._ready and self._ws is not None and not self._closing

    @property
    def min_commit_bytes(self) -> int:
        return self.config.min_frames_to_commit * TWILIO_FRAME_SIZE

    def turn_detection(self) -> Optional[dict[str, Any]]:
        """
        Backend VAD settings for `server` turn mode.

        In `manual` mode the backend must never commit on its own, so VAD is
        switched off and only explicit commits close a turn.
        """
        if not self.config.server_turn_detection:
            return None
        return {
            "type": "server_vad",
            "threshold": min(1.0, max(0.0, self.config.vad_threshold)),
            "prefix_padding_ms": self.config.vad_prefix_padding_ms,
            "silence_duration_ms": self.config.silence_ms,
            "create_response": True,
            "interrupt_response": True,
        }

    def session_config(self) -> dict[str, Any]:
        """Build the `session.update` payload."""
        return {
            "model": self.config.openai_realtime_model,
            "modalities": ["text"],
            "input_audio_format": "g711_ulaw",
            "turn_detection": self.turn_detection(),
            "max_response_output_tokens": self.config.max_response_output_tokens,
            "instructions": self.config.system_message,
        }

    async def connect(self) -> bool:
        """
        Open the backend socket and send the configuration handshake.

        Returns:
            True if the socket is open; readiness follows asynchronously
        """
        if self._ws:
            return True

        model = self.config.openai_realtime_model
        url = f"{OPENAI_REALTIME_URL}?model={model}"
        headers = {
            "Authorization": f"Bearer {self.config.openai_api_key}",
            "OpenAI-Beta": "realtime=v1",
        }

        try:
            self._ws = await self._connect(
                url,
                additional_headers=headers,
                open_timeout=self.config.transport_open_timeout_s,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "OpenAI Realtime connect timed out",
                timeout_s=self.config.transport_open_timeout_s,
            )
            return False
        except _TRANSPORT_ERRORS as e:
            logger.warning("OpenAI Realtime connect failed", error=str(e))
            return False

        self._recv_task = asyncio.create_task(self._receive_loop())

        if not await self._send({"type": "session.update", "session": self.session_config()}):
            await self.close()
            return False

        logger.info(
            "OpenAI Realtime connected",
            model=model,
            turn_mode=self.config.reasoning_turn_mode,
            silence_ms=self.config.silence_ms,
        )
        return True

    async def append_audio(self, frame: bytes) -> bool:
        """Forward one unit of caller audio. No-op until the session is ready."""
        if not frame:
            return False
        if not self.is_ready:
            self._dropped_frames += 1
            if self._dropped_frames == 1:
                logger.warning("Reasoning session not ready; dropping caller audio")
            return False
        return await self._send({"type": "input_audio_buffer.append", "audio": _b64encode(frame)})

    async def commit(self, buffered_bytes: int) -> bool:
        """
        Finalize the buffered audio as one turn and request a response.

        Windows below the minimum duration are skipped without error.
        """
        if buffered_bytes < self.min_commit_bytes:
            logger.debug(
                "Commit skipped (below threshold)",
                buffered_bytes=buffered_bytes,
                min_commit_bytes=self.min_commit_bytes,
            )
            return False
        if not self.is_ready:
            logger.warning("Commit requested before reasoning session is ready")
            return False

        if not await self._send({"type": "input_audio_buffer.commit"}):
            return False
        return await self._send({"type": "response.create", "response": {"modalities": ["text"]}})

    async def clear_input(self) -> bool:
        """Discard whatever caller audio the backend has buffered but not committed."""
        if not self.is_ready:
            return False
        return await self._send({"type": "input_audio_buffer.clear"})

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        self._ready = False

        task = self._recv_task
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        if self._ws:
            try:
                await self._ws.close()
            except _TRANSPORT_ERRORS as e:
                logger.debug("OpenAI Realtime close failed", error=str(e))

        self._ws = None
        self._recv_task = None
        logger.info("OpenAI Realtime session closed")

    async def _send(self, message: dict) -> bool:
        ws = self._ws
        if ws is None or self._closing:
            return False
        try:
            await ws.send(json.dumps(message))
            return True
        except _TRANSPORT_ERRORS as e:
            logger.error("OpenAI send failed", error=str(e), type=message.get("type"))
            return False

    async def _receive_loop(self) -> None:
        ws = self._ws
        if not ws:
            return

        try:
            async for raw in ws:
                await self.handle_raw(raw)
        except asyncio.CancelledError:
            raise
        except _TRANSPORT_ERRORS as e:
            logger.error("OpenAI receive loop failed", error=str(e))

        self._ready = False
        if not self._closing:
            logger.warning("OpenAI Realtime transport closed")
            await self._emit(ReasoningEvent(type=ReasoningEventType.CLOSED))

    async def handle_raw(self, raw: Any) -> Optional[ReasoningEvent]:
        """Decode and dispatch one inbound frame."""
        try:
            event = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Unparseable OpenAI message dropped")
            return None
        if not isinstance(event, dict):
            logger.warning("Unexpected OpenAI message dropped", kind=type(event).__name__)
            return None

        handler = self._handlers.get(event.get("type", ""))
        if handler is None:
            return None

        result = handler(event)
        if result is not None:
            await self._emit(result)
        return result

    async def _emit(self, event: ReasoningEvent) -> None:
        try:
            await self._on_event(event)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Reasoning event handler failed", event_type=event.type.value)

    def _on_session_updated(self, event: dict) -> ReasoningEvent:
        self._ready = True
        logger.info("OpenAI Realtime session ready")
        return ReasoningEvent(type=ReasoningEventType.READY)

    def _on_committed(self, event: dict) -> ReasoningEvent:
        return ReasoningEvent(type=ReasoningEventType.COMMITTED, details={"item_id": event.get("item_id")})

    def _on_response_created(self, event: dict) -> None:
        self._text_buffer = ""
        return None

    def _on_text_delta(self, event: dict) -> None:
        delta = event.get("delta")
        if isinstance(delta, str):
            self._text_buffer += delta
        return None

    def _on_response_done(self, event: dict) -> ReasoningEvent:
        text = extract_response_text(event.get("response")) or self._text_buffer.strip()
        self._text_buffer = ""
        logger.info("Reasoning response completed", text=text[:200])
        return ReasoningEvent(type=ReasoningEventType.RESPONSE_COMPLETED, text=text)

    def _on_error(self, event: dict) -> ReasoningEvent:
        details = event.get("error") if isinstance(event.get("error"), dict) else {"error": event.get("error")}
        logger.error("OpenAI Realtime error", details=details)
        return ReasoningEvent(type=ReasoningEventType.ERROR, details=details)
