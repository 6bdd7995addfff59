"""
ElevenLabs streaming speech synthesis, one session per spoken utterance.

Audio is requested as `ulaw_8000`, Twilio's native encoding, so the only work on
the way out is re-framing into 20ms frames. Every session carries a generation
token; once the owning call has moved on to a newer generation (barge-in or a
replacement utterance) nothing from this session reaches the caller.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlencode

import structlog
import websockets
import websockets.exceptions

from src.voicebridge.audio import slice_frames
from src.voicebridge.config import Config, get_config
from src.voicebridge.twilio_protocol import TelephonyChannel

logger = structlog.get_logger(__name__)

ELEVEN_STREAM_URL = "wss://api.elevenlabs.io/v1/text-to-speech/{voice_id}/stream-input"
ELEVEN_OUTPUT_FORMAT = "ulaw_8000"

_TRANSPORT_ERRORS = (websockets.exceptions.WebSocketException, OSError, asyncio.TimeoutError)


async def wait_until(predicate: Callable[[], bool], *, attempts: int, interval_s: float) -> bool:
    """
    Poll `predicate` on a fixed interval.

    Returns:
        True as soon as the predicate holds, False after `attempts` retries
    """
    for attempt in range(max(0, attempts) + 1):
        if predicate():
            return True
        if attempt < attempts:
            await asyncio.sleep(interval_s)
    return False


def build_stream_url(config: Config) -> str:
    query = urlencode({"model_id": config.eleven_model_id, "output_format": ELEVEN_OUTPUT_FORMAT})
    return f"{ELEVEN_STREAM_URL.format(voice_id=config.eleven_voice_id)}?{query}"


def build_request_messages(text: str, config: Config) -> list[dict[str, Any]]:
    """Messages for one utterance: open with voice settings, the text, then end of input."""
    return [
        {
            "text": " ",
            "voice_settings": {
                "stability": config.eleven_stability,
                "similarity_boost": config.eleven_similarity_boost,
                "style": config.eleven_style,
                "use_speaker_boost": config.eleven_use_speaker_boost,
            },
            "model_id": config.eleven_model_id,
            "output_format": ELEVEN_OUTPUT_FORMAT,
        },
        {"text": text.strip() + " ", "try_trigger_generation": True},
        {"text": ""},
    ]


class SpeechSession:
    """
    One utterance streamed from ElevenLabs to the caller.

    All termination paths (stream end, error, transport loss, cancellation)
    converge on `_finish()`, which runs exactly once.
    """

    def __init__(
        self,
        text: str,
        generation: int,
        *,
        telephony: TelephonyChannel,
        is_current_generation: Callable[[int], bool],
        reasoning_ready: Callable[[], bool],
        config: Optional[Config] = None,
        connect: Optional[Callable[..., Any]] = None,
        on_finished: Optional[Callable[["SpeechSession"], Awaitable[None]]] = None,
    ):
        self.config = config or get_config()
        self.text = text
        self.generation = generation
        self._telephony = telephony
        self._is_current_generation = is_current_generation
        self._reasoning_ready = reasoning_ready
        self._connect = connect or websockets.connect
        self._on_finished = on_finished

        self._current = True
        self._carry = b""
        self._ws: Optional[Any] = None
        self._task: Optional[asyncio.Task] = None
        self._finished = False
        self.end_reason: Optional[str] = None
        self.frames_forwarded = 0

    @property
    def is_current(self) -> bool:
        return self._current and self._is_current_generation(self.generation)

    @property
    def carry(self) -> bytes:
        return self._carry

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    def start(self) -> asyncio.Task:
        self._task = asyncio.create_task(self.run())
        return self._task

    def cancel(self, reason: str = "cancelled") -> None:
        """
        Stop forwarding immediately; transport teardown happens asynchronously.
        """
        self._current = False
        self._carry = b""
        if self.end_reason is None:
            self.end_reason = reason

        task = self._task
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
        elif task is None:
            self._finished = True

        logger.info("Speech cancelled", generation=self.generation, reason=reason)

    def _call_ready(self) -> bool:
        return self._reasoning_ready() and bool(self._telephony.stream_sid) and self._telephony.is_open

    async def run(self) -> None:
        reason = "stream_end"
        try:
            ready = await wait_until(
                self._call_ready,
                attempts=self.config.speak_retry_attempts,
                interval_s=self.config.speak_retry_interval_ms / 1000.0,
            )
            if not ready:
                logger.warning(
                    "Call not ready for speech; skipping utterance",
                    generation=self.generation,
                    stream_sid=self._telephony.stream_sid or None,
                )
                reason = "not_ready"
                return
            if not self.is_current:
                reason = "superseded"
                return

            if not await self._open():
                reason = "open_failed"
                return

            for message in build_request_messages(self.text, self.config):
                await self._ws.send(json.dumps(message))

            reason = "transport_closed"
            async for message in self._ws:
                if not self.is_current:
                    reason = "superseded"
                    break
                outcome = await self._handle_message(message)
                if outcome is not None:
                    reason = outcome
                    break
        except asyncio.CancelledError:
            reason = "cancelled"
            raise
        except _TRANSPORT_ERRORS as e:
            logger.error("ElevenLabs transport error", generation=self.generation, error=str(e))
            reason = "transport_error"
        finally:
            await self._finish(reason)

    async def _open(self) -> bool:
        try:
            self._ws = await self._connect(
                build_stream_url(self.config),
                additional_headers={"xi-api-key": self.config.eleven_api_key},
                open_timeout=self.config.transport_open_timeout_s,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "ElevenLabs connect timed out",
                generation=self.generation,
                timeout_s=self.config.transport_open_timeout_s,
            )
            return False
        except _TRANSPORT_ERRORS as e:
            logger.warning("ElevenLabs connect failed", generation=self.generation, error=str(e))
            return False

        logger.info("Speech started", generation=self.generation, characters=len(self.text))
        return True

    async def _handle_message(self, message: Any) -> Optional[str]:
        """
        Handle one synthesis message.

        Returns:
            An end reason when the stream is over, else None
        """
        if isinstance(message, (bytes, bytearray)):
            return await self._forward_audio(bytes(message))

        try:
            data = json.loads(message)
        except (TypeError, ValueError):
            logger.warning("Unparseable ElevenLabs message dropped", generation=self.generation)
            return None
        if not isinstance(data, dict):
            return None

        msg_type = data.get("type")
        if msg_type == "error" or data.get("error"):
            logger.error("ElevenLabs error", generation=self.generation, details=data)
            return "error"
        if msg_type == "audio_stream_start":
            logger.debug("ElevenLabs stream started", generation=self.generation)
            return None
        if msg_type == "audio_stream_end":
            return "stream_end"

        audio_b64 = data.get("audio")
        if isinstance(audio_b64, str) and audio_b64:
            try:
                audio = base64.b64decode(audio_b64)
            except (binascii.Error, ValueError):
                logger.warning("Invalid ElevenLabs audio dropped", generation=self.generation)
                audio = b""
            if audio:
                outcome = await self._forward_audio(audio)
                if outcome is not None:
                    return outcome

        if data.get("isFinal"):
            return "stream_end"
        return None

    async def _forward_audio(self, chunk: bytes) -> Optional[str]:
        if not self.is_current:
            return "superseded"

        frames, self._carry = slice_frames(chunk, self._carry)
        for frame in frames:
            if not self.is_current:
                return "superseded"
            if not self._telephony.is_open or not self._telephony.stream_sid:
                return "telephony_closed"
            try:
                sent = await self._telephony.send_frame(frame)
            except Exception as e:
                logger.error("Failed to send frame to Twilio", generation=self.generation, error=str(e))
                return "telephony_error"
            if not sent:
                return "telephony_closed"
            self.frames_forwarded += 1
        return None

    async def _finish(self, reason: str) -> None:
        if self._finished:
            return
        self._finished = True
        self._current = False
        self._carry = b""
        if self.end_reason is None:
            self.end_reason = reason

        ws = self._ws
        self._ws = None
        if ws is not None:
            try:
                await ws.close()
            except _TRANSPORT_ERRORS as e:
                logger.debug("ElevenLabs close failed", error=str(e))

        logger.info(
            "Speech finished",
            generation=self.generation,
            reason=self.end_reason,
            frames_forwarded=self.frames_forwarded,
        )

        if self._on_finished is not None:
            await self._on_finished(self)
