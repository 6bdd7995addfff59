"""
Twilio Media Streams WebSocket protocol handler.

Twilio sends JSON messages with events:
- connected: Initial connection
- start: Stream started, contains streamSid and callSid
- media: Audio data as base64 mu-law 8kHz
- mark: Playback marker acknowledgment
- stop: Stream stopped

Outbound messages:
- media: Send audio as base64 mu-law 8kHz (one 20ms frame per message)
- clear: Clear buffered audio (for barge-in)
"""

import base64
import binascii
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import msgspec
import structlog

logger = structlog.get_logger(__name__)

# Create global msgspec encoder/decoder
decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()


class TwilioEventType(str, Enum):
    """Twilio WebSocket event types."""
    CONNECTED = "connected"
    START = "start"
    MEDIA = "media"
    MARK = "mark"
    STOP = "stop"


@dataclass
class TwilioStartEvent:
    """Parsed Twilio start event."""
    stream_sid: str
    call_sid: str = ""
    account_sid: str = ""
    tracks: List[str] = field(default_factory=list)
    custom_parameters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStartEvent":
        """Parse from Twilio message."""
        start = message.get("start")
        if not isinstance(start, dict):
            raise ValueError("start event without start block")

        stream_sid = start.get("streamSid") or message.get("streamSid")
        if not isinstance(stream_sid, str) or not stream_sid:
            raise ValueError("start event without streamSid")

        return cls(
            stream_sid=stream_sid,
            call_sid=start.get("callSid", ""),
            account_sid=start.get("accountSid", ""),
            tracks=start.get("tracks", []),
            custom_parameters=start.get("customParameters", {}),
        )


@dataclass
class TwilioMediaEvent:
    """Parsed Twilio media event."""
    stream_sid: str
    track: str
    payload: bytes  # Decoded audio bytes (mu-law)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMediaEvent":
        """Parse from Twilio message."""
        media = message.get("media")
        if not isinstance(media, dict):
            raise ValueError("media event without media block")

        payload_b64 = media.get("payload")
        if not isinstance(payload_b64, str):
            raise ValueError("media event without payload")

        try:
            payload = base64.b64decode(payload_b64, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"Invalid media payload: {e}")

        return cls(
            stream_sid=message.get("streamSid", ""),
            track=media.get("track", "inbound"),
            payload=payload,
        )


def parse_twilio_message(raw_message: Any) -> tuple[TwilioEventType, Any]:
    """
    Parse a raw Twilio WebSocket message.

    Args:
        raw_message: Raw JSON string (or bytes) from Twilio

    Returns:
        Tuple of (event_type, parsed_event)

    Raises:
        ValueError: If message cannot be parsed
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        raise ValueError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise ValueError("Twilio message is not a JSON object")

    event_type_str = message.get("event", "")

    try:
        event_type = TwilioEventType(event_type_str)
    except ValueError:
        raise ValueError(f"Unknown event type: {event_type_str}")

    if event_type == TwilioEventType.START:
        return event_type, TwilioStartEvent.from_message(message)
    if event_type == TwilioEventType.MEDIA:
        return event_type, TwilioMediaEvent.from_message(message)
    return event_type, message


def create_media_message(stream_sid: str, audio_payload: bytes) -> str:
    """
    Create a Twilio media message.

    Args:
        stream_sid: The stream SID
        audio_payload: Raw mu-law audio bytes (should be 160 bytes for 20ms)

    Returns:
        JSON string to send to Twilio
    """
    payload_b64 = base64.b64encode(audio_payload).decode("utf-8")

    message = {
        "event": "media",
        "streamSid": stream_sid,
        "media": {
            "payload": payload_b64
        }
    }

    return encoder.encode(message).decode("utf-8")


def create_clear_message(stream_sid: str) -> str:
    """
    Create a Twilio clear message.

    This clears any buffered audio on Twilio's side, used for interruption.
    """
    message = {
        "event": "clear",
        "streamSid": stream_sid
    }

    return encoder.encode(message).decode("utf-8")


@dataclass
class CallState:
    """State for an active Twilio call."""
    stream_sid: str = ""
    call_sid: str = ""
    frames_sent: int = 0


class TelephonyChannel:
    """
    Outbound side of the Twilio media socket plus the call identity.

    Wraps the socket's send coroutine; the stream SID is unknown (empty)
    until the `start` event arrives.
    """

    def __init__(self, send_message: Callable[[str], Awaitable[None]]):
        self._send_message = send_message
        self.call_state: Optional[CallState] = None
        self._is_open = True

    @property
    def stream_sid(self) -> str:
        """Get the current stream SID."""
        return self.call_state.stream_sid if self.call_state else ""

    @property
    def call_sid(self) -> str:
        """Get the current call SID."""
        return self.call_state.call_sid if self.call_state else ""

    @property
    def is_open(self) -> bool:
        return self._is_open

    @property
    def frames_sent(self) -> int:
        return self.call_state.frames_sent if self.call_state else 0

    def handle_start(self, event: TwilioStartEvent) -> None:
        """Handle a start event and initialize call state."""
        self.call_state = CallState(
            stream_sid=event.stream_sid,
            call_sid=event.call_sid,
        )
        logger.info(
            "Call started",
            stream_sid=event.stream_sid,
            call_sid=event.call_sid,
            account_sid=event.account_sid,
            tracks=event.tracks,
            custom_parameters=event.custom_parameters,
        )

    def mark_closed(self) -> None:
        """Record that the media socket is gone; nothing is sent afterwards."""
        if self._is_open:
            self._is_open = False
            logger.info("Telephony channel closed", stream_sid=self.stream_sid, frames_sent=self.frames_sent)

    async def send_frame(self, frame: bytes) -> bool:
        """
        Send one frame of synthesized audio to the caller.

        Returns:
            True if the frame was handed to the socket
        """
        if not self._is_open or not self.call_state:
            return False

        await self._send_message(create_media_message(self.call_state.stream_sid, frame))
        self.call_state.frames_sent += 1
        return True

    async def clear(self) -> None:
        """Ask Twilio to drop any audio it has buffered but not yet played."""
        if not self._is_open or not self.call_state:
            return

        try:
            await self._send_message(create_clear_message(self.call_state.stream_sid))
            logger.info("Twilio clear sent", stream_sid=self.call_state.stream_sid)
        except Exception as e:
            logger.warning("Failed to send Twilio clear", error=str(e))
