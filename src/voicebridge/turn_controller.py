"""
Turn-taking controller for one phone call.

Twilio (g711_ulaw 8kHz) -> OpenAI Realtime (text) -> ElevenLabs (ulaw_8000) -> Twilio

The controller owns the call's turn state, the accumulation window of caller
audio, the silence timer and the active speech session. Every handler runs to
completion on the event loop, so state changes are atomic with respect to other
events of the same call.

Key rules:
- Caller audio is only forwarded once the reasoning session is ready.
- A turn is committed after `silence_ms` without caller audio, and only if at
  least `min_frames_to_commit` frames are buffered.
- The window shrinks by the committed amount only when the backend
  acknowledges the commit.
- Caller audio while speaking is a barge-in: the speech session is invalidated
  (generation bump) before anything else happens.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import structlog

from src.voicebridge.audio import FRAME_DURATION_MS, frame_count, ulaw_rms
from src.voicebridge.config import Config, get_config
from src.voicebridge.reasoning import ReasoningChannel, ReasoningEvent, ReasoningEventType
from src.voicebridge.speech import SpeechSession, wait_until
from src.voicebridge.twilio_protocol import (
    TelephonyChannel,
    TwilioEventType,
    TwilioMediaEvent,
    TwilioStartEvent,
    parse_twilio_message,
)

logger = structlog.get_logger(__name__)


class TurnState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    COMMITTING = "committing"
    AWAITING_RESPONSE = "awaiting_response"
    SPEAKING = "speaking"
    ENDED = "ended"


_TRANSITIONS: dict[TurnState, frozenset[TurnState]] = {
    TurnState.IDLE: frozenset({TurnState.LISTENING, TurnState.ENDED}),
    TurnState.LISTENING: frozenset({TurnState.COMMITTING, TurnState.AWAITING_RESPONSE, TurnState.SPEAKING, TurnState.ENDED}),
    TurnState.COMMITTING: frozenset({TurnState.AWAITING_RESPONSE, TurnState.LISTENING, TurnState.SPEAKING, TurnState.ENDED}),
    TurnState.AWAITING_RESPONSE: frozenset({TurnState.SPEAKING, TurnState.LISTENING, TurnState.ENDED}),
    TurnState.SPEAKING: frozenset({TurnState.LISTENING, TurnState.SPEAKING, TurnState.ENDED}),
    TurnState.ENDED: frozenset(),
}


@dataclass
class AccumulationWindow:
    """Caller audio buffered at the backend since the last acknowledged commit."""
    buffered_bytes: int = 0
    collecting: bool = False
    pending_commit_bytes: int = 0

    @property
    def frames(self) -> int:
        return frame_count(self.buffered_bytes)

    def add(self, byte_count: int) -> None:
        self.collecting = True
        self.buffered_bytes += byte_count

    def mark_commit(self) -> None:
        """Remember how much audio the outstanding commit covers."""
        self.pending_commit_bytes = self.buffered_bytes

    def acknowledge(self) -> None:
        """
        Drop the committed audio.

        Audio that arrived after the commit request stays in the window. An
        acknowledgement without an outstanding commit (backend-decided turn)
        clears everything.
        """
        if self.pending_commit_bytes:
            self.buffered_bytes = max(0, self.buffered_bytes - self.pending_commit_bytes)
        else:
            self.buffered_bytes = 0
        self.pending_commit_bytes = 0
        self.collecting = self.buffered_bytes > 0

    def discard(self) -> None:
        self.buffered_bytes = 0
        self.pending_commit_bytes = 0
        self.collecting = False


class SilenceTimer:
    """
    A single debounced deferred action.

    Arming always cancels the pending action first. Once the delay elapses
    the action is detached from the timer, so rearming from inside (or while)
    it runs never cancels it.
    """

    def __init__(self) -> None:
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def arm(self, delay_s: float, action: Callable[[], Awaitable[None]]) -> None:
        self.cancel()
        self._task = asyncio.create_task(self._run(delay_s, action))

    def cancel(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _run(self, delay_s: float, action: Callable[[], Awaitable[None]]) -> None:
        await asyncio.sleep(delay_s)
        self._task = None
        try:
            await action()
        except Exception:
            logger.exception("Silence timer action failed")


class TurnController:
    """
    Per-call orchestrator.

    Interface is compatible with `server/app.py`:
    - `handle_message(raw_message)`
    - `stop()`
    """

    def __init__(
        self,
        send_message: Callable[[str], Awaitable[None]],
        *,
        config: Optional[Config] = None,
        close_call: Optional[Callable[[], Awaitable[None]]] = None,
        reasoning_factory: Optional[Callable[..., ReasoningChannel]] = None,
        speech_factory: Optional[Callable[..., SpeechSession]] = None,
        speech_connect: Optional[Callable[..., Any]] = None,
    ):
        self.config = config or get_config()
        self._close_call = close_call
        self._speech_factory = speech_factory or SpeechSession
        self._speech_connect = speech_connect

        self._telephony = TelephonyChannel(send_message)
        self._reasoning = (reasoning_factory or ReasoningChannel)(
            on_event=self.handle_reasoning_event,
            config=self.config,
        )

        self._state = TurnState.IDLE
        self._window = AccumulationWindow()
        self._silence_timer = SilenceTimer()
        self._speech: Optional[SpeechSession] = None
        self._generation = 0
        self._welcome_task: Optional[asyncio.Task] = None
        self._welcomed = False
        self._dropped_frames = 0

        # Per-call counters, folded into server metrics at call end
        self.turns_committed = 0
        self.barge_ins = 0
        self.utterances = 0

        self._handlers: dict[TwilioEventType, Callable[[Any], Awaitable[None]]] = {
            TwilioEventType.START: self._on_start,
            TwilioEventType.MEDIA: self._on_media,
            TwilioEventType.STOP: self._on_stop,
        }
        self._reasoning_handlers: dict[ReasoningEventType, Callable[[ReasoningEvent], Awaitable[None]]] = {
            ReasoningEventType.READY: self._on_reasoning_ready,
            ReasoningEventType.COMMITTED: self._on_committed,
            ReasoningEventType.RESPONSE_COMPLETED: self._on_response_completed,
            ReasoningEventType.ERROR: self._on_reasoning_error,
            ReasoningEventType.CLOSED: self._on_reasoning_closed,
        }

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def window(self) -> AccumulationWindow:
        return self._window

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def speech(self) -> Optional[SpeechSession]:
        return self._speech

    @property
    def telephony(self) -> TelephonyChannel:
        return self._telephony

    @property
    def reasoning(self) -> ReasoningChannel:
        return self._reasoning

    @property
    def stream_sid(self) -> str:
        return self._telephony.stream_sid

    @property
    def call_sid(self) -> str:
        return self._telephony.call_sid

    @property
    def silence_timer(self) -> SilenceTimer:
        return self._silence_timer

    def is_current_generation(self, generation: int) -> bool:
        return generation == self._generation

    def _transition(self, new_state: TurnState, *, reason: str) -> None:
        old_state = self._state
        if new_state == old_state and new_state != TurnState.SPEAKING:
            return
        if new_state not in _TRANSITIONS[old_state]:
            logger.warning(
                "Illegal turn transition ignored",
                from_state=old_state.value,
                to_state=new_state.value,
                reason=reason,
            )
            return
        self._state = new_state
        logger.debug(
            "Turn state",
            from_state=old_state.value,
            to_state=new_state.value,
            reason=reason,
            stream_sid=self.stream_sid or None,
        )

    # Twilio events

    async def handle_message(self, raw_message: Any) -> None:
        try:
            event_type, event = parse_twilio_message(raw_message)
        except ValueError as e:
            logger.warning("Failed to parse Twilio message", error=str(e))
            return

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.debug("Twilio event ignored", event_type=event_type.value)
            return
        await handler(event)

    async def _on_start(self, event: TwilioStartEvent) -> None:
        if self._state != TurnState.IDLE:
            logger.warning("Duplicate start event ignored", stream_sid=event.stream_sid)
            return

        self._telephony.handle_start(event)
        self._transition(TurnState.LISTENING, reason="call_start")

        if not await self._reasoning.connect():
            logger.error("Reasoning session unavailable; ending call", stream_sid=self.stream_sid)
            await self._end_call(reason="reasoning_connect_failed")
            return

        self._schedule_welcome()

    async def _on_media(self, event: TwilioMediaEvent) -> None:
        if self._state in (TurnState.IDLE, TurnState.ENDED) or not event.payload:
            return

        voiced = self._is_voiced(event.payload)

        if voiced and self._speech is not None:
            await self._barge_in()

        if not self._reasoning.is_ready:
            self._dropped_frames += 1
            if self._dropped_frames == 1:
                logger.warning("Reasoning session not ready; dropping caller audio", stream_sid=self.stream_sid)
            return

        if not await self._reasoning.append_audio(event.payload):
            return
        self._window.add(len(event.payload))

        if voiced and not self.config.server_turn_detection:
            self._arm_silence_timer()

    def _is_voiced(self, payload: bytes) -> bool:
        threshold = self.config.speech_rms_threshold
        if threshold <= 0:
            return True
        return ulaw_rms(payload) >= threshold

    async def _on_stop(self, event: Any) -> None:
        logger.info("Stream stopped", stream_sid=self.stream_sid)
        await self.stop()

    # Silence timer / commit

    def _arm_silence_timer(self) -> None:
        self._silence_timer.arm(self.config.silence_ms / 1000.0, self._on_silence)

    async def _on_silence(self) -> None:
        if self._state != TurnState.LISTENING:
            logger.debug("Silence timeout deferred", state=self._state.value, frames=self._window.frames)
            return

        if self._window.frames < self.config.min_frames_to_commit:
            logger.debug("Discarding short window", frames=self._window.frames)
            self._window.discard()
            await self._reasoning.clear_input()
            return

        self._transition(TurnState.COMMITTING, reason="silence")
        committed_bytes = self._window.buffered_bytes
        self._window.mark_commit()
        committed = await self._reasoning.commit(committed_bytes)
        if self._state != TurnState.COMMITTING:
            # The response (or call end) overtook the commit round trip.
            return
        if committed:
            self.turns_committed += 1
            logger.info(
                "Turn committed",
                stream_sid=self.stream_sid,
                frames=frame_count(committed_bytes),
                duration_ms=frame_count(committed_bytes) * FRAME_DURATION_MS,
            )
            self._transition(TurnState.AWAITING_RESPONSE, reason="commit")
        else:
            self._window.pending_commit_bytes = 0
            self._transition(TurnState.LISTENING, reason="commit_failed")

    def _resume_listening(self, *, reason: str) -> None:
        self._transition(TurnState.LISTENING, reason=reason)
        if (
            not self.config.server_turn_detection
            and self._window.frames >= self.config.min_frames_to_commit
            and not self._silence_timer.pending
        ):
            self._arm_silence_timer()

    # Reasoning events

    async def handle_reasoning_event(self, event: ReasoningEvent) -> None:
        if self._state == TurnState.ENDED:
            return
        handler = self._reasoning_handlers.get(event.type)
        if handler is not None:
            await handler(event)

    async def _on_reasoning_ready(self, event: ReasoningEvent) -> None:
        self._schedule_welcome()

    async def _on_committed(self, event: ReasoningEvent) -> None:
        if not self.config.server_turn_detection and not self._window.pending_commit_bytes:
            # Manual mode: only our own commits close a turn.
            logger.warning("Unrequested commit acknowledgement ignored", item_id=event.details.get("item_id"))
            return
        self._window.acknowledge()
        logger.debug("Commit acknowledged", remaining_frames=self._window.frames)

    async def _on_response_completed(self, event: ReasoningEvent) -> None:
        text = event.text.strip()
        if not text:
            self._resume_listening(reason="empty_response")
            return
        self._start_speech(text)

    async def _on_reasoning_error(self, event: ReasoningEvent) -> None:
        if self._state in (TurnState.COMMITTING, TurnState.AWAITING_RESPONSE):
            # The requested response will not arrive.
            self._resume_listening(reason="reasoning_error")

    async def _on_reasoning_closed(self, event: ReasoningEvent) -> None:
        logger.error("Reasoning session lost; ending call", stream_sid=self.stream_sid)
        await self._end_call(reason="reasoning_closed")

    # Speech

    def _start_speech(self, text: str) -> SpeechSession:
        """Replace any active speech session with a new one for `text`."""
        if self._speech is not None:
            self._speech.cancel(reason="replaced")

        self._generation += 1
        session = self._speech_factory(
            text,
            self._generation,
            telephony=self._telephony,
            is_current_generation=self.is_current_generation,
            reasoning_ready=lambda: self._reasoning.is_ready,
            config=self.config,
            connect=self._speech_connect,
            on_finished=self._on_speech_finished,
        )
        self._speech = session
        self.utterances += 1
        self._transition(TurnState.SPEAKING, reason="response")
        session.start()
        return session

    async def _on_speech_finished(self, session: SpeechSession) -> None:
        if self._speech is not session or not self.is_current_generation(session.generation):
            return
        self._speech = None
        if self._state == TurnState.SPEAKING:
            self._resume_listening(reason=f"speech_{session.end_reason}")

    async def _barge_in(self) -> None:
        session = self._speech
        if session is None:
            return

        logger.info(
            "Barge-in",
            stream_sid=self.stream_sid,
            generation=session.generation,
            frames_forwarded=session.frames_forwarded,
        )

        # Synchronous part: nothing from the old session may be forwarded after this.
        self.barge_ins += 1
        self._generation += 1
        session.cancel(reason="barge_in")
        self._speech = None
        self._window.discard()
        self._transition(TurnState.LISTENING, reason="barge_in")

        await self._telephony.clear()
        await self._reasoning.clear_input()

    def _schedule_welcome(self) -> None:
        if self._welcomed or not self.config.welcome_message.strip():
            return
        if self._welcome_task and not self._welcome_task.done():
            return
        self._welcome_task = asyncio.create_task(self._welcome())

    async def _welcome(self) -> None:
        ready = await wait_until(
            lambda: self._reasoning.is_ready and bool(self.stream_sid) and self._telephony.is_open,
            attempts=self.config.speak_retry_attempts,
            interval_s=self.config.speak_retry_interval_ms / 1000.0,
        )
        if not ready or self._welcomed or self._state != TurnState.LISTENING:
            return
        self._welcomed = True
        self._start_speech(self.config.welcome_message)

    # Teardown

    async def _end_call(self, *, reason: str) -> None:
        await self.stop()
        if self._close_call is not None:
            try:
                await self._close_call()
            except Exception as e:
                logger.warning("Failed to close media socket", reason=reason, error=str(e))

    async def stop(self) -> None:
        """Release every per-call resource. Idempotent."""
        if self._state == TurnState.ENDED:
            return
        self._transition(TurnState.ENDED, reason="call_end")

        self._silence_timer.cancel()
        self._telephony.mark_closed()

        pending: list[asyncio.Task] = []
        if self._welcome_task and not self._welcome_task.done():
            self._welcome_task.cancel()
            pending.append(self._welcome_task)

        session = self._speech
        self._speech = None
        self._generation += 1
        if session is not None:
            session.cancel(reason="call_end")
            if session.task is not None and session.task is not asyncio.current_task():
                pending.append(session.task)

        await self._reasoning.close()

        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        logger.info("Call resources released", stream_sid=self.stream_sid or None)
