"""
Tests for the per-call turn-taking controller.
"""

import asyncio
import functools
import json
from unittest.mock import AsyncMock

import pytest

from src.voicebridge.reasoning import ReasoningChannel
from src.voicebridge.turn_controller import (
    AccumulationWindow,
    SilenceTimer,
    TurnController,
    TurnState,
)


class CallHarness:
    """A TurnController wired to fake Twilio, OpenAI and ElevenLabs transports."""

    def __init__(self, config, connector_cls, reasoning_error=None):
        self.send_message = AsyncMock()
        self.close_call = AsyncMock()
        self.reasoning_connector = connector_cls(error=reasoning_error)
        self.speech_connector = connector_cls()
        self.controller = TurnController(
            self.send_message,
            config=config,
            close_call=self.close_call,
            reasoning_factory=functools.partial(ReasoningChannel, connect=self.reasoning_connector),
            speech_connect=self.speech_connector,
        )

    @property
    def reasoning_ws(self):
        return self.reasoning_connector.sockets[0]

    async def start(self, start_message, ready=True):
        await self.controller.handle_message(start_message)
        if ready:
            await self.backend({"type": "session.updated"})

    async def backend(self, event):
        await self.controller.reasoning.handle_raw(json.dumps(event))

    async def respond(self, text):
        await self.backend({
            "type": "response.done",
            "response": {"output": [{"type": "output_text", "text": text}]},
        })

    async def caller_audio(self, make_media_message, frames, payload=b"\x10" * 160):
        for _ in range(frames):
            await self.controller.handle_message(make_media_message(payload))

    async def speech_socket(self, index=0, timeout=1.0):
        async def _poll():
            while len(self.speech_connector.sockets) <= index:
                await asyncio.sleep(0.001)
            return self.speech_connector.sockets[index]
        return await asyncio.wait_for(_poll(), timeout)

    def twilio_messages(self, event=None):
        messages = [json.loads(call.args[0]) for call in self.send_message.await_args_list]
        if event is not None:
            messages = [m for m in messages if m.get("event") == event]
        return messages

    def reasoning_types(self):
        return self.reasoning_ws.sent_types()


@pytest.fixture
def harness(make_config, fake_connector):
    def _make(**overrides):
        return CallHarness(make_config(**overrides), fake_connector)

    return _make


async def _settle(seconds=0.01):
    await asyncio.sleep(seconds)


class TestTurnFlow:
    """Tests for listening, committing and responding."""

    @pytest.mark.asyncio
    async def test_end_to_end_turn(self, harness, twilio_start_message, make_media_message):
        h = harness()
        c = h.controller

        await h.start(twilio_start_message)
        assert c.state == TurnState.LISTENING
        assert c.stream_sid == "CA123"

        await h.caller_audio(make_media_message, 10)
        assert h.reasoning_types().count("input_audio_buffer.append") == 10
        assert c.window.frames == 10

        await _settle(0.1)

        types = h.reasoning_types()
        assert types.count("input_audio_buffer.commit") == 1
        assert types.count("response.create") == 1
        assert types.index("input_audio_buffer.commit") < types.index("response.create")
        assert c.state == TurnState.AWAITING_RESPONSE

        await h.backend({"type": "input_audio_buffer.committed", "item_id": "it_1"})
        assert c.window.buffered_bytes == 0

        await h.respond("Hello there")
        assert c.state == TurnState.SPEAKING
        session = c.speech
        assert session is not None
        assert session.text == "Hello there"

        ws = await h.speech_socket()
        assert ws.sent_json()[1]["text"] == "Hello there "
        ws.feed(b"\x01" * 400)
        ws.feed(b"\x02" * 240)
        ws.feed(json.dumps({"isFinal": True}))
        await asyncio.wait_for(session.task, 1.0)

        media = h.twilio_messages("media")
        assert len(media) == 4
        assert {m["streamSid"] for m in media} == {"CA123"}
        assert len(h.speech_connector.sockets) == 1
        assert c.state == TurnState.LISTENING
        assert c.speech is None
        assert c.turns_committed == 1
        assert c.utterances == 1
        assert c.barge_ins == 0

        await c.stop()

    @pytest.mark.asyncio
    async def test_short_window_is_discarded(self, harness, twilio_start_message, make_media_message):
        h = harness()
        c = h.controller
        await h.start(twilio_start_message)

        await h.caller_audio(make_media_message, 5)
        await _settle(0.1)

        types = h.reasoning_types()
        assert "input_audio_buffer.commit" not in types
        assert "response.create" not in types
        assert types[-1] == "input_audio_buffer.clear"
        assert c.window.buffered_bytes == 0
        assert c.state == TurnState.LISTENING

        await c.stop()

    @pytest.mark.asyncio
    async def test_silence_timer_is_debounced(self, harness, twilio_start_message, make_media_message):
        h = harness(silence_ms=40)
        c = h.controller
        await h.start(twilio_start_message)

        for _ in range(8):
            await h.caller_audio(make_media_message, 1)
            await asyncio.sleep(0.01)

        assert "input_audio_buffer.commit" not in h.reasoning_types()
        assert c.silence_timer.pending

        await _settle(0.12)

        assert h.reasoning_types().count("input_audio_buffer.commit") == 1

        await c.stop()

    @pytest.mark.asyncio
    async def test_audio_after_commit_request_is_preserved(
        self, harness, twilio_start_message, make_media_message
    ):
        h = harness()
        c = h.controller
        await h.start(twilio_start_message)

        await h.caller_audio(make_media_message, 10)
        await _settle(0.1)
        assert c.state == TurnState.AWAITING_RESPONSE
        assert c.window.pending_commit_bytes == 1600

        await h.caller_audio(make_media_message, 2)
        assert c.window.buffered_bytes == 1920

        await h.backend({"type": "input_audio_buffer.committed"})

        assert c.window.buffered_bytes == 320
        assert c.window.pending_commit_bytes == 0
        assert c.window.collecting is True

        await c.stop()

    @pytest.mark.asyncio
    async def test_unrequested_ack_does_not_swallow_manual_turn(
        self, harness, twilio_start_message, make_media_message
    ):
        h = harness()
        c = h.controller
        await h.start(twilio_start_message)

        await h.caller_audio(make_media_message, 10)
        await h.backend({"type": "input_audio_buffer.committed", "item_id": "it_backend"})
        assert c.window.buffered_bytes == 1600

        await _settle(0.1)

        types = h.reasoning_types()
        assert types.count("input_audio_buffer.commit") == 1
        assert types.count("response.create") == 1
        assert "input_audio_buffer.clear" not in types
        assert c.state == TurnState.AWAITING_RESPONSE

        await c.stop()

    @pytest.mark.asyncio
    async def test_audio_dropped_until_reasoning_ready(
        self, harness, twilio_start_message, make_media_message
    ):
        h = harness()
        c = h.controller
        await h.start(twilio_start_message, ready=False)

        await h.caller_audio(make_media_message, 3)

        assert h.reasoning_types() == ["session.update"]
        assert c.window.buffered_bytes == 0
        assert not c.silence_timer.pending

        await c.stop()

    @pytest.mark.asyncio
    async def test_media_before_start_is_ignored(self, harness, make_media_message):
        h = harness()
        c = h.controller

        await h.caller_audio(make_media_message, 3)

        assert c.state == TurnState.IDLE
        assert h.reasoning_connector.calls == []

    @pytest.mark.asyncio
    async def test_malformed_messages_are_dropped(self, harness, twilio_start_message):
        h = harness()
        c = h.controller
        await h.start(twilio_start_message)

        await c.handle_message("not json")
        await c.handle_message(json.dumps({"event": "media", "media": {"payload": "%%%"}}))
        await c.handle_message(json.dumps({"event": "mark", "mark": {"name": "m1"}}))

        assert c.state == TurnState.LISTENING

        await c.stop()

    @pytest.mark.asyncio
    async def test_duplicate_start_ignored(self, harness, twilio_start_message):
        h = harness()
        c = h.controller
        await h.start(twilio_start_message)

        await c.handle_message(twilio_start_message)

        assert len(h.reasoning_connector.calls) == 1

        await c.stop()

    @pytest.mark.asyncio
    async def test_empty_response_returns_to_listening(
        self, harness, twilio_start_message, make_media_message
    ):
        h = harness()
        c = h.controller
        await h.start(twilio_start_message)
        await h.caller_audio(make_media_message, 10)
        await _settle(0.1)

        await h.respond("   ")

        assert c.state == TurnState.LISTENING
        assert c.speech is None

        await c.stop()

    @pytest.mark.asyncio
    async def test_reasoning_error_returns_to_listening(
        self, harness, twilio_start_message, make_media_message
    ):
        h = harness()
        c = h.controller
        await h.start(twilio_start_message)
        await h.caller_audio(make_media_message, 10)
        await _settle(0.1)
        assert c.state == TurnState.AWAITING_RESPONSE

        await h.backend({"type": "error", "error": {"message": "rate limited"}})

        assert c.state == TurnState.LISTENING

        await c.stop()

    @pytest.mark.asyncio
    async def test_server_turn_mode_never_commits_locally(
        self, harness, twilio_start_message, make_media_message
    ):
        h = harness(reasoning_turn_mode="server")
        c = h.controller
        await h.start(twilio_start_message)

        await h.caller_audio(make_media_message, 10)
        await _settle(0.1)

        assert not c.silence_timer.pending
        assert "input_audio_buffer.commit" not in h.reasoning_types()
        assert "response.create" not in h.reasoning_types()

        await h.backend({"type": "input_audio_buffer.committed"})
        assert c.window.buffered_bytes == 0

        await h.respond("Sure thing")
        assert c.state == TurnState.SPEAKING

        await c.stop()


class TestSpeaking:
    """Tests for speech sessions and barge-in."""

    @pytest.mark.asyncio
    async def test_barge_in_stops_forwarding(self, harness, twilio_start_message, make_media_message):
        h = harness()
        c = h.controller
        await h.start(twilio_start_message)

        await h.respond("A long answer")
        old_session = c.speech
        old_generation = c.generation
        ws = await h.speech_socket()
        ws.feed(b"\x01" * 250)
        await _settle()
        assert len(h.twilio_messages("media")) == 1
        assert old_session.carry == b"\x01" * 90

        await h.caller_audio(make_media_message, 1)

        assert c.state == TurnState.LISTENING
        assert c.speech is None
        assert c.generation > old_generation
        assert old_session.is_current is False
        assert old_session.carry == b""
        assert len(h.twilio_messages("clear")) == 1
        assert c.window.buffered_bytes == 160
        assert c.barge_ins == 1

        types = h.reasoning_types()
        assert types[-2:] == ["input_audio_buffer.clear", "input_audio_buffer.append"]

        ws.feed(b"\x01" * 800)
        await asyncio.gather(old_session.task, return_exceptions=True)

        assert len(h.twilio_messages("media")) == 1
        assert old_session.end_reason == "barge_in"
        assert ws.closed is True

        await c.stop()

    @pytest.mark.asyncio
    async def test_new_response_replaces_active_speech(self, harness, twilio_start_message):
        h = harness()
        c = h.controller
        await h.start(twilio_start_message)

        await h.respond("First answer")
        first = c.speech
        await h.respond("Second answer")
        second = c.speech

        assert first is not second
        assert first.is_current is False
        assert second.is_current is True
        assert c.state == TurnState.SPEAKING

        await asyncio.gather(first.task, return_exceptions=True)
        assert first.end_reason == "replaced"
        assert c.state == TurnState.SPEAKING
        assert c.speech is second

        await c.stop()

    @pytest.mark.asyncio
    async def test_energy_gate_ignores_silence(self, harness, twilio_start_message, make_media_message):
        h = harness(speech_rms_threshold=600)
        c = h.controller
        await h.start(twilio_start_message)

        await h.caller_audio(make_media_message, 10, payload=b"\xff" * 160)
        assert not c.silence_timer.pending
        assert c.window.frames == 10

        await h.respond("Hello")
        session = c.speech

        await h.caller_audio(make_media_message, 3, payload=b"\xff" * 160)
        assert c.speech is session
        assert c.state == TurnState.SPEAKING

        await h.caller_audio(make_media_message, 1, payload=b"\x80" * 160)
        assert c.speech is None
        assert session.is_current is False
        assert c.state == TurnState.LISTENING

        await c.stop()

    @pytest.mark.asyncio
    async def test_welcome_is_spoken_once(self, harness, twilio_start_message):
        h = harness(welcome_message="Hi, how can I help?")
        c = h.controller
        await h.start(twilio_start_message)
        await h.backend({"type": "session.updated"})

        ws = await h.speech_socket()
        await _settle(0.05)

        assert ws.sent_json()[1]["text"] == "Hi, how can I help? "
        assert len(h.speech_connector.sockets) == 1
        assert c.state == TurnState.SPEAKING

        await c.stop()

    @pytest.mark.asyncio
    async def test_welcome_skipped_when_never_ready(self, harness, twilio_start_message):
        h = harness(welcome_message="Hello!", speak_retry_attempts=2, speak_retry_interval_ms=1)
        c = h.controller
        await h.start(twilio_start_message, ready=False)

        await _settle(0.05)

        assert h.speech_connector.calls == []
        assert c.state == TurnState.LISTENING

        await c.stop()


class TestCallEnd:
    """Tests for teardown."""

    @pytest.mark.asyncio
    async def test_stop_event_releases_everything(
        self, harness, twilio_start_message, twilio_stop_message, make_media_message
    ):
        h = harness()
        c = h.controller
        await h.start(twilio_start_message)
        await h.respond("Speaking now")
        session = c.speech
        await h.speech_socket()

        await c.handle_message(twilio_stop_message)

        assert c.state == TurnState.ENDED
        assert not c.silence_timer.pending
        assert c.speech is None
        assert session.is_current is False
        assert session.task.done()
        assert h.reasoning_ws.closed is True
        assert c.telephony.is_open is False

        await h.caller_audio(make_media_message, 2)
        assert h.reasoning_types().count("input_audio_buffer.append") == 0

        await c.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_silence_timer(
        self, harness, twilio_start_message, make_media_message
    ):
        h = harness(silence_ms=50)
        c = h.controller
        await h.start(twilio_start_message)
        await h.caller_audio(make_media_message, 10)
        assert c.silence_timer.pending

        await c.stop()
        await _settle(0.1)

        assert "input_audio_buffer.commit" not in h.reasoning_types()

    @pytest.mark.asyncio
    async def test_reasoning_loss_ends_call(self, harness, twilio_start_message):
        h = harness()
        c = h.controller
        await h.start(twilio_start_message)

        h.reasoning_ws.end()
        await _settle(0.05)

        assert c.state == TurnState.ENDED
        h.close_call.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_reasoning_connect_failure_ends_call(
        self, make_config, fake_connector, twilio_start_message
    ):
        h = CallHarness(make_config(), fake_connector, reasoning_error=OSError("unreachable"))
        c = h.controller

        await c.handle_message(twilio_start_message)

        assert c.state == TurnState.ENDED
        h.close_call.assert_awaited_once()


class TestAccumulationWindow:
    """Tests for window bookkeeping."""

    def test_acknowledge_subtracts_snapshot(self):
        window = AccumulationWindow()
        window.add(1600)
        window.mark_commit()
        window.add(320)

        window.acknowledge()

        assert window.buffered_bytes == 320
        assert window.collecting is True

    def test_acknowledge_without_snapshot_resets(self):
        window = AccumulationWindow()
        window.add(800)

        window.acknowledge()

        assert window.buffered_bytes == 0
        assert window.collecting is False

    def test_discard(self):
        window = AccumulationWindow()
        window.add(480)
        window.mark_commit()

        window.discard()

        assert window.buffered_bytes == 0
        assert window.pending_commit_bytes == 0
        assert window.frames == 0


class TestSilenceTimer:
    """Tests for the debounced timer."""

    @pytest.mark.asyncio
    async def test_rearm_replaces_pending_action(self):
        timer = SilenceTimer()
        action = AsyncMock()

        timer.arm(0.02, action)
        timer.arm(0.02, action)
        await asyncio.sleep(0.06)

        action.assert_awaited_once()
        assert not timer.pending

    @pytest.mark.asyncio
    async def test_cancel(self):
        timer = SilenceTimer()
        action = AsyncMock()

        timer.arm(0.02, action)
        timer.cancel()
        await asyncio.sleep(0.04)

        action.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rearm_during_action_does_not_cancel_it(self):
        timer = SilenceTimer()
        gate = asyncio.Event()
        finished = []

        async def slow_action():
            await gate.wait()
            finished.append(True)

        timer.arm(0.01, slow_action)
        await asyncio.sleep(0.03)
        assert not timer.pending

        timer.arm(1.0, AsyncMock())
        gate.set()
        await asyncio.sleep(0.01)

        assert finished == [True]
        timer.cancel()
