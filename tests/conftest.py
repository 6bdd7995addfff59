"""
Pytest configuration and fixtures.
"""

import asyncio
import base64
import json
import os
from unittest.mock import patch

import pytest


@pytest.fixture(autouse=True)
def mock_env_vars():
    """Mock environment variables for tests."""
    env_vars = {
        "PUBLIC_HOST": "test.ngrok.io",
        "PORT": "5050",
        "LOG_LEVEL": "DEBUG",
        "OPENAI_API_KEY": "test_openai_key",
        "ELEVEN_API_KEY": "test_eleven_key",
        "ELEVEN_VOICE_ID": "test_voice",
        "WELCOME_MESSAGE": "",
    }

    with patch.dict(os.environ, env_vars):
        # Clear config cache
        from src.voicebridge.config import get_config
        get_config.cache_clear()
        yield
        get_config.cache_clear()


class FakeSocket:
    """In-memory stand-in for a `websockets` client connection."""

    def __init__(self):
        self.sent = []
        self.closed = False
        self._incoming = asyncio.Queue()

    async def send(self, message):
        self.sent.append(message)

    async def close(self):
        self.closed = True
        self._incoming.put_nowait(None)

    def feed(self, message):
        self._incoming.put_nowait(message)

    def end(self):
        """Simulate the remote side closing the connection."""
        self._incoming.put_nowait(None)

    def sent_json(self):
        return [json.loads(m) for m in self.sent]

    def sent_types(self):
        return [m.get("type") for m in self.sent_json()]

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item


class FakeConnector:
    """Replacement for `websockets.connect` that hands out FakeSockets."""

    def __init__(self, error=None):
        self.calls = []
        self.sockets = []
        self._error = error

    async def __call__(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self._error is not None:
            raise self._error
        ws = FakeSocket()
        self.sockets.append(ws)
        return ws


@pytest.fixture
def fake_connector():
    return FakeConnector


@pytest.fixture
def make_config():
    """Build a Config with fast timings for tests."""
    from src.voicebridge.config import Config

    def _make(**overrides):
        values = dict(
            public_host="test.ngrok.io",
            openai_api_key="test_openai_key",
            eleven_api_key="test_eleven_key",
            eleven_voice_id="test_voice",
            welcome_message="",
            silence_ms=30,
            speak_retry_attempts=20,
            speak_retry_interval_ms=5,
            transport_open_timeout_s=1.0,
        )
        values.update(overrides)
        return Config(**values)

    return _make


@pytest.fixture
def sample_ulaw_audio():
    """Generate sample mu-law audio (silence)."""
    return b"\xff" * 160  # 20ms of silence


@pytest.fixture
def twilio_start_message():
    """Sample Twilio start message."""
    return json.dumps({
        "event": "start",
        "sequenceNumber": "1",
        "start": {
            "streamSid": "CA123",
            "callSid": "CA789012",
            "accountSid": "AC345678",
            "tracks": ["inbound"],
            "customParameters": {},
        },
        "streamSid": "CA123",
    })


def media_message(payload: bytes, stream_sid: str = "CA123") -> str:
    return json.dumps({
        "event": "media",
        "streamSid": stream_sid,
        "media": {
            "track": "inbound",
            "chunk": "1",
            "timestamp": "12345",
            "payload": base64.b64encode(payload).decode(),
        },
    })


@pytest.fixture
def make_media_message():
    return media_message


@pytest.fixture
def twilio_media_message(sample_ulaw_audio):
    """Sample Twilio media message."""
    return media_message(sample_ulaw_audio)


@pytest.fixture
def twilio_stop_message():
    """Sample Twilio stop message."""
    return json.dumps({
        "event": "stop",
        "streamSid": "CA123",
    })
