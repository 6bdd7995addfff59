"""
Twilio call bridge: OpenAI Realtime reasons, ElevenLabs speaks.

The public names resolve on first access so that `src.voicebridge.audio` and
the protocol codecs import without pulling in dotenv or the websocket stack.
"""

from __future__ import annotations

from importlib import import_module
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from src.voicebridge.audio import slice_frames
    from src.voicebridge.config import Config, ConfigError, get_config
    from src.voicebridge.turn_controller import TurnController, TurnState

_EXPORTS = {
    "Config": "src.voicebridge.config",
    "ConfigError": "src.voicebridge.config",
    "get_config": "src.voicebridge.config",
    "TurnController": "src.voicebridge.turn_controller",
    "TurnState": "src.voicebridge.turn_controller",
    "slice_frames": "src.voicebridge.audio",
}

__all__ = list(_EXPORTS)


def __getattr__(name: str) -> Any:
    module = _EXPORTS.get(name)
    if module is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    return getattr(import_module(module), name)
