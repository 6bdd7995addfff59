"""
Configuration management for the voice bridge.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
import structlog

from src.voicebridge.audio import MIN_FRAMES_TO_COMMIT

load_dotenv()

logger = structlog.get_logger(__name__)

DEFAULT_SYSTEM_MESSAGE = (
    "You are Sam, our virtual sales rep. Speak in short, natural sentences. "
    "Ask one question, then stop and listen. If the caller interrupts, stop speaking immediately."
)
DEFAULT_WELCOME_MESSAGE = "Hi, this is our virtual sales rep. How can I help today?"

TURN_MODES = ("manual", "server")


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str = ""
    port: int = 5050
    log_level: str = "INFO"

    # OpenAI Realtime (reasoning, text out)
    openai_api_key: str = ""
    openai_realtime_model: str = "gpt-4o-realtime-preview-2024-10-01"
    system_message: str = DEFAULT_SYSTEM_MESSAGE
    welcome_message: str = DEFAULT_WELCOME_MESSAGE
    # "manual": silence timer commits and requests responses explicitly.
    # "server": backend VAD decides turn boundaries and creates responses itself.
    reasoning_turn_mode: str = "manual"
    vad_threshold: float = 0.55
    vad_prefix_padding_ms: int = 200
    max_response_output_tokens: int = 120

    # ElevenLabs (speech synthesis)
    eleven_api_key: str = ""
    eleven_voice_id: str = ""
    eleven_model_id: str = "eleven_turbo_v2"
    eleven_stability: float = 0.5
    eleven_similarity_boost: float = 0.75
    eleven_style: float = 0.0
    eleven_use_speaker_boost: bool = True

    # Turn taking
    silence_ms: int = 400
    min_frames_to_commit: int = MIN_FRAMES_TO_COMMIT
    speech_rms_threshold: int = 0  # 0 disables the energy gate

    # Transports
    transport_open_timeout_s: float = 10.0
    speak_retry_attempts: int = 20
    speak_retry_interval_ms: int = 100

    @property
    def ws_path(self) -> str:
        return "/media-stream"

    def ws_url(self, host: str = "") -> str:
        """Get the WebSocket URL Twilio should stream to."""
        return f"wss://{host or self.public_host}{self.ws_path}"

    @property
    def server_turn_detection(self) -> bool:
        return self.reasoning_turn_mode == "server"

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.openai_api_key:
            missing.append("OPENAI_API_KEY")
        if not self.openai_realtime_model:
            missing.append("OPENAI_REALTIME_MODEL")
        if not self.eleven_api_key:
            missing.append("ELEVEN_API_KEY")
        if not self.eleven_voice_id:
            missing.append("ELEVEN_VOICE_ID")

        if self.reasoning_turn_mode not in TURN_MODES:
            raise ConfigError(
                f"Invalid REASONING_TURN_MODE '{self.reasoning_turn_mode}'. Expected 'manual' or 'server'."
            )
        if self.min_frames_to_commit < 1:
            raise ConfigError("MIN_FRAMES_TO_COMMIT must be at least 1")
        if self.silence_ms <= 0:
            raise ConfigError("SILENCE_MS must be positive")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host or "(request host)",
            port=self.port,
            log_level=self.log_level,
            openai_realtime_model=self.openai_realtime_model,
            reasoning_turn_mode=self.reasoning_turn_mode,
            eleven_model_id=self.eleven_model_id,
            eleven_voice_id=self.eleven_voice_id,
            silence_ms=self.silence_ms,
            min_frames_to_commit=self.min_frames_to_commit,
            speech_rms_threshold=self.speech_rms_threshold,
            welcome_enabled=bool(self.welcome_message),
            openai_key_set=bool(self.openai_api_key),
            eleven_key_set=bool(self.eleven_api_key),
        )
        if self.speech_rms_threshold <= 0:
            # Twilio streams audio even while the caller is quiet.
            logger.warning(
                "Speech energy gate disabled; line noise will hold turns open and trigger barge-in",
                hint="set SPEECH_RMS_THRESHOLD (around 600) for production calls",
            )


def _get_bool(key: str, default: bool = False) -> bool:
    """Get a boolean from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    return Config(
        # Server
        public_host=os.getenv("PUBLIC_HOST", ""),
        port=_get_int("PORT", 5050),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # OpenAI Realtime
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_realtime_model=os.getenv("OPENAI_REALTIME_MODEL", "gpt-4o-realtime-preview-2024-10-01"),
        system_message=os.getenv("SYSTEM_MESSAGE", DEFAULT_SYSTEM_MESSAGE),
        welcome_message=os.getenv("WELCOME_MESSAGE", DEFAULT_WELCOME_MESSAGE),
        reasoning_turn_mode=os.getenv("REASONING_TURN_MODE", "manual").strip().lower(),
        vad_threshold=_get_float("VAD_THRESHOLD", 0.55),
        vad_prefix_padding_ms=_get_int("VAD_PREFIX_PADDING_MS", 200),
        max_response_output_tokens=_get_int("MAX_RESPONSE_OUTPUT_TOKENS", 120),

        # ElevenLabs
        eleven_api_key=os.getenv("ELEVEN_API_KEY", ""),
        eleven_voice_id=os.getenv("ELEVEN_VOICE_ID", ""),
        eleven_model_id=os.getenv("ELEVEN_MODEL_ID", "") or "eleven_turbo_v2",
        eleven_stability=_get_float("ELEVEN_STABILITY", 0.5),
        eleven_similarity_boost=_get_float("ELEVEN_SIMILARITY_BOOST", 0.75),
        eleven_style=_get_float("ELEVEN_STYLE", 0.0),
        eleven_use_speaker_boost=_get_bool("ELEVEN_USE_SPEAKER_BOOST", True),

        # Turn taking
        silence_ms=_get_int("SILENCE_MS", 400),
        min_frames_to_commit=_get_int("MIN_FRAMES_TO_COMMIT", MIN_FRAMES_TO_COMMIT),
        speech_rms_threshold=_get_int("SPEECH_RMS_THRESHOLD", 0),

        # Transports
        transport_open_timeout_s=_get_float("TRANSPORT_OPEN_TIMEOUT_S", 10.0),
        speak_retry_attempts=_get_int("SPEAK_RETRY_ATTEMPTS", 20),
        speak_retry_interval_ms=_get_int("SPEAK_RETRY_INTERVAL_MS", 100),
    )


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
