"""
Audio framing utilities for the voice bridge.

Twilio and ElevenLabs both speak 8kHz mu-law (ElevenLabs `ulaw_8000`), so the
outbound path never transcodes: synthesized bytes are only re-packetized into
fixed 20ms frames before being sent to the call.
"""

from typing import List, Tuple

import numpy as np

TWILIO_SAMPLE_RATE = 8000
FRAME_DURATION_MS = 20
TWILIO_FRAME_SIZE = int(TWILIO_SAMPLE_RATE * FRAME_DURATION_MS / 1000)  # 160 bytes for 20ms
MIN_FRAMES_TO_COMMIT = 6  # >=120ms buffered before a turn may be committed


def _build_ulaw_table() -> np.ndarray:
    codes = np.bitwise_not(np.arange(256, dtype=np.uint8)).astype(np.int32)
    sign = codes & 0x80
    exponent = (codes >> 4) & 0x07
    mantissa = codes & 0x0F
    magnitude = (((mantissa << 3) + 0x84) << exponent) - 0x84
    return np.where(sign != 0, -magnitude, magnitude).astype(np.int16)


_ULAW_TO_LINEAR = _build_ulaw_table()


def slice_frames(
    chunk: bytes,
    carry: bytes = b"",
    frame_size: int = TWILIO_FRAME_SIZE,
) -> Tuple[List[bytes], bytes]:
    """
    Re-packetize audio into fixed-size frames.

    The carry from the previous call is prepended, every complete frame is
    returned, and the incomplete tail becomes the new carry. Feeding a stream
    through in arbitrary pieces yields the same frames as feeding it at once.

    Args:
        chunk: Newly received audio bytes
        carry: Leftover bytes returned by the previous call
        frame_size: Frame length in bytes (default: 160 for 20ms mu-law)

    Returns:
        Tuple of (frames, leftover) where len(leftover) < frame_size
    """
    if frame_size <= 0:
        raise ValueError(f"frame_size must be positive, got {frame_size}")

    buf = bytes(carry) + bytes(chunk)
    end = len(buf) - (len(buf) % frame_size)
    frames = [buf[off:off + frame_size] for off in range(0, end, frame_size)]
    return frames, buf[end:]


def frame_count(byte_count: int, frame_size: int = TWILIO_FRAME_SIZE) -> int:
    """Number of complete frames contained in `byte_count` bytes."""
    return max(0, byte_count) // frame_size


def ulaw_to_linear16(ulaw_bytes: bytes) -> np.ndarray:
    """Decode G.711 mu-law bytes to 16-bit PCM samples."""
    if not ulaw_bytes:
        return np.zeros(0, dtype=np.int16)
    codes = np.frombuffer(ulaw_bytes, dtype=np.uint8)
    return _ULAW_TO_LINEAR[codes]


def ulaw_rms(ulaw_bytes: bytes) -> int:
    """RMS energy of a mu-law frame on the 16-bit PCM scale."""
    samples = ulaw_to_linear16(ulaw_bytes)
    if samples.size == 0:
        return 0
    return int(np.sqrt(np.mean(samples.astype(np.float64) ** 2)))
