"""Binary transcoding helpers for base64 payloads and PCM16 audio."""

from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import Final, Sequence

import numpy as np

PCM_SCALE: Final[float] = 32768.0
REALTIME_INPUT_RATE: Final[int] = 16000


@dataclass(slots=True)
class AudioBuffer:
    """Playback-ready float samples laid out as ``(channels, frames)``."""

    samples: np.ndarray
    sample_rate: int

    @property
    def channels(self) -> int:
        return int(self.samples.shape[0])

    @property
    def frames(self) -> int:
        return int(self.samples.shape[1])

    @property
    def duration(self) -> float:
        """Length of the buffer in seconds."""

        if self.sample_rate <= 0:
            return 0.0
        return self.frames / float(self.sample_rate)

    def channel(self, index: int) -> np.ndarray:
        return self.samples[index]


def encode_base64(data: bytes) -> str:
    return base64.b64encode(bytes(data)).decode("ascii")


def decode_base64(text: str) -> bytes:
    """Decode standard base64, raising ``binascii.Error`` for malformed input."""

    return base64.b64decode(text, validate=True)


def pcm16_from_float32(samples: Sequence[float] | np.ndarray) -> bytes:
    """Convert float samples in ``[-1, 1]`` to little-endian signed 16-bit PCM.

    Values are scaled by 32768 and truncated toward zero. Out-of-range input is
    not clamped: it wraps modulo 2**16 the way a typed 16-bit array store does,
    so a full-scale ``1.0`` encodes as ``-32768``.
    """

    values = np.asarray(samples, dtype=np.float64).reshape(-1)
    scaled = np.trunc(values * PCM_SCALE).astype(np.int64)
    return scaled.astype("<i2").tobytes()


def float32_from_pcm16(data: bytes, sample_rate: int, channel_count: int = 1) -> AudioBuffer:
    """Deinterleave PCM16 bytes into an :class:`AudioBuffer`.

    The frame count is ``len(data) // 2 // channel_count``; a trailing odd byte
    or partial frame is dropped.
    """

    if channel_count <= 0:
        raise ValueError("channel_count must be positive")
    frames = len(data) // 2 // channel_count
    usable = frames * channel_count * 2
    pcm = np.frombuffer(bytes(data[:usable]), dtype="<i2")
    interleaved = pcm.reshape(frames, channel_count)
    samples = (interleaved.T.astype(np.float32) / np.float32(PCM_SCALE)).copy()
    return AudioBuffer(samples=samples, sample_rate=sample_rate)


def pcm_blob(samples: Sequence[float] | np.ndarray, sample_rate: int = REALTIME_INPUT_RATE) -> dict[str, str]:
    """Build the realtime-input media blob for one captured frame."""

    return {
        "data": encode_base64(pcm16_from_float32(samples)),
        "mimeType": f"audio/pcm;rate={sample_rate}",
    }


__all__ = [
    "AudioBuffer",
    "PCM_SCALE",
    "decode_base64",
    "encode_base64",
    "float32_from_pcm16",
    "pcm16_from_float32",
    "pcm_blob",
]
