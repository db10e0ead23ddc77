"""Audio capability interfaces and their sounddevice-backed implementations."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Protocol

import numpy as np

from .client import QueryResult, Store
from .codec import AudioBuffer, decode_base64, float32_from_pcm16

logger = logging.getLogger(__name__)

FrameCallback = Callable[[np.ndarray], None]
DoneCallback = Callable[["PlaybackSource"], None]


class AudioCapture(Protocol):
    """Microphone producing fixed-size mono float32 frames."""

    def start(self, on_frame: FrameCallback) -> None:  # pragma: no cover - protocol
        ...

    def stop(self) -> None:  # pragma: no cover - protocol
        ...


class PlaybackSource(Protocol):
    start_time: float
    duration: float

    def stop(self) -> None:  # pragma: no cover - protocol
        ...

    def add_done_callback(self, callback: DoneCallback) -> None:  # pragma: no cover - protocol
        ...


class AudioPlayback(Protocol):
    """Output device with a monotonic clock in seconds."""

    @property
    def current_time(self) -> float:  # pragma: no cover - protocol
        ...

    def play(self, buffer: AudioBuffer, when: float) -> PlaybackSource:  # pragma: no cover - protocol
        ...

    def close(self) -> None:  # pragma: no cover - protocol
        ...


class SpeechToText(Protocol):
    async def transcribe(self, language: str) -> str:  # pragma: no cover - protocol
        ...


def _require_sounddevice():
    try:
        import sounddevice as sd
    except Exception as exc:  # pragma: no cover - environment-dependent
        raise RuntimeError("sounddevice is required for audio capture and playback.") from exc
    return sd


class SoundDeviceCapture:
    """Mono float32 microphone capture delivered in blocks of ``frame_size`` samples."""

    def __init__(self, *, sample_rate: int = 16000, frame_size: int = 4096, device: Any = None) -> None:
        self._sample_rate = sample_rate
        self._frame_size = frame_size
        self._device = device
        self._stream = None

    def start(self, on_frame: FrameCallback) -> None:
        if self._stream is not None:
            raise RuntimeError("Capture already started")
        sd = _require_sounddevice()

        def callback(indata, frames, time_info, status) -> None:
            if status:
                logger.debug("audio.capture.status status=%s", status)
            on_frame(np.array(indata[:, 0], dtype=np.float32, copy=True))

        stream = sd.InputStream(
            samplerate=self._sample_rate,
            channels=1,
            dtype="float32",
            blocksize=self._frame_size,
            device=self._device,
            callback=callback,
        )
        stream.start()
        self._stream = stream
        logger.info("audio.capture.started rate=%s frame=%s", self._sample_rate, self._frame_size)

    def stop(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        stream.stop()
        stream.close()
        logger.info("audio.capture.stopped")


class ScheduledSource:
    """A buffer placed on the playback timeline at a fixed frame offset."""

    def __init__(self, samples: np.ndarray, start_frame: int, sample_rate: int) -> None:
        self.samples = samples
        self.start_frame = start_frame
        self.end_frame = start_frame + len(samples)
        self.start_time = start_frame / float(sample_rate)
        self.duration = len(samples) / float(sample_rate)
        self._callbacks: list[DoneCallback] = []
        self._finished = False
        self._lock = threading.Lock()

    @property
    def finished(self) -> bool:
        return self._finished

    def add_done_callback(self, callback: DoneCallback) -> None:
        with self._lock:
            if not self._finished:
                self._callbacks.append(callback)
                return
        callback(self)

    def stop(self) -> None:
        self._finish()

    def _finish(self) -> None:
        with self._lock:
            if self._finished:
                return
            self._finished = True
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback(self)


class SoundDevicePlayback:
    """Mix scheduled buffers into a mono output stream against a sample-accurate clock.

    ``current_time`` is the number of frames already handed to the device
    divided by the sample rate.
    """

    def __init__(self, *, sample_rate: int = 24000, device: Any = None, blocksize: int = 0) -> None:
        self._sample_rate = sample_rate
        self._position = 0
        self._sources: list[ScheduledSource] = []
        self._lock = threading.Lock()
        sd = _require_sounddevice()
        self._stream = sd.OutputStream(
            samplerate=sample_rate,
            channels=1,
            dtype="float32",
            device=device,
            blocksize=blocksize,
            callback=self._callback,
        )
        self._stream.start()

    @property
    def current_time(self) -> float:
        with self._lock:
            return self._position / float(self._sample_rate)

    def play(self, buffer: AudioBuffer, when: float) -> ScheduledSource:
        samples = buffer.channel(0).astype(np.float32, copy=False)
        with self._lock:
            start_frame = max(int(round(when * self._sample_rate)), self._position)
            source = ScheduledSource(samples, start_frame, self._sample_rate)
            self._sources.append(source)
        return source

    def mix(self, frames: int) -> np.ndarray:
        """Render the next ``frames`` samples and advance the clock."""

        out = np.zeros(frames, dtype=np.float32)
        done: list[ScheduledSource] = []
        with self._lock:
            window_start = self._position
            window_end = window_start + frames
            remaining: list[ScheduledSource] = []
            for source in self._sources:
                if source.finished:
                    continue
                lo = max(source.start_frame, window_start)
                hi = min(source.end_frame, window_end)
                if hi > lo:
                    out[lo - window_start : hi - window_start] += source.samples[
                        lo - source.start_frame : hi - source.start_frame
                    ]
                if source.end_frame <= window_end:
                    done.append(source)
                else:
                    remaining.append(source)
            self._sources = remaining
            self._position = window_end
        for source in done:
            source._finish()
        return out

    def _callback(self, outdata, frames, time_info, status) -> None:
        if status:
            logger.debug("audio.playback.status status=%s", status)
        outdata[:, 0] = self.mix(frames)

    def close(self) -> None:
        stream, self._stream = self._stream, None
        with self._lock:
            sources, self._sources = self._sources, []
        for source in sources:
            source.stop()
        if stream is None:
            return
        stream.stop()
        stream.close()
        logger.info("audio.playback.closed")


class SpeechPlayer:
    """Speak answers aloud, cutting off whatever is still playing."""

    def __init__(
        self,
        client: Any,
        playback_factory: Callable[[], AudioPlayback],
        *,
        sample_rate: int = 24000,
    ) -> None:
        self._client = client
        self._playback_factory = playback_factory
        self._sample_rate = sample_rate
        self._playback: AudioPlayback | None = None
        self._current: PlaybackSource | None = None

    @property
    def speaking(self) -> bool:
        return self._current is not None

    async def speak(self, text: str) -> PlaybackSource:
        self.stop()
        audio = await self._client.generate_speech(text)
        buffer = float32_from_pcm16(decode_base64(audio), self._sample_rate, 1)
        if self._playback is None:
            self._playback = self._playback_factory()
        source = self._playback.play(buffer, self._playback.current_time)
        self._current = source
        source.add_done_callback(self._on_done)
        logger.info("speech.started duration=%.2f", buffer.duration)
        return source

    def _on_done(self, source: PlaybackSource) -> None:
        if self._current is source:
            self._current = None

    def stop(self) -> None:
        current, self._current = self._current, None
        if current is not None:
            current.stop()

    def close(self) -> None:
        self.stop()
        playback, self._playback = self._playback, None
        if playback is not None:
            playback.close()


@dataclass(slots=True)
class VoiceAnswer:
    question: str
    result: QueryResult | None


class VoiceQuery:
    """Ask a store a spoken question."""

    def __init__(self, stt: SpeechToText, client: Any) -> None:
        self._stt = stt
        self._client = client

    async def ask(self, store: Store | str, language: str = "en") -> VoiceAnswer:
        question = (await self._stt.transcribe(language)).strip()
        if not question:
            logger.info("voice.query.empty language=%s", language)
            return VoiceAnswer(question="", result=None)
        result = await self._client.file_search(store, question, language)
        return VoiceAnswer(question=question, result=result)


__all__ = [
    "AudioCapture",
    "AudioPlayback",
    "PlaybackSource",
    "ScheduledSource",
    "SoundDeviceCapture",
    "SoundDevicePlayback",
    "SpeechPlayer",
    "SpeechToText",
    "VoiceAnswer",
    "VoiceQuery",
]
