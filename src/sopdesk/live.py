"""Realtime voice session: microphone up, gapless model audio down, live transcripts."""

from __future__ import annotations

import asyncio
import logging
import threading
from enum import Enum
from typing import Callable

import numpy as np

from .audio import AudioCapture, AudioPlayback, PlaybackSource
from .codec import decode_base64, float32_from_pcm16, pcm_blob
from .errors import AudioSessionError
from .observability import MetricsRecorder
from .realtime import RealtimeChannel, ServerEvent
from .transcripts import TranscriptAssembler, TranscriptEntry

logger = logging.getLogger(__name__)

STATUS_CONNECTING = "Initializing session..."
STATUS_LISTENING = "Listening..."
STATUS_SPEAKING = "AI is speaking..."
STATUS_ERROR = "Session error. Please try again."


class SessionState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ACTIVE = "active"
    ERROR = "error"


class LiveAudioSession:
    """Own one realtime channel plus the capture and playback devices it drives.

    Model audio is scheduled at ``max(now, next_start_time)`` so consecutive
    chunks play back to back regardless of arrival jitter. Teardown checks
    and clears every resource, so it is safe to trigger repeatedly.
    """

    def __init__(
        self,
        channel_factory: Callable[[], RealtimeChannel],
        capture_factory: Callable[[], AudioCapture],
        playback_factory: Callable[[], AudioPlayback],
        *,
        frame_sample_rate: int = 16000,
        output_sample_rate: int = 24000,
        on_transcript: Callable[[list[TranscriptEntry]], None] | None = None,
        on_status: Callable[[str], None] | None = None,
        on_error: Callable[[BaseException], None] | None = None,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._channel_factory = channel_factory
        self._capture_factory = capture_factory
        self._playback_factory = playback_factory
        self._frame_sample_rate = frame_sample_rate
        self._output_sample_rate = output_sample_rate
        self._on_transcript = on_transcript
        self._on_status = on_status
        self._on_error = on_error
        self._metrics = metrics

        self._state = SessionState.IDLE
        self._status = ""
        self._loop: asyncio.AbstractEventLoop | None = None
        self._channel: RealtimeChannel | None = None
        self._capture: AudioCapture | None = None
        self._playback: AudioPlayback | None = None
        self._receive_task: asyncio.Task | None = None
        self._send_tasks: set[asyncio.Task] = set()
        self._sources: set[PlaybackSource] = set()
        self._sources_lock = threading.Lock()
        self._next_start_time = 0.0
        self._transcripts = TranscriptAssembler()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def status(self) -> str:
        return self._status

    @property
    def next_start_time(self) -> float:
        return self._next_start_time

    @property
    def scheduled_sources(self) -> list[PlaybackSource]:
        with self._sources_lock:
            return list(self._sources)

    @property
    def transcripts(self) -> list[TranscriptEntry]:
        return self._transcripts.entries

    async def start(self) -> None:
        if self._state in (SessionState.CONNECTING, SessionState.ACTIVE):
            raise AudioSessionError("Live session is already running")

        self._loop = asyncio.get_running_loop()
        self._state = SessionState.CONNECTING
        self._set_status(STATUS_CONNECTING)
        self._transcripts.reset()
        self._next_start_time = 0.0
        try:
            self._playback = self._playback_factory()
            self._capture = self._capture_factory()
            channel = self._channel = self._channel_factory()
            await channel.connect()
            if self._state is not SessionState.CONNECTING or self._channel is not channel:
                # Stopped while the handshake was in flight; teardown already ran.
                await channel.close()
                logger.info("live.start.abandoned state=%s", self._state.value)
                return
            self._state = SessionState.ACTIVE
            self._capture.start(self._on_frame)
        except Exception as exc:
            logger.error("live.start.failed error=%s", exc)
            await self._fail(exc)
            raise AudioSessionError(f"Live session failed to start: {exc}") from exc

        self._receive_task = asyncio.create_task(self._receive_loop())
        self._set_status(STATUS_LISTENING)
        logger.info("live.started")

    async def stop(self) -> None:
        await self._teardown()
        if self._state is not SessionState.ERROR:
            self._state = SessionState.IDLE
        logger.info("live.stopped state=%s", self._state.value)

    # Capture ----------------------------------------------------------------

    def _on_frame(self, samples: np.ndarray) -> None:
        """Encode one captured frame and hand it to the event loop; never blocks."""

        loop = self._loop
        if loop is None or self._state is not SessionState.ACTIVE:
            return
        blob = pcm_blob(samples, self._frame_sample_rate)
        try:
            loop.call_soon_threadsafe(self._dispatch_frame, blob)
        except RuntimeError:
            logger.debug("live.frame.dropped reason=loop_closed")

    def _dispatch_frame(self, blob: dict[str, str]) -> None:
        channel = self._channel
        if channel is None or self._state is not SessionState.ACTIVE:
            return
        task = asyncio.get_running_loop().create_task(self._send(channel, blob))
        self._send_tasks.add(task)
        task.add_done_callback(self._send_tasks.discard)

    async def _send(self, channel: RealtimeChannel, blob: dict[str, str]) -> None:
        try:
            await channel.send_audio(blob)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("live.frame.send_failed error=%s", exc)
            return
        if self._metrics:
            self._metrics.increment("live.frames_sent")

    # Server events ----------------------------------------------------------

    def handle_event(self, event: ServerEvent) -> None:
        changed = False
        if event.input_transcript is not None:
            self._transcripts.add_fragment("user", event.input_transcript)
            changed = True
        if event.output_transcript is not None:
            self._transcripts.add_fragment("model", event.output_transcript)
            changed = True
        if changed:
            self._emit_transcripts()
        for chunk in event.audio_chunks:
            self.handle_server_audio(chunk)
        if event.interrupted:
            self.handle_interrupt()
        if event.turn_complete:
            self._transcripts.complete_turn()
            self._emit_transcripts()
            self._set_status(STATUS_LISTENING)

    def handle_server_audio(self, chunk: str) -> PlaybackSource | None:
        playback = self._playback
        if playback is None:
            return None
        buffer = float32_from_pcm16(decode_base64(chunk), self._output_sample_rate, 1)
        start_at = max(playback.current_time, self._next_start_time)
        source = playback.play(buffer, start_at)
        self._next_start_time = start_at + buffer.duration
        with self._sources_lock:
            self._sources.add(source)
        source.add_done_callback(self._source_done)
        if self._metrics:
            self._metrics.increment("live.chunks_scheduled")
        self._set_status(STATUS_SPEAKING)
        return source

    def _source_done(self, source: PlaybackSource) -> None:
        with self._sources_lock:
            self._sources.discard(source)

    def handle_interrupt(self) -> None:
        """Barge-in: silence everything queued and restart the cursor."""

        with self._sources_lock:
            sources = list(self._sources)
            self._sources.clear()
        for source in sources:
            source.stop()
        self._next_start_time = 0.0
        if self._metrics:
            self._metrics.increment("live.interruptions")
        logger.info("live.interrupted stopped=%s", len(sources))

    async def _receive_loop(self) -> None:
        channel = self._channel
        if channel is None:
            return
        try:
            async for event in channel.events():
                self.handle_event(event)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("live.receive.failed error=%s", exc)
            await self._fail(exc)
            return
        if self._state is SessionState.ACTIVE:
            logger.info("live.channel.closed")
            await self._teardown()
            self._state = SessionState.IDLE

    # Lifecycle --------------------------------------------------------------

    async def _fail(self, exc: BaseException) -> None:
        await self._teardown()
        self._state = SessionState.ERROR
        self._set_status(STATUS_ERROR)
        if self._on_error is not None:
            self._on_error(exc)

    async def _teardown(self) -> None:
        task, self._receive_task = self._receive_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as exc:  # pragma: no cover - loop already reports its own errors
                logger.warning("live.teardown.receive error=%s", exc)

        capture, self._capture = self._capture, None
        if capture is not None:
            try:
                capture.stop()
            except Exception as exc:
                logger.warning("live.teardown.capture error=%s", exc)

        pending, self._send_tasks = self._send_tasks, set()
        for send_task in pending:
            send_task.cancel()

        with self._sources_lock:
            sources = list(self._sources)
            self._sources.clear()
        for source in sources:
            try:
                source.stop()
            except Exception as exc:
                logger.warning("live.teardown.source error=%s", exc)
        self._next_start_time = 0.0

        playback, self._playback = self._playback, None
        if playback is not None:
            try:
                playback.close()
            except Exception as exc:
                logger.warning("live.teardown.playback error=%s", exc)

        channel, self._channel = self._channel, None
        if channel is not None:
            try:
                await channel.close()
            except Exception as exc:
                logger.warning("live.teardown.channel error=%s", exc)

    def _set_status(self, status: str) -> None:
        self._status = status
        if self._on_status is not None:
            self._on_status(status)

    def _emit_transcripts(self) -> None:
        if self._on_transcript is not None:
            self._on_transcript(self._transcripts.entries)


__all__ = [
    "LiveAudioSession",
    "STATUS_CONNECTING",
    "STATUS_ERROR",
    "STATUS_LISTENING",
    "STATUS_SPEAKING",
    "SessionState",
]
