"""CLI running a realtime voice session on the default audio devices."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from sopdesk.audio import SoundDeviceCapture, SoundDevicePlayback
from sopdesk.config import Settings
from sopdesk.errors import AudioSessionError
from sopdesk.live import LiveAudioSession, SessionState
from sopdesk.realtime import WebSocketRealtimeChannel, build_setup
from sopdesk.transcripts import TranscriptEntry


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Talk to the SOP assistant through the microphone")
    parser.add_argument("--voice", help="Prebuilt voice name (default from settings)")
    parser.add_argument("--input-device", help="Input device name or index")
    parser.add_argument("--output-device", help="Output device name or index")
    return parser


class TranscriptPrinter:
    """Print each transcript entry once it is final."""

    def __init__(self) -> None:
        self._printed = 0

    def __call__(self, entries: list[TranscriptEntry]) -> None:
        while self._printed < len(entries) and entries[self._printed].is_final:
            entry = entries[self._printed]
            print(f"{'You' if entry.speaker == 'user' else 'Assistant'}: {entry.text}")
            self._printed += 1


def _device(value: str | None):
    if value is None:
        return None
    return int(value) if value.isdigit() else value


async def _run(args: argparse.Namespace, settings: Settings) -> int:
    if args.voice:
        settings.live_voice = args.voice
    setup = build_setup(settings)
    session = LiveAudioSession(
        lambda: WebSocketRealtimeChannel(settings.live_url, setup, api_key=settings.live_api_key),
        lambda: SoundDeviceCapture(
            sample_rate=settings.input_sample_rate,
            frame_size=settings.capture_frame_size,
            device=_device(args.input_device),
        ),
        lambda: SoundDevicePlayback(sample_rate=settings.output_sample_rate, device=_device(args.output_device)),
        frame_sample_rate=settings.input_sample_rate,
        output_sample_rate=settings.output_sample_rate,
        on_transcript=TranscriptPrinter(),
        on_status=lambda status: print(f"-- {status}", file=sys.stderr),
        metrics=settings.build_metrics_recorder(),
    )
    await session.start()
    try:
        while session.state is SessionState.ACTIVE:
            await asyncio.sleep(0.2)
    finally:
        await session.stop()
    return 1 if session.state is SessionState.ERROR else 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)

    try:
        return asyncio.run(_run(args, Settings.from_env()))
    except KeyboardInterrupt:
        return 0
    except AudioSessionError as exc:
        print(str(exc), file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover - CLI entry
    sys.exit(main())
