"""Bidirectional realtime channel carrying microphone audio up and model audio down."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncIterator, Protocol
from urllib.parse import urlencode

import websockets
from websockets.asyncio.client import connect

from .errors import AudioSessionError

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .config import Settings

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ServerEvent:
    """One server message reduced to the signals the live session reacts to."""

    audio_chunks: list[str] = field(default_factory=list)
    input_transcript: str | None = None
    output_transcript: str | None = None
    turn_complete: bool = False
    interrupted: bool = False
    setup_complete: bool = False

    @classmethod
    def from_message(cls, message: dict[str, Any]) -> "ServerEvent":
        event = cls(setup_complete="setupComplete" in message)
        content = message.get("serverContent")
        if not isinstance(content, dict):
            return event
        turn = content.get("modelTurn") or {}
        for part in turn.get("parts") or []:
            inline = part.get("inlineData") if isinstance(part, dict) else None
            if isinstance(inline, dict) and inline.get("data"):
                event.audio_chunks.append(str(inline["data"]))
        input_transcription = content.get("inputTranscription")
        if isinstance(input_transcription, dict) and "text" in input_transcription:
            event.input_transcript = str(input_transcription.get("text") or "")
        output_transcription = content.get("outputTranscription")
        if isinstance(output_transcription, dict) and "text" in output_transcription:
            event.output_transcript = str(output_transcription.get("text") or "")
        event.turn_complete = bool(content.get("turnComplete"))
        event.interrupted = bool(content.get("interrupted"))
        return event


class RealtimeChannel(Protocol):
    async def connect(self) -> None:  # pragma: no cover - protocol
        ...

    async def send_audio(self, blob: dict[str, str]) -> None:  # pragma: no cover - protocol
        ...

    def events(self) -> AsyncIterator[ServerEvent]:  # pragma: no cover - protocol
        ...

    async def close(self) -> None:  # pragma: no cover - protocol
        ...


def build_setup(settings: "Settings") -> dict[str, Any]:
    """Session setup: audio replies in the configured voice, both transcriptions on."""

    return {
        "model": settings.live_model,
        "generationConfig": {
            "responseModalities": ["AUDIO"],
            "speechConfig": {
                "voiceConfig": {"prebuiltVoiceConfig": {"voiceName": settings.live_voice}},
            },
        },
        "systemInstruction": {"parts": [{"text": settings.live_system_instruction}]},
        "inputAudioTranscription": {},
        "outputAudioTranscription": {},
    }


class WebSocketRealtimeChannel:
    """:class:`RealtimeChannel` over a JSON websocket."""

    def __init__(self, url: str, setup: dict[str, Any], *, api_key: str | None = None) -> None:
        if api_key:
            separator = "&" if "?" in url else "?"
            url = f"{url}{separator}{urlencode({'key': api_key})}"
        self._url = url
        self._setup = setup
        self._connection = None

    @property
    def connected(self) -> bool:
        return self._connection is not None

    async def connect(self) -> None:
        """Open the socket, send the setup message and wait for its acknowledgement."""

        try:
            self._connection = await connect(self._url)
            await self._connection.send(json.dumps({"setup": self._setup}))
            first = await self._connection.recv()
        except (OSError, websockets.exceptions.WebSocketException) as exc:
            await self.close()
            raise AudioSessionError(f"Realtime channel failed to open: {exc}") from exc

        event = ServerEvent.from_message(_decode(first))
        if not event.setup_complete:
            await self.close()
            raise AudioSessionError("Realtime channel did not acknowledge setup")
        logger.info("realtime.connected")

    async def send_audio(self, blob: dict[str, str]) -> None:
        connection = self._connection
        if connection is None:
            raise AudioSessionError("Realtime channel is not connected")
        await connection.send(json.dumps({"realtimeInput": {"mediaChunks": [blob]}}))

    async def events(self) -> AsyncIterator[ServerEvent]:
        connection = self._connection
        if connection is None:
            raise AudioSessionError("Realtime channel is not connected")
        try:
            async for raw in connection:
                yield ServerEvent.from_message(_decode(raw))
        except websockets.exceptions.ConnectionClosedOK:
            logger.info("realtime.closed")
        except websockets.exceptions.ConnectionClosed as exc:
            raise AudioSessionError(f"Realtime channel closed unexpectedly: {exc}") from exc

    async def close(self) -> None:
        connection, self._connection = self._connection, None
        if connection is not None:
            await connection.close()


def _decode(raw: str | bytes) -> dict[str, Any]:
    text = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else raw
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise AudioSessionError("Realtime channel sent malformed JSON") from exc
    return payload if isinstance(payload, dict) else {}


__all__ = [
    "RealtimeChannel",
    "ServerEvent",
    "WebSocketRealtimeChannel",
    "build_setup",
]
