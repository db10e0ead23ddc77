"""Accumulate streamed transcript fragments into per-turn entries."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Literal

Speaker = Literal["user", "model"]


@dataclass(slots=True)
class TranscriptEntry:
    speaker: Speaker
    text: str
    is_final: bool = False

    def to_dict(self) -> dict[str, object]:
        return {"speaker": self.speaker, "text": self.text, "is_final": self.is_final}


class TranscriptAssembler:
    """Keep one in-progress entry per speaker until the turn completes.

    Entries finalized with no text are kept.
    """

    def __init__(self) -> None:
        self._entries: list[TranscriptEntry] = []
        self._open: dict[str, TranscriptEntry] = {}

    @property
    def entries(self) -> list[TranscriptEntry]:
        return [replace(entry) for entry in self._entries]

    def add_fragment(self, speaker: Speaker, text: str) -> TranscriptEntry:
        entry = self._open.get(speaker)
        if entry is None:
            entry = TranscriptEntry(speaker=speaker, text="")
            self._open[speaker] = entry
            self._entries.append(entry)
        entry.text += text
        return replace(entry)

    def complete_turn(self) -> list[TranscriptEntry]:
        """Finalize both speakers' open entries and return them, user first."""

        finalized = []
        for speaker in ("user", "model"):
            entry = self._open.pop(speaker, None)
            if entry is not None:
                entry.is_final = True
                finalized.append(replace(entry))
        return finalized

    def reset(self) -> None:
        self._entries.clear()
        self._open.clear()


__all__ = ["Speaker", "TranscriptAssembler", "TranscriptEntry"]
