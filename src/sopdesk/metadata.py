"""Custom metadata entries attached to uploaded documents."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Final, Iterable, Sequence

from .errors import MetadataValidationError

RESERVED_KEYS: Final[tuple[str, ...]] = ("version", "notes", "category", "tags")
VERSION_PATTERN: Final[re.Pattern[str]] = re.compile(r"\d+(?:\.\d+)*")


@dataclass(slots=True)
class CustomMetadata:
    """A key with exactly one of a string, string-list or numeric value."""

    key: str
    string_value: str | None = None
    string_list_value: list[str] | None = None
    numeric_value: float | None = None

    @classmethod
    def string(cls, key: str, value: str) -> "CustomMetadata":
        return cls(key=key, string_value=value)

    @classmethod
    def string_list(cls, key: str, values: Iterable[str]) -> "CustomMetadata":
        return cls(key=key, string_list_value=list(values))

    @classmethod
    def numeric(cls, key: str, value: float) -> "CustomMetadata":
        return cls(key=key, numeric_value=value)

    @property
    def variant_count(self) -> int:
        return sum(
            value is not None
            for value in (self.string_value, self.string_list_value, self.numeric_value)
        )

    def to_wire(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"key": self.key}
        if self.string_value is not None:
            payload["stringValue"] = self.string_value
        if self.string_list_value is not None:
            payload["stringListValue"] = {"values": list(self.string_list_value)}
        if self.numeric_value is not None:
            payload["numericValue"] = self.numeric_value
        return payload

    @classmethod
    def from_wire(cls, payload: dict[str, Any]) -> "CustomMetadata":
        list_value = payload.get("stringListValue")
        values: list[str] | None = None
        if isinstance(list_value, dict):
            values = [str(item) for item in list_value.get("values") or []]
        numeric = payload.get("numericValue")
        return cls(
            key=str(payload.get("key") or ""),
            string_value=payload.get("stringValue"),
            string_list_value=values,
            numeric_value=float(numeric) if numeric is not None else None,
        )


@dataclass(slots=True)
class MetadataValidation:
    errors: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


def validate_metadata(
    entries: Sequence[CustomMetadata],
    *,
    require_version: bool = True,
) -> MetadataValidation:
    """Check metadata before upload: version present and dotted-numeric, keys unique."""

    result = MetadataValidation()
    version = next((entry for entry in entries if entry.key == "version"), None)
    if version is None:
        if require_version:
            result.errors.append("Version number is required")
    elif version.string_value is None or not VERSION_PATTERN.fullmatch(version.string_value):
        result.errors.append("Version must be in format: X.Y.Z (e.g., 2.1.0)")

    seen: set[str] = set()
    duplicates: list[str] = []
    for entry in entries:
        if entry.key in seen and entry.key not in duplicates:
            duplicates.append(entry.key)
        seen.add(entry.key)
    if duplicates:
        result.errors.append(f"Duplicate metadata keys: {', '.join(duplicates)}")

    for entry in entries:
        if entry.variant_count != 1:
            result.errors.append(f"Metadata '{entry.key}' must have exactly one value")
    return result


def ensure_valid_metadata(entries: Sequence[CustomMetadata], *, require_version: bool = True) -> None:
    validation = validate_metadata(entries, require_version=require_version)
    if not validation.valid:
        raise MetadataValidationError(validation.errors)


def build_document_metadata(
    version: str | None,
    *,
    notes: str | None = None,
    category: str | None = None,
    tags: Iterable[str] | None = None,
) -> list[CustomMetadata]:
    """Assemble the reserved-key metadata the upload form collects."""

    entries: list[CustomMetadata] = []
    if version and version.strip():
        entries.append(CustomMetadata.string("version", version.strip()))
    if notes and notes.strip():
        entries.append(CustomMetadata.string("notes", notes.strip()))
    if category and category.strip():
        entries.append(CustomMetadata.string("category", category.strip()))
    cleaned_tags = [tag.strip() for tag in tags or [] if tag and tag.strip()]
    if cleaned_tags:
        entries.append(CustomMetadata.string("tags", ", ".join(cleaned_tags)))
    return entries


def parse_tags(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [tag.strip() for tag in raw.split(",") if tag.strip()]


__all__ = [
    "CustomMetadata",
    "MetadataValidation",
    "RESERVED_KEYS",
    "VERSION_PATTERN",
    "build_document_metadata",
    "ensure_valid_metadata",
    "parse_tags",
    "validate_metadata",
]
