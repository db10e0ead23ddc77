"""Document metadata reconciliation, filtering, statistics and export."""

from __future__ import annotations

import csv
import io
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import cmp_to_key
from typing import Any, Final, Iterable, Sequence

from .client import Document
from .metadata import RESERVED_KEYS, CustomMetadata, parse_tags

DEFAULT_VERSION: Final[str] = "N/A"
DEFAULT_NOTES: Final[str] = "—"
RECENT_LIMIT: Final[int] = 10
SORT_KEYS: Final[tuple[str, ...]] = ("name", "store", "version", "date")
CSV_HEADERS: Final[tuple[str, ...]] = (
    "Name",
    "Store",
    "Version",
    "Notes",
    "Category",
    "Tags",
    "Last Modified",
    "File Size (KB)",
    "MIME Type",
)

_VERSION_SUFFIX_RE = re.compile(r"\s*v?\d+(\.\d+)*$", re.IGNORECASE)
_LEADING_INT_RE = re.compile(r"\s*([+-]?\d+)")


@dataclass(slots=True)
class ManagedDocument:
    """A backend document with its reserved metadata keys resolved."""

    document: Document
    version: str = DEFAULT_VERSION
    notes: str = DEFAULT_NOTES
    category: str | None = None
    tags: list[str] = field(default_factory=list)
    last_modified: str | None = None
    file_size: int | None = None
    mime_type: str | None = None

    @property
    def name(self) -> str:
        return self.document.name

    @property
    def display_name(self) -> str:
        return self.document.display_name

    @property
    def store_name(self) -> str:
        return self.document.store_name

    @property
    def store_display_name(self) -> str:
        return self.document.store_display_name

    def to_dict(self) -> dict[str, Any]:
        payload = self.document.to_dict()
        payload.update(
            {
                "version": self.version,
                "notes": self.notes,
                "category": self.category,
                "tags": list(self.tags),
                "lastModified": self.last_modified,
                "fileSize": self.file_size,
                "mimeType": self.mime_type,
            }
        )
        return payload


def _reserved_lookup(entries: Iterable[CustomMetadata]) -> dict[str, CustomMetadata]:
    lookup: dict[str, CustomMetadata] = {}
    for entry in entries:
        if entry.key in RESERVED_KEYS and entry.key not in lookup:
            lookup[entry.key] = entry
    return lookup


def enrich(document: Document) -> ManagedDocument:
    """Resolve version, notes, category and tags; the first entry for a key wins."""

    lookup = _reserved_lookup(document.custom_metadata)
    version = lookup.get("version")
    notes = lookup.get("notes")
    category = lookup.get("category")
    tags_entry = lookup.get("tags")

    tags: list[str] = []
    if tags_entry is not None:
        if tags_entry.string_list_value is not None:
            tags = [tag.strip() for tag in tags_entry.string_list_value if tag.strip()]
        else:
            tags = parse_tags(tags_entry.string_value)

    return ManagedDocument(
        document=document,
        version=(version.string_value if version else None) or DEFAULT_VERSION,
        notes=(notes.string_value if notes else None) or DEFAULT_NOTES,
        category=(category.string_value if category else None) or None,
        tags=tags,
        last_modified=document.create_time or document.update_time,
        file_size=document.size_bytes or None,
        mime_type=document.mime_type,
    )


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """Parse an RFC 3339 timestamp into an aware datetime (naive values are UTC)."""

    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = value.strip()
        if not text:
            return None
        if text.endswith(("Z", "z")):
            text = f"{text[:-1]}+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _leading_int(part: str) -> int:
    match = _LEADING_INT_RE.match(part)
    return int(match.group(1)) if match else 0


def compare_versions(left: str, right: str) -> int:
    """Compare dotted numeric versions; ``N/A`` sorts below everything else.

    Missing components count as zero. When that leaves a tie, the longer
    version wins, so ``2.1.0`` ranks above ``2.1``.
    """

    if left == DEFAULT_VERSION and right == DEFAULT_VERSION:
        return 0
    if left == DEFAULT_VERSION:
        return -1
    if right == DEFAULT_VERSION:
        return 1
    left_parts = [_leading_int(part) for part in left.split(".")]
    right_parts = [_leading_int(part) for part in right.split(".")]
    for index in range(max(len(left_parts), len(right_parts))):
        a = left_parts[index] if index < len(left_parts) else 0
        b = right_parts[index] if index < len(right_parts) else 0
        if a != b:
            return a - b
    return len(left_parts) - len(right_parts)


@dataclass(slots=True)
class DocumentFilter:
    search_term: str | None = None
    store_names: Sequence[str] = ()
    versions: Sequence[str] = ()
    tags: Sequence[str] = ()
    date_range: tuple[datetime, datetime] | None = None


def _matches_search(doc: ManagedDocument, needle: str) -> bool:
    fields = [doc.display_name, doc.store_display_name, doc.version, doc.notes, doc.category or ""]
    if any(needle in value.lower() for value in fields):
        return True
    return any(needle in tag.lower() for tag in doc.tags)


def filter_documents(documents: Iterable[ManagedDocument], criteria: DocumentFilter) -> list[ManagedDocument]:
    """Keep the documents that satisfy every populated criterion."""

    results = list(documents)
    if criteria.search_term:
        needle = criteria.search_term.lower()
        results = [doc for doc in results if _matches_search(doc, needle)]
    if criteria.store_names:
        stores = set(criteria.store_names)
        results = [doc for doc in results if doc.store_name in stores]
    if criteria.versions:
        versions = set(criteria.versions)
        results = [doc for doc in results if doc.version in versions]
    if criteria.date_range is not None:
        start = parse_timestamp(criteria.date_range[0])
        end = parse_timestamp(criteria.date_range[1])
        kept = []
        for doc in results:
            moment = parse_timestamp(doc.last_modified)
            if moment is not None and start <= moment <= end:
                kept.append(doc)
        results = kept
    if criteria.tags:
        wanted = set(criteria.tags)
        results = [doc for doc in results if any(tag in wanted for tag in doc.tags)]
    return results


def _date_key(doc: ManagedDocument) -> tuple[int, datetime]:
    moment = parse_timestamp(doc.last_modified)
    if moment is None:
        return (0, datetime.min.replace(tzinfo=timezone.utc))
    return (1, moment)


def sort_documents(
    documents: Iterable[ManagedDocument],
    key: str = "name",
    direction: str = "asc",
) -> list[ManagedDocument]:
    """Stable sort by ``name``, ``store``, ``version`` or ``date``."""

    if key not in SORT_KEYS:
        raise ValueError(f"Unsupported sort key: {key}")
    if direction not in {"asc", "desc"}:
        raise ValueError(f"Unsupported sort direction: {direction}")
    reverse = direction == "desc"
    items = list(documents)
    if key == "name":
        return sorted(items, key=lambda doc: doc.display_name.lower(), reverse=reverse)
    if key == "store":
        return sorted(items, key=lambda doc: doc.store_display_name.lower(), reverse=reverse)
    if key == "version":
        version_key = cmp_to_key(compare_versions)
        return sorted(items, key=lambda doc: version_key(doc.version), reverse=reverse)
    return sorted(items, key=_date_key, reverse=reverse)


@dataclass(slots=True)
class DocumentStats:
    total_documents: int
    by_store: dict[str, int]
    by_version: dict[str, int]
    storage_used: int
    recent: list[ManagedDocument]

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalDocuments": self.total_documents,
            "documentsByStore": dict(self.by_store),
            "documentsByVersion": dict(self.by_version),
            "storageUsed": self.storage_used,
            "recentUploads": [doc.to_dict() for doc in self.recent],
        }


def aggregate_stats(documents: Iterable[ManagedDocument]) -> DocumentStats:
    items = list(documents)
    by_store: dict[str, int] = {}
    by_version: dict[str, int] = {}
    storage = 0
    for doc in items:
        by_store[doc.store_display_name] = by_store.get(doc.store_display_name, 0) + 1
        by_version[doc.version] = by_version.get(doc.version, 0) + 1
        storage += doc.file_size or 0
    dated = [doc for doc in items if parse_timestamp(doc.last_modified) is not None]
    recent = sorted(dated, key=_date_key, reverse=True)[:RECENT_LIMIT]
    return DocumentStats(
        total_documents=len(items),
        by_store=by_store,
        by_version=by_version,
        storage_used=storage,
        recent=recent,
    )


def filter_options(documents: Iterable[ManagedDocument]) -> dict[str, list[dict[str, Any]]]:
    """Distinct stores, versions and tags with their counts, most common first."""

    stores: dict[str, dict[str, Any]] = {}
    versions: Counter[str] = Counter()
    tags: Counter[str] = Counter()
    for doc in documents:
        entry = stores.setdefault(
            doc.store_name,
            {"name": doc.store_name, "displayName": doc.store_display_name, "count": 0},
        )
        entry["count"] += 1
        versions[doc.version] += 1
        tags.update(doc.tags)
    return {
        "stores": sorted(stores.values(), key=lambda item: item["count"], reverse=True),
        "versions": [
            {"version": version, "count": count}
            for version, count in sorted(versions.items(), key=lambda item: item[1], reverse=True)
        ],
        "tags": [
            {"tag": tag, "count": count}
            for tag, count in sorted(tags.items(), key=lambda item: item[1], reverse=True)
        ],
    }


def base_name(display_name: str) -> str:
    return _VERSION_SUFFIX_RE.sub("", display_name.lower())


def document_versions(documents: Iterable[ManagedDocument], name: str) -> list[ManagedDocument]:
    """Documents sharing ``name`` once a trailing ``v1.2`` style suffix is stripped, newest first."""

    target = base_name(name)
    family = [doc for doc in documents if base_name(doc.display_name) == target]
    version_key = cmp_to_key(compare_versions)
    return sorted(family, key=lambda doc: version_key(doc.version), reverse=True)


def has_newer_version(documents: Iterable[ManagedDocument], current: ManagedDocument) -> bool:
    family = document_versions(documents, current.display_name)
    return bool(family) and family[0].name != current.name


def _size_kb(size: int | None) -> str:
    return f"{size / 1024:.2f}" if size else ""


def export_csv(documents: Iterable[ManagedDocument]) -> str:
    """Render documents as CSV: a bare header line, then fully quoted rows."""

    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    for doc in documents:
        writer.writerow(
            [
                doc.display_name,
                doc.store_display_name,
                doc.version,
                doc.notes,
                doc.category or "",
                "; ".join(doc.tags),
                doc.last_modified or "",
                _size_kb(doc.file_size),
                doc.mime_type or "",
            ]
        )
    lines = [",".join(CSV_HEADERS)]
    body = buffer.getvalue()
    if body:
        lines.append(body[:-1])
    return "\n".join(lines)


def format_file_size(size: int | None) -> str:
    if not size:
        return "Unknown"
    units = ("B", "KB", "MB", "GB")
    value = float(size)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{value:.2f} {units[index]}"


def format_date(value: str | datetime | None, now: datetime | None = None) -> str:
    """Relative label for recent timestamps, ISO date beyond a month."""

    moment = parse_timestamp(value)
    if moment is None:
        return "Unknown"
    reference = parse_timestamp(now) if now is not None else datetime.now(timezone.utc)
    days = int((reference - moment).total_seconds() // 86400)
    if days <= 0:
        return "Today"
    if days == 1:
        return "Yesterday"
    if days < 7:
        return f"{days} days ago"
    if days < 30:
        return f"{days // 7} weeks ago"
    return moment.date().isoformat()


def build_report(documents: Iterable[ManagedDocument], now: datetime | None = None) -> dict[str, Any]:
    items = list(documents)
    moment = now or datetime.now(timezone.utc)
    return {
        "summary": aggregate_stats(items).to_dict(),
        "documents": [doc.to_dict() for doc in items],
        "filterOptions": filter_options(items),
        "timestamp": moment.isoformat(),
    }


__all__ = [
    "DocumentFilter",
    "DocumentStats",
    "ManagedDocument",
    "aggregate_stats",
    "build_report",
    "compare_versions",
    "document_versions",
    "enrich",
    "export_csv",
    "filter_documents",
    "filter_options",
    "format_date",
    "format_file_size",
    "has_newer_version",
    "parse_timestamp",
    "sort_documents",
]
