"""CLI for listing, summarising, exporting and deleting documents."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime
from pathlib import Path

from sopdesk.client import BackendClient
from sopdesk.config import Settings
from sopdesk.credentials import credentials_from_settings
from sopdesk.documents import (
    SORT_KEYS,
    DocumentFilter,
    aggregate_stats,
    enrich,
    export_csv,
    filter_documents,
    format_date,
    format_file_size,
    sort_documents,
)
from sopdesk.errors import SopDeskError, error_details


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Manage documents stored in the sopdesk backend")
    commands = parser.add_subparsers(dest="command", required=True)

    list_cmd = commands.add_parser("list", help="List documents")
    list_cmd.add_argument("--store", help="Only documents of this store")
    list_cmd.add_argument("--search", help="Case-insensitive text search")
    list_cmd.add_argument("--store-name", action="append", default=[], help="Keep documents of this store (repeatable)")
    list_cmd.add_argument("--version", dest="versions", action="append", default=[], help="Keep this version (repeatable)")
    list_cmd.add_argument("--tag", dest="tags", action="append", default=[], help="Keep documents with this tag (repeatable)")
    list_cmd.add_argument("--since", type=datetime.fromisoformat, help="Modified on or after (ISO 8601)")
    list_cmd.add_argument("--until", type=datetime.fromisoformat, help="Modified on or before (ISO 8601)")
    list_cmd.add_argument("--sort-by", choices=SORT_KEYS)
    list_cmd.add_argument("--sort-order", choices=("asc", "desc"), default="asc")

    commands.add_parser("stats", help="Print document statistics as JSON")

    export_cmd = commands.add_parser("export", help="Export document metadata as CSV")
    export_cmd.add_argument("--store", help="Only documents of this store")
    export_cmd.add_argument("--output", type=Path, help="Write to this file instead of stdout")

    delete_cmd = commands.add_parser("delete", help="Delete documents by name")
    delete_cmd.add_argument("names", nargs="+")
    return parser


async def _list(client: BackendClient, args: argparse.Namespace) -> int:
    documents = [enrich(document) for document in await client.list_documents(args.store)]
    date_range = None
    if args.since or args.until:
        date_range = (args.since or datetime.min, args.until or datetime.max)
    criteria = DocumentFilter(
        search_term=args.search,
        store_names=args.store_name,
        versions=args.versions,
        tags=args.tags,
        date_range=date_range,
    )
    documents = filter_documents(documents, criteria)
    if args.sort_by:
        documents = sort_documents(documents, args.sort_by, args.sort_order)
    for doc in documents:
        tags = f" [{', '.join(doc.tags)}]" if doc.tags else ""
        print(
            f"{doc.display_name}\tv{doc.version}\t{doc.store_display_name}\t"
            f"{format_file_size(doc.file_size)}\t{format_date(doc.last_modified)}{tags}"
        )
    print(f"{len(documents)} document{'s' if len(documents) != 1 else ''}")
    return 0


async def _run(args: argparse.Namespace, settings: Settings) -> int:
    async with BackendClient(credentials=credentials_from_settings(settings), **settings.client_kwargs()) as client:
        if args.command == "list":
            return await _list(client, args)
        if args.command == "stats":
            documents = [enrich(document) for document in await client.list_documents()]
            print(json.dumps(aggregate_stats(documents).to_dict(), indent=2, ensure_ascii=False))
            return 0
        if args.command == "export":
            documents = [enrich(document) for document in await client.list_documents(args.store)]
            content = export_csv(documents)
            if args.output:
                args.output.write_text(content, encoding="utf-8")
                print(f"Exported {len(documents)} documents to {args.output}")
            else:
                print(content)
            return 0
        result = await client.bulk_delete_documents(args.names)
        for name in result.success:
            print(f"deleted {name}")
        for name, error in result.failed:
            print(f"failed  {name}: {error}", file=sys.stderr)
        return 0 if not result.failed else 1


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.WARNING)

    try:
        return asyncio.run(_run(args, Settings.from_env()))
    except SopDeskError as exc:
        details = error_details(exc)
        print(details.message if details else str(exc), file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover - CLI entry
    sys.exit(main())
