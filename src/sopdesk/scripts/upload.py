"""CLI for uploading SOP files into a document store."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from sopdesk.client import BackendClient, SourceFile
from sopdesk.config import Settings
from sopdesk.credentials import credentials_from_settings
from sopdesk.errors import MetadataValidationError, SopDeskError, error_details
from sopdesk.metadata import build_document_metadata, ensure_valid_metadata, parse_tags
from sopdesk.operations import OperationPoller
from sopdesk.uploads import UploadBatchResult, UploadOrchestrator, UploadProgress


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Upload documents into a sopdesk store")
    parser.add_argument("files", nargs="+", help="Files to upload, in order")
    parser.add_argument(
        "--store",
        help="Store name or display name (created when missing; defaults to a new chat-session store)",
    )
    parser.add_argument("--version", dest="doc_version", help="Document version, e.g. 2.1.0")
    parser.add_argument("--notes", help="Version notes")
    parser.add_argument("--category", help="Document category")
    parser.add_argument("--tags", help="Comma separated tags")
    return parser


def _print_progress(progress: UploadProgress) -> None:
    label = f" {progress.file_label}" if progress.file_label else ""
    print(f"[{progress.current:>3}/{progress.total}] {progress.message}{label}")


def _print_summary(result: UploadBatchResult) -> None:
    print(f"Store: {result.store.display_name} ({result.store.name})")
    for outcome in result.outcomes:
        suffix = f": {outcome.error}" if outcome.error else ""
        print(f"  {outcome.state:<13} {outcome.file_name}{suffix}")


async def _run(args: argparse.Namespace, settings: Settings) -> int:
    metadata = None
    if args.doc_version or args.notes or args.category or args.tags:
        metadata = build_document_metadata(
            args.doc_version,
            notes=args.notes,
            category=args.category,
            tags=parse_tags(args.tags),
        )
        ensure_valid_metadata(metadata)
    files = [SourceFile.from_path(path) for path in args.files]

    async with BackendClient(credentials=credentials_from_settings(settings), **settings.client_kwargs()) as client:
        metrics = settings.build_metrics_recorder()
        orchestrator = UploadOrchestrator(
            client,
            OperationPoller(
                client.get_operation,
                interval=settings.poll_interval,
                max_attempts=settings.poll_max_attempts,
                metrics=metrics,
            ),
            store_creation_weight=settings.store_creation_weight,
            total=settings.progress_total,
            session_store_prefix=settings.session_store_prefix,
            metrics=metrics,
        )
        target = args.store or orchestrator.session_store_name()
        result = await orchestrator.upload_all(
            target,
            files,
            (lambda _file: metadata) if metadata else None,
            on_progress=_print_progress,
        )
    _print_summary(result)
    return 0 if result.ok else 1


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)

    try:
        return asyncio.run(_run(args, Settings.from_env()))
    except MetadataValidationError as exc:
        parser.error(str(exc))
        return 2
    except OSError as exc:
        print(f"Cannot read file: {exc}", file=sys.stderr)
        return 1
    except SopDeskError as exc:
        details = error_details(exc)
        print(details.message if details else str(exc), file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover - CLI entry
    sys.exit(main())
