"""Sequential upload orchestration with weighted progress reporting."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Protocol, Sequence
from uuid import uuid4

from .client import SourceFile, Store, UploadReceipt
from .errors import SopDeskError, UploadBatchError, error_details
from .metadata import CustomMetadata, ensure_valid_metadata
from .observability import MetricsRecorder
from .operations import CompletionWaiter, OperationHandle, OperationPoller, OperationStatus

logger = logging.getLogger(__name__)

CREATING_INDEX_MESSAGE = "Creating document index..."
EMBEDDING_MESSAGE = "Generating embeddings..."
COMPLETED_MESSAGE = "All set!"
FAILED_MESSAGE = "Upload failed"

SUCCEEDED = "succeeded"
FAILED = "failed"
NOT_ATTEMPTED = "not_attempted"

MetadataBuilder = Callable[[SourceFile], Sequence[CustomMetadata] | None]
ProgressCallback = Callable[["UploadProgress"], Any]


class UploadBackend(Protocol):
    async def list_stores(self) -> list[Store]:  # pragma: no cover - protocol
        ...

    async def create_store(self, display_name: str) -> Store:  # pragma: no cover - protocol
        ...

    async def upload_document(
        self,
        store: Store | str,
        file: SourceFile,
        metadata: Sequence[CustomMetadata] | None = None,
    ) -> UploadReceipt:  # pragma: no cover - protocol
        ...

    async def get_operation(self, handle: OperationHandle) -> OperationStatus:  # pragma: no cover - protocol
        ...


@dataclass(slots=True)
class FileOutcome:
    file_name: str
    state: str = NOT_ATTEMPTED
    error: str | None = None
    exception: BaseException | None = field(default=None, repr=False, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {"file_name": self.file_name, "state": self.state, "error": self.error}


@dataclass(slots=True)
class UploadBatchResult:
    """Per-file outcomes of a batch; files after the first failure are never attempted."""

    store: Store
    outcomes: list[FileOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> list[FileOutcome]:
        return [outcome for outcome in self.outcomes if outcome.state == SUCCEEDED]

    @property
    def failed(self) -> list[FileOutcome]:
        return [outcome for outcome in self.outcomes if outcome.state == FAILED]

    @property
    def not_attempted(self) -> list[FileOutcome]:
        return [outcome for outcome in self.outcomes if outcome.state == NOT_ATTEMPTED]

    @property
    def ok(self) -> bool:
        return all(outcome.state == SUCCEEDED for outcome in self.outcomes)

    @property
    def partial(self) -> bool:
        return bool(self.succeeded) and not self.ok

    @property
    def status(self) -> str:
        if self.ok:
            return "completed"
        return "partial" if self.partial else "failed"

    def raise_for_failure(self) -> None:
        if self.ok:
            return
        failure = self.failed[0].exception if self.failed else None
        raise UploadBatchError(self) from failure

    def to_dict(self) -> dict[str, Any]:
        return {
            "store": self.store.to_dict(),
            "status": self.status,
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
        }


@dataclass(slots=True)
class UploadProgress:
    current: int
    total: int
    message: str
    file_label: str | None = None
    file_index: int | None = None
    result: UploadBatchResult | None = None

    @property
    def percent(self) -> float:
        return 100.0 * self.current / self.total if self.total else 0.0

    @property
    def finished(self) -> bool:
        return self.result is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "current": self.current,
            "total": self.total,
            "message": self.message,
            "file_label": self.file_label,
            "file_index": self.file_index,
            "percent": round(self.percent, 2),
        }


def describe_files(files: Sequence[SourceFile]) -> str:
    """Human label for a chat session's documents."""

    names = [file.name for file in files]
    if len(names) == 1:
        return names[0]
    if len(names) == 2:
        return f"{names[0]} & {names[1]}"
    return f"{len(names)} SOPs"


class UploadOrchestrator:
    """Upload files one at a time into a store, waiting on each ingestion operation."""

    def __init__(
        self,
        client: UploadBackend,
        waiter: CompletionWaiter | None = None,
        *,
        store_creation_weight: int = 5,
        total: int = 100,
        session_store_prefix: str = "chat-session",
        metrics: MetricsRecorder | None = None,
    ) -> None:
        if total <= 0:
            raise ValueError("total must be positive")
        if not 0 <= store_creation_weight <= total:
            raise ValueError("store_creation_weight must be between 0 and total")
        self._client = client
        self._waiter = waiter or OperationPoller(client.get_operation, metrics=metrics)
        self._store_weight = store_creation_weight
        self._total = total
        self._session_prefix = session_store_prefix
        self._metrics = metrics

    def progress_after(self, completed: int, file_count: int) -> int:
        """Progress units once ``completed`` of ``file_count`` files are done."""

        if file_count <= 0:
            return self._total
        span = self._total - self._store_weight
        return self._store_weight + (completed * span) // file_count

    def session_store_name(self, now: datetime | None = None) -> str:
        """Display name of a per-chat store, suffixed with epoch milliseconds."""

        moment = now or datetime.now(timezone.utc)
        return f"{self._session_prefix}-{int(moment.timestamp() * 1000)}"

    async def ensure_store(self, name: str) -> Store:
        """Return the store whose name or display name is ``name``, creating it when absent.

        Two concurrent calls may both miss the store and create duplicates;
        the backend offers no create-if-absent primitive.
        """

        stores = await self._client.list_stores()
        for store in stores:
            if store.name == name:
                return store
        for store in stores:
            if store.display_name == name:
                return store
        store = await self._client.create_store(name)
        logger.info("upload.store.created name=%s display_name=%s", store.name, name)
        return store

    async def stream_upload(
        self,
        target: Store | str,
        files: Sequence[SourceFile],
        metadata_builder: MetadataBuilder | None = None,
    ) -> AsyncIterator[UploadProgress]:
        files = list(files)
        if not files:
            raise ValueError("At least one file is required")

        metadata: list[Sequence[CustomMetadata] | None] = []
        for file in files:
            entries = metadata_builder(file) if metadata_builder else None
            if metadata_builder is not None:
                ensure_valid_metadata(entries or [])
            metadata.append(entries or None)

        count = len(files)
        yield UploadProgress(0, self._total, CREATING_INDEX_MESSAGE)
        store = target if isinstance(target, Store) else await self.ensure_store(target)
        result = UploadBatchResult(store=store, outcomes=[FileOutcome(file.name) for file in files])
        current = self._store_weight
        yield UploadProgress(current, self._total, EMBEDDING_MESSAGE)

        for index, (file, entries) in enumerate(zip(files, metadata)):
            label = f"({index + 1}/{count}) {file.name}"
            yield UploadProgress(current, self._total, EMBEDDING_MESSAGE, file_label=label, file_index=index)
            outcome = result.outcomes[index]
            started = time.perf_counter()
            try:
                receipt = await self._client.upload_document(store, file, entries)
                if receipt.operation is not None:
                    await self._waiter.wait(receipt.operation)
            except SopDeskError as exc:
                details = error_details(exc)
                outcome.state = FAILED
                outcome.error = details.message if details else str(exc)
                outcome.exception = exc
                logger.warning(
                    "upload.file.failed store=%s file=%s error=%s",
                    store.name,
                    file.name,
                    exc,
                )
                if self._metrics:
                    self._metrics.increment("upload.failures", store=store.name)
                    self._metrics.increment("upload.files", status=FAILED)
                yield UploadProgress(current, self._total, FAILED_MESSAGE, file_label=label, file_index=index, result=result)
                return

            outcome.state = SUCCEEDED
            current = self.progress_after(index + 1, count)
            if self._metrics:
                self._metrics.increment("upload.files", status=SUCCEEDED)
                self._metrics.record_timing("upload.file_duration", time.perf_counter() - started)
            logger.info("upload.file.completed store=%s file=%s", store.name, file.name)
            yield UploadProgress(current, self._total, f"Uploaded {file.name}", file_label=label, file_index=index)

        logger.info("upload.batch.completed store=%s files=%s", store.name, count)
        yield UploadProgress(self._total, self._total, COMPLETED_MESSAGE, result=result)

    async def upload_all(
        self,
        target: Store | str,
        files: Sequence[SourceFile],
        metadata_builder: MetadataBuilder | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> UploadBatchResult:
        result: UploadBatchResult | None = None
        async for event in self.stream_upload(target, files, metadata_builder):
            if on_progress is not None:
                on_progress(event)
            if event.result is not None:
                result = event.result
        if result is None:
            raise RuntimeError("Upload stream ended without a result")
        return result

    async def start_chat_session(
        self,
        files: Sequence[SourceFile],
        *,
        now: datetime | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> UploadBatchResult:
        """Create a throwaway store for a chat and load ``files`` into it."""

        store = await self._client.create_store(self.session_store_name(now))
        logger.info("chat.session.created store=%s label=%s", store.name, describe_files(files))
        return await self.upload_all(store, files, on_progress=on_progress)


@dataclass(slots=True)
class UploadJob:
    id: str
    store: str
    file_names: list[str]
    status: str
    created_at: str
    updated_at: str
    progress: UploadProgress | None = None
    result: UploadBatchResult | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "store": self.store,
            "file_names": list(self.file_names),
            "status": self.status,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "progress": self.progress.to_dict() if self.progress else None,
            "result": self.result.to_dict() if self.result else None,
            "error": self.error,
        }


class UploadJobManager:
    """Track background upload batches for the service."""

    def __init__(self) -> None:
        self._jobs: dict[str, UploadJob] = {}
        self._lock = threading.Lock()

    def create_job(self, store: str, file_names: Sequence[str]) -> UploadJob:
        now = self._now()
        job = UploadJob(
            id=uuid4().hex,
            store=store,
            file_names=list(file_names),
            status="pending",
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._jobs[job.id] = job
        return job

    def record_progress(self, job_id: str, progress: UploadProgress) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return
            job.progress = progress
            if progress.result is not None:
                job.result = progress.result
                job.status = progress.result.status
                failed = progress.result.failed
                job.error = failed[0].error if failed else None
            else:
                job.status = "processing"
            job.updated_at = self._now()

    def mark_failed(self, job_id: str, error: str) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return
            job.status = "failed"
            job.error = error
            job.updated_at = self._now()

    def get(self, job_id: str) -> UploadJob | None:
        with self._lock:
            return self._jobs.get(job_id)

    def list_jobs(self) -> list[UploadJob]:
        with self._lock:
            return sorted(self._jobs.values(), key=lambda job: job.created_at)

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()


__all__ = [
    "FileOutcome",
    "UploadBatchResult",
    "UploadJob",
    "UploadJobManager",
    "UploadOrchestrator",
    "UploadProgress",
    "describe_files",
]
