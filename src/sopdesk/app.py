"""FastAPI service exposing store management, uploads, documents, queries and speech."""

from __future__ import annotations

import logging
from datetime import datetime

from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse, Response

from .client import BackendClient, SourceFile, Store
from .config import Settings
from .credentials import credentials_from_settings
from .documents import (
    DocumentFilter,
    ManagedDocument,
    aggregate_stats,
    build_report,
    document_versions,
    enrich,
    export_csv,
    filter_documents,
    filter_options,
    sort_documents,
)
from .errors import (
    CredentialError,
    MetadataValidationError,
    NoResponseError,
    OperationTimeout,
    SopDeskError,
    TransportError,
    error_details,
)
from .metadata import build_document_metadata, ensure_valid_metadata, parse_tags
from .observability import MetricsRecorder
from .operations import OperationPoller
from .uploads import UploadJobManager, UploadOrchestrator

logger = logging.getLogger(__name__)


_LOGGING_CONFIGURED = False


def _ensure_logging() -> None:
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return

    sopdesk_logger = logging.getLogger("sopdesk")
    uvicorn_logger = logging.getLogger("uvicorn.error")

    handlers = list(uvicorn_logger.handlers)
    if handlers:
        sopdesk_logger.handlers = []
        for handler in handlers:
            sopdesk_logger.addHandler(handler)
    else:
        handler = logging.StreamHandler()
        handler.setLevel(logging.INFO)
        handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s"))
        sopdesk_logger.addHandler(handler)

    if sopdesk_logger.level == logging.NOTSET or sopdesk_logger.level > logging.INFO:
        sopdesk_logger.setLevel(logging.INFO)
    sopdesk_logger.propagate = False
    _LOGGING_CONFIGURED = True


class ApplicationState:
    """Container for runtime dependencies used by the FastAPI app."""

    def __init__(
        self,
        *,
        settings: Settings,
        client: BackendClient,
        orchestrator: UploadOrchestrator,
        upload_jobs: UploadJobManager,
        metrics: MetricsRecorder | None,
    ) -> None:
        self.settings = settings
        self.client = client
        self.orchestrator = orchestrator
        self.upload_jobs = upload_jobs
        self.metrics = metrics


def _status_for(exc: SopDeskError) -> int:
    if isinstance(exc, CredentialError):
        return 401
    if isinstance(exc, MetadataValidationError):
        return 400
    if isinstance(exc, NoResponseError):
        return 502
    if isinstance(exc, OperationTimeout):
        return 504
    if isinstance(exc, TransportError) and exc.status_code and exc.status_code >= 400:
        return exc.status_code
    return 502


def create_app(
    *,
    settings: Settings | None = None,
    client: BackendClient | None = None,
    orchestrator: UploadOrchestrator | None = None,
    upload_jobs: UploadJobManager | None = None,
    metrics: MetricsRecorder | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    _ensure_logging()

    settings = settings or Settings.from_env()
    metrics = metrics or settings.build_metrics_recorder()
    owns_client = client is None
    client = client or BackendClient(credentials=credentials_from_settings(settings), **settings.client_kwargs())
    orchestrator = orchestrator or UploadOrchestrator(
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
    upload_jobs = upload_jobs or UploadJobManager()
    logger.info("app.start backend=%s", settings.api_root)

    app = FastAPI()
    app.state.services = ApplicationState(
        settings=settings,
        client=client,
        orchestrator=orchestrator,
        upload_jobs=upload_jobs,
        metrics=metrics,
    )

    @app.on_event("shutdown")
    async def _close_client() -> None:
        if owns_client:
            await client.aclose()

    @app.exception_handler(SopDeskError)
    async def _handle_sopdesk_error(request: Request, exc: SopDeskError) -> JSONResponse:
        details = error_details(exc)
        status_code = _status_for(exc)
        logger.warning("request.failed path=%s status=%s error=%s", request.url.path, status_code, exc)
        return JSONResponse({"error": details.to_dict() if details else None}, status_code=status_code)

    def get_state(request: Request) -> ApplicationState:
        return request.app.state.services

    def get_settings_dependency(request: Request) -> Settings:
        return get_state(request).settings

    def get_client(request: Request) -> BackendClient:
        return get_state(request).client

    def get_orchestrator(request: Request) -> UploadOrchestrator:
        return get_state(request).orchestrator

    def get_upload_jobs(request: Request) -> UploadJobManager:
        return get_state(request).upload_jobs

    def get_metrics(request: Request) -> MetricsRecorder | None:
        return get_state(request).metrics

    async def load_documents(backend: BackendClient, store: str | None = None) -> list[ManagedDocument]:
        return [enrich(document) for document in await backend.list_documents(store)]

    # Stores -----------------------------------------------------------------

    @app.get("/stores", response_class=JSONResponse)
    async def list_stores(backend: BackendClient = Depends(get_client)) -> JSONResponse:
        stores = await backend.list_stores()
        return JSONResponse({"stores": [store.to_dict() for store in stores]})

    @app.post("/stores", response_class=JSONResponse)
    async def create_store(request: Request, backend: BackendClient = Depends(get_client)) -> JSONResponse:
        payload = await request.json()
        display_name = str(payload.get("displayName", "")).strip()
        if not display_name:
            raise HTTPException(status_code=400, detail="displayName is required")
        store = await backend.create_store(display_name)
        return JSONResponse(store.to_dict(), status_code=201)

    @app.delete("/stores/{name:path}", response_class=JSONResponse)
    async def delete_store(name: str, backend: BackendClient = Depends(get_client)) -> JSONResponse:
        await backend.delete_store(name)
        return JSONResponse({"deleted": name})

    # Uploads ----------------------------------------------------------------

    @app.post("/uploads", response_class=JSONResponse)
    async def create_upload(
        background_tasks: BackgroundTasks,
        files: list[UploadFile] = File(...),
        store: str | None = Form(None),
        version: str | None = Form(None),
        notes: str | None = Form(None),
        category: str | None = Form(None),
        tags: str | None = Form(None),
        uploader: UploadOrchestrator = Depends(get_orchestrator),
        job_manager: UploadJobManager = Depends(get_upload_jobs),
    ) -> JSONResponse:
        if not files:
            raise HTTPException(status_code=400, detail="At least one file is required")

        metadata = None
        if version is not None or notes or category or tags:
            metadata = build_document_metadata(version, notes=notes, category=category, tags=parse_tags(tags))
            ensure_valid_metadata(metadata)

        sources: list[SourceFile] = []
        for upload in files:
            filename = upload.filename or "document"
            data = await upload.read()
            if not data:
                raise HTTPException(status_code=400, detail=f"File {filename} is empty")
            sources.append(SourceFile(name=filename, data=data, mime_type=upload.content_type))

        target = (store or "").strip() or uploader.session_store_name()
        job = job_manager.create_job(target, [source.name for source in sources])
        background_tasks.add_task(_run_upload_job, uploader, job_manager, job.id, target, sources, metadata)
        logger.info("upload.job.queued job=%s store=%s files=%s", job.id, target, len(sources))
        return JSONResponse({"job": job.to_dict()}, status_code=202)

    @app.get("/uploads", response_class=JSONResponse)
    async def list_uploads(job_manager: UploadJobManager = Depends(get_upload_jobs)) -> JSONResponse:
        return JSONResponse({"jobs": [job.to_dict() for job in job_manager.list_jobs()]})

    @app.get("/uploads/{job_id}", response_class=JSONResponse)
    async def get_upload(job_id: str, job_manager: UploadJobManager = Depends(get_upload_jobs)) -> JSONResponse:
        job = job_manager.get(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Upload job not found")
        return JSONResponse({"job": job.to_dict()})

    # Documents --------------------------------------------------------------

    @app.get("/documents", response_class=JSONResponse)
    async def list_documents(
        store: str | None = Query(None),
        search: str | None = Query(None),
        store_names: list[str] | None = Query(None, alias="store_name"),
        versions: list[str] | None = Query(None, alias="version"),
        tags: list[str] | None = Query(None, alias="tag"),
        start: datetime | None = Query(None),
        end: datetime | None = Query(None),
        sort_by: str | None = Query(None),
        sort_order: str = Query("asc"),
        backend: BackendClient = Depends(get_client),
    ) -> JSONResponse:
        if (start is None) != (end is None):
            raise HTTPException(status_code=400, detail="start and end must be provided together")
        documents = await load_documents(backend, store)
        criteria = DocumentFilter(
            search_term=search,
            store_names=store_names or (),
            versions=versions or (),
            tags=tags or (),
            date_range=(start, end) if start is not None and end is not None else None,
        )
        documents = filter_documents(documents, criteria)
        if sort_by:
            try:
                documents = sort_documents(documents, sort_by, sort_order)
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=str(exc)) from exc
        return JSONResponse({"documents": [doc.to_dict() for doc in documents]})

    @app.get("/documents/stats", response_class=JSONResponse)
    async def document_stats(backend: BackendClient = Depends(get_client)) -> JSONResponse:
        documents = await load_documents(backend)
        return JSONResponse(aggregate_stats(documents).to_dict())

    @app.get("/documents/options", response_class=JSONResponse)
    async def document_options(backend: BackendClient = Depends(get_client)) -> JSONResponse:
        documents = await load_documents(backend)
        return JSONResponse(filter_options(documents))

    @app.get("/documents/export")
    async def export_documents(
        store: str | None = Query(None),
        backend: BackendClient = Depends(get_client),
    ) -> Response:
        documents = await load_documents(backend, store)
        return Response(
            content=export_csv(documents),
            media_type="text/csv; charset=utf-8",
            headers={"Content-Disposition": 'attachment; filename="documents.csv"'},
        )

    @app.get("/documents/versions", response_class=JSONResponse)
    async def versions_of_document(
        name: str = Query(...),
        backend: BackendClient = Depends(get_client),
    ) -> JSONResponse:
        documents = await load_documents(backend)
        family = document_versions(documents, name)
        return JSONResponse({"documents": [doc.to_dict() for doc in family]})

    @app.get("/documents/report", response_class=JSONResponse)
    async def document_report(backend: BackendClient = Depends(get_client)) -> JSONResponse:
        documents = await load_documents(backend)
        return JSONResponse(build_report(documents))

    @app.post("/documents/bulk-delete", response_class=JSONResponse)
    async def bulk_delete(request: Request, backend: BackendClient = Depends(get_client)) -> JSONResponse:
        payload = await request.json()
        names = [str(name) for name in payload.get("names") or [] if str(name).strip()]
        if not names:
            raise HTTPException(status_code=400, detail="names must list at least one document")
        result = await backend.bulk_delete_documents(names)
        return JSONResponse(result.to_dict())

    @app.delete("/documents/{name:path}", response_class=JSONResponse)
    async def delete_document(name: str, backend: BackendClient = Depends(get_client)) -> JSONResponse:
        await backend.delete_document(name)
        return JSONResponse({"deleted": name})

    # Query and speech -------------------------------------------------------

    @app.post("/query", response_class=JSONResponse)
    async def query_store(
        request: Request,
        backend: BackendClient = Depends(get_client),
        settings_inst: Settings = Depends(get_settings_dependency),
    ) -> JSONResponse:
        payload = await request.json()
        store = str(payload.get("store", "")).strip()
        question = str(payload.get("query", "")).strip()
        if not store or not question:
            raise HTTPException(status_code=400, detail="store and query are required")
        language = str(payload.get("language") or settings_inst.default_language)
        result = await backend.file_search(store, question, language)
        return JSONResponse(result.to_dict())

    @app.get("/query/suggestions", response_class=JSONResponse)
    async def query_suggestions(
        store: str = Query(...),
        language: str | None = Query(None),
        backend: BackendClient = Depends(get_client),
        settings_inst: Settings = Depends(get_settings_dependency),
    ) -> JSONResponse:
        questions = await backend.generate_example_questions(store, language or settings_inst.default_language)
        return JSONResponse({"questions": questions})

    @app.post("/speech", response_class=JSONResponse)
    async def synthesize_speech(
        request: Request,
        backend: BackendClient = Depends(get_client),
        settings_inst: Settings = Depends(get_settings_dependency),
    ) -> JSONResponse:
        payload = await request.json()
        text = str(payload.get("text", "")).strip()
        if not text:
            raise HTTPException(status_code=400, detail="text is required")
        audio = await backend.generate_speech(text)
        return JSONResponse({"audio": audio, "sampleRate": settings_inst.output_sample_rate})

    @app.get("/metrics")
    async def metrics_endpoint(metrics: MetricsRecorder | None = Depends(get_metrics)) -> Response:
        if metrics is None or not metrics.prometheus_enabled:
            raise HTTPException(status_code=404, detail="Metrics export disabled")
        return Response(content=metrics.render_prometheus(), media_type=metrics.prometheus_content_type)

    return app


async def _run_upload_job(
    orchestrator: UploadOrchestrator,
    job_manager: UploadJobManager,
    job_id: str,
    target: Store | str,
    files: list[SourceFile],
    metadata,
) -> None:
    builder = (lambda _file: metadata) if metadata else None
    try:
        async for progress in orchestrator.stream_upload(target, files, builder):
            job_manager.record_progress(job_id, progress)
    except SopDeskError as exc:
        details = error_details(exc)
        logger.warning("upload.job.failed job=%s error=%s", job_id, exc)
        job_manager.mark_failed(job_id, details.message if details else str(exc))
    except Exception as exc:
        logger.exception("upload.job.crashed job=%s", job_id)
        job_manager.mark_failed(job_id, str(exc) or exc.__class__.__name__)


__all__ = ["ApplicationState", "create_app"]
