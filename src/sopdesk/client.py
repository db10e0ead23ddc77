"""Async HTTP client for the document-store, grounded-query and speech backend."""

from __future__ import annotations

import json
import logging
import mimetypes
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Sequence
from urllib.parse import quote

import httpx

from .credentials import CredentialProvider, MemoryCredentialProvider
from .errors import NoResponseError, SopDeskError, TransportError, error_details, reclassify
from .metadata import CustomMetadata
from .operations import OperationHandle, OperationStatus

logger = logging.getLogger(__name__)

_DONE_STATUSES = {"completed", "done", "succeeded"}


def _quote(name: str) -> str:
    return quote(name, safe="")


@dataclass(frozen=True, slots=True)
class Store:
    name: str
    display_name: str

    @classmethod
    def from_wire(cls, payload: dict[str, Any]) -> "Store":
        name = str(payload.get("name") or "")
        return cls(name=name, display_name=str(payload.get("displayName") or name))

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "displayName": self.display_name}


@dataclass(slots=True)
class Document:
    """A document as the backend lists it, tagged with its parent store."""

    name: str
    display_name: str
    store_name: str
    store_display_name: str
    custom_metadata: list[CustomMetadata] = field(default_factory=list)
    size_bytes: int | None = None
    mime_type: str | None = None
    create_time: str | None = None
    update_time: str | None = None

    @classmethod
    def from_wire(cls, payload: dict[str, Any], *, store: Store | None = None) -> "Document":
        name = str(payload.get("name") or "")
        store_name = payload.get("storeName") or (store.name if store else None) or _parent_store(name)
        store_display = payload.get("storeDisplayName") or (store.display_name if store else None) or store_name
        raw_size = payload.get("sizeBytes")
        try:
            size = int(raw_size) if raw_size not in (None, "") else None
        except (TypeError, ValueError):
            size = None
        return cls(
            name=name,
            display_name=str(payload.get("displayName") or name),
            store_name=str(store_name or ""),
            store_display_name=str(store_display or ""),
            custom_metadata=[
                CustomMetadata.from_wire(item)
                for item in payload.get("customMetadata") or []
                if isinstance(item, dict)
            ],
            size_bytes=size,
            mime_type=payload.get("mimeType"),
            create_time=payload.get("createTime"),
            update_time=payload.get("updateTime"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "displayName": self.display_name,
            "storeName": self.store_name,
            "storeDisplayName": self.store_display_name,
            "customMetadata": [entry.to_wire() for entry in self.custom_metadata],
            "sizeBytes": self.size_bytes,
            "mimeType": self.mime_type,
            "createTime": self.create_time,
            "updateTime": self.update_time,
        }


def _parent_store(document_name: str) -> str:
    prefix, sep, _ = document_name.rpartition("/documents/")
    return prefix if sep else ""


@dataclass(frozen=True, slots=True)
class SourceFile:
    """In-memory file content queued for upload."""

    name: str
    data: bytes
    mime_type: str | None = None

    @classmethod
    def from_path(cls, path: str | Path) -> "SourceFile":
        path = Path(path)
        mime_type, _ = mimetypes.guess_type(path.name)
        return cls(name=path.name, data=path.read_bytes(), mime_type=mime_type)

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(slots=True)
class UploadReceipt:
    message: str
    status: str
    operation: OperationHandle | None = None

    @classmethod
    def from_wire(cls, payload: dict[str, Any]) -> "UploadReceipt":
        status = str(payload.get("status") or "")
        nested = payload.get("operation") if isinstance(payload.get("operation"), dict) else {}
        operation_name = payload.get("operationId") or nested.get("name")
        done = status.lower() in _DONE_STATUSES or bool(nested.get("done"))
        return cls(
            message=str(payload.get("message") or ""),
            status=status,
            operation=OperationHandle(str(operation_name)) if operation_name and not done else None,
        )


@dataclass(frozen=True, slots=True)
class GroundingChunk:
    text: str | None = None

    @classmethod
    def from_wire(cls, payload: Any) -> "GroundingChunk":
        if not isinstance(payload, dict):
            return cls()
        context = payload.get("retrievedContext") or {}
        return cls(text=context.get("text") if isinstance(context, dict) else None)

    def to_dict(self) -> dict[str, Any]:
        return {"retrievedContext": {"text": self.text}}


@dataclass(slots=True)
class QueryResult:
    text: str
    grounding_chunks: list[GroundingChunk] = field(default_factory=list)

    @classmethod
    def from_wire(cls, payload: dict[str, Any]) -> "QueryResult":
        return cls(
            text=str(payload.get("text") or ""),
            grounding_chunks=[GroundingChunk.from_wire(item) for item in payload.get("groundingChunks") or []],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "groundingChunks": [chunk.to_dict() for chunk in self.grounding_chunks],
        }


@dataclass(slots=True)
class BulkOperationResult:
    success: list[str] = field(default_factory=list)
    failed: list[tuple[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": list(self.success),
            "failed": [{"name": name, "error": error} for name, error in self.failed],
        }


class BackendClient:
    """Thin async wrapper over the backend REST API.

    Every request carries the bearer token from ``credentials``. A 401 answer
    clears the stored token. Failures surface as :class:`TransportError`
    (promoted to :class:`CredentialError` when they describe a credential
    problem) or :class:`NoResponseError` when the backend is unreachable.
    """

    def __init__(
        self,
        *,
        base_url: str,
        credentials: CredentialProvider | None = None,
        timeout: float = 300.0,
        upload_timeout: float = 600.0,
        health_timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._credentials = credentials or MemoryCredentialProvider()
        self._timeout = timeout
        self._upload_timeout = upload_timeout
        self._health_timeout = health_timeout
        self._http = httpx.AsyncClient(
            base_url=f"{self._base_url}/api",
            timeout=timeout,
            transport=transport,
        )

    @property
    def credentials(self) -> CredentialProvider:
        return self._credentials

    async def __aenter__(self) -> "BackendClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # Stores -----------------------------------------------------------------

    async def list_stores(self) -> list[Store]:
        data = await self._request("GET", "/gemini/stores")
        return [Store.from_wire(item) for item in data.get("stores") or []]

    async def create_store(self, display_name: str) -> Store:
        data = await self._request("POST", "/gemini/stores", json={"displayName": display_name})
        store = Store(name=str(data.get("name") or ""), display_name=display_name)
        logger.info("store.created name=%s display_name=%s", store.name, display_name)
        return store

    async def delete_store(self, name: str) -> None:
        await self._request("DELETE", f"/gemini/stores/{_quote(name)}")
        logger.info("store.deleted name=%s", name)

    # Documents --------------------------------------------------------------

    async def list_documents(self, store: Store | str | None = None) -> list[Document]:
        if store is None:
            data = await self._request("GET", "/gemini/documents")
            return [Document.from_wire(item) for item in data.get("documents") or []]
        parent = store if isinstance(store, Store) else None
        store_name = store.name if isinstance(store, Store) else store
        data = await self._request("GET", f"/gemini/stores/{_quote(store_name)}/documents")
        return [Document.from_wire(item, store=parent) for item in data.get("documents") or []]

    async def delete_document(self, name: str) -> None:
        await self._request("DELETE", f"/gemini/documents/{_quote(name)}")
        logger.info("document.deleted name=%s", name)

    async def bulk_delete_documents(self, names: Iterable[str]) -> BulkOperationResult:
        """Delete documents one after another, collecting per-name outcomes."""

        result = BulkOperationResult()
        for name in names:
            try:
                await self.delete_document(name)
            except SopDeskError as exc:
                details = error_details(exc)
                reason = details.message if details else "Unknown error"
                logger.warning("document.delete.failed name=%s error=%s", name, reason)
                result.failed.append((name, reason))
                continue
            result.success.append(name)
        return result

    async def upload_document(
        self,
        store: Store | str,
        file: SourceFile,
        metadata: Sequence[CustomMetadata] | None = None,
    ) -> UploadReceipt:
        store_name = store.name if isinstance(store, Store) else store
        files = {"file": (file.name, file.data, file.mime_type or "application/octet-stream")}
        if metadata:
            path = f"/gemini/stores/{_quote(store_name)}/upload-with-metadata"
            form = {"metadata": json.dumps([entry.to_wire() for entry in metadata])}
        else:
            path = f"/gemini/stores/{_quote(store_name)}/upload"
            form = None
        data = await self._request("POST", path, files=files, data=form, timeout=self._upload_timeout)
        receipt = UploadReceipt.from_wire(data)
        logger.info(
            "upload.accepted store=%s file=%s status=%s operation=%s",
            store_name,
            file.name,
            receipt.status,
            receipt.operation.name if receipt.operation else None,
        )
        return receipt

    async def get_operation(self, handle: OperationHandle) -> OperationStatus:
        data = await self._request("GET", f"/gemini/operations/{_quote(handle.name)}")
        return OperationStatus.from_payload(handle.name, data)

    # Query and speech -------------------------------------------------------

    async def file_search(self, store: Store | str, query: str, language: str = "en") -> QueryResult:
        store_name = store.name if isinstance(store, Store) else store
        data = await self._request(
            "POST",
            "/gemini/search",
            json={"ragStoreName": store_name, "query": query, "language": language or "en"},
        )
        return QueryResult.from_wire(data)

    async def generate_example_questions(self, store: Store | str, language: str = "en") -> list[str]:
        store_name = store.name if isinstance(store, Store) else store
        try:
            data = await self._request(
                "POST",
                "/gemini/generate-questions",
                json={"ragStoreName": store_name, "language": language or "en"},
            )
        except SopDeskError as exc:
            logger.warning("questions.generate.failed store=%s error=%s", store_name, exc)
            return []
        return [str(item) for item in data.get("questions") or []]

    async def generate_speech(self, text: str) -> str:
        data = await self._request("POST", "/gemini/generate-speech", json={"text": text})
        return str(data.get("audio") or "")

    async def check_health(self) -> dict[str, Any]:
        return await self._request("GET", f"{self._base_url}/health", timeout=self._health_timeout)

    # Transport --------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        token = self._credentials.get()
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def _request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        files: Any = None,
        data: Any = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        logger.debug("backend.request method=%s url=%s", method, url)
        try:
            response = await self._http.request(
                method,
                url,
                json=json,
                files=files,
                data=data,
                headers=self._headers(),
                timeout=timeout if timeout is not None else self._timeout,
            )
        except httpx.TransportError as exc:
            logger.warning("backend.unreachable method=%s url=%s error=%s", method, url, exc)
            raise NoResponseError() from exc

        if response.status_code == 401:
            logger.warning("backend.unauthorized url=%s", url)
            self._credentials.clear()
        if response.is_error:
            raise reclassify(_transport_error(response))

        if not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError:
            return {}
        return payload if isinstance(payload, dict) else {"data": payload}


def _transport_error(response: httpx.Response) -> TransportError:
    try:
        payload = response.json()
    except ValueError:
        payload = response.text or None

    message = None
    code = None
    if isinstance(payload, dict):
        nested = payload.get("error")
        if isinstance(nested, dict):
            message = nested.get("message")
            code = nested.get("status") or nested.get("code")
        elif isinstance(nested, str):
            message = nested
        message = payload.get("message") or message
        code = payload.get("code") or code
    if code is not None and not isinstance(code, str):
        code = None
    return TransportError(
        str(message or "An error occurred"),
        status_code=response.status_code,
        details=payload,
        code=code,
    )


__all__ = [
    "BackendClient",
    "BulkOperationResult",
    "Document",
    "GroundingChunk",
    "QueryResult",
    "SourceFile",
    "Store",
    "UploadReceipt",
]
