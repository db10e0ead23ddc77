from __future__ import annotations

import json

import httpx
import pytest

from sopdesk.client import BackendClient, Document, SourceFile, Store, UploadReceipt
from sopdesk.credentials import MemoryCredentialProvider
from sopdesk.errors import CredentialError, NoResponseError, TransportError
from sopdesk.metadata import build_document_metadata
from sopdesk.operations import OperationHandle


class RecordingHandler:
    def __init__(self, routes: dict[tuple[str, str], httpx.Response]) -> None:
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.raw_path.decode("ascii"))
        if key not in self.routes:
            return httpx.Response(404, json={"message": f"no route for {key}"})
        return self.routes[key]


def _client(handler, token: str | None = "secret") -> BackendClient:
    return BackendClient(
        base_url="http://backend.test/",
        credentials=MemoryCredentialProvider(token),
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_list_stores_sends_bearer_token() -> None:
    handler = RecordingHandler(
        {
            ("GET", "/api/gemini/stores"): httpx.Response(
                200,
                json={"stores": [{"name": "fileSearchStores/abc", "displayName": "Line 4"}]},
            )
        }
    )

    async with _client(handler) as client:
        stores = await client.list_stores()

    assert stores == [Store(name="fileSearchStores/abc", display_name="Line 4")]
    assert handler.requests[0].headers["Authorization"] == "Bearer secret"


@pytest.mark.asyncio
async def test_store_documents_path_escapes_store_name() -> None:
    handler = RecordingHandler(
        {
            ("GET", "/api/gemini/stores/fileSearchStores%2Fabc/documents"): httpx.Response(
                200,
                json={
                    "documents": [
                        {
                            "name": "fileSearchStores/abc/documents/doc-1",
                            "displayName": "Press SOP",
                            "sizeBytes": "2048",
                            "customMetadata": [{"key": "version", "stringValue": "1.2"}],
                        }
                    ]
                },
            )
        }
    )
    store = Store(name="fileSearchStores/abc", display_name="Line 4")

    async with _client(handler) as client:
        documents = await client.list_documents(store)

    assert len(documents) == 1
    document = documents[0]
    assert document.store_name == "fileSearchStores/abc"
    assert document.store_display_name == "Line 4"
    assert document.size_bytes == 2048
    assert document.custom_metadata[0].string_value == "1.2"


def test_document_from_wire_derives_parent_store() -> None:
    document = Document.from_wire({"name": "fileSearchStores/xyz/documents/d1"})

    assert document.store_name == "fileSearchStores/xyz"
    assert document.display_name == "fileSearchStores/xyz/documents/d1"
    assert document.size_bytes is None


@pytest.mark.asyncio
async def test_create_and_delete_store() -> None:
    handler = RecordingHandler(
        {
            ("POST", "/api/gemini/stores"): httpx.Response(200, json={"name": "fileSearchStores/new"}),
            ("DELETE", "/api/gemini/stores/fileSearchStores%2Fnew"): httpx.Response(204),
        }
    )

    async with _client(handler) as client:
        store = await client.create_store("Packaging")
        await client.delete_store(store.name)

    assert store == Store(name="fileSearchStores/new", display_name="Packaging")
    assert json.loads(handler.requests[0].content) == {"displayName": "Packaging"}


@pytest.mark.asyncio
async def test_upload_with_metadata_uses_metadata_endpoint() -> None:
    handler = RecordingHandler(
        {
            ("POST", "/api/gemini/stores/fileSearchStores%2Fabc/upload-with-metadata"): httpx.Response(
                200,
                json={"message": "Upload started", "operationId": "operations/op-1", "status": "processing"},
            )
        }
    )
    metadata = build_document_metadata("2.1.0", notes="Checked, approved")

    async with _client(handler) as client:
        receipt = await client.upload_document(
            "fileSearchStores/abc",
            SourceFile(name="press.pdf", data=b"%PDF-1.4", mime_type="application/pdf"),
            metadata,
        )

    assert receipt.operation == OperationHandle("operations/op-1")
    body = handler.requests[0].content
    assert b'name="file"; filename="press.pdf"' in body
    assert b'name="metadata"' in body
    assert b'"stringValue": "2.1.0"' in body


@pytest.mark.asyncio
async def test_upload_without_metadata_uses_plain_endpoint() -> None:
    handler = RecordingHandler(
        {
            ("POST", "/api/gemini/stores/s1/upload"): httpx.Response(
                200,
                json={"message": "Uploaded", "status": "completed", "operationId": "operations/done"},
            )
        }
    )

    async with _client(handler) as client:
        receipt = await client.upload_document("s1", SourceFile(name="a.txt", data=b"hello"))

    assert receipt.operation is None
    assert receipt.status == "completed"


def test_upload_receipt_reads_nested_operation() -> None:
    receipt = UploadReceipt.from_wire({"operation": {"name": "operations/nested", "done": False}})

    assert receipt.operation == OperationHandle("operations/nested")


@pytest.mark.asyncio
async def test_unauthorized_response_clears_token_and_raises_credential_error() -> None:
    handler = RecordingHandler(
        {
            ("GET", "/api/gemini/stores"): httpx.Response(
                401,
                json={"error": {"message": "API key not valid", "status": "UNAUTHENTICATED"}},
            )
        }
    )
    client = _client(handler)

    with pytest.raises(CredentialError) as excinfo:
        await client.list_stores()
    await client.aclose()

    assert excinfo.value.status_code == 401
    assert client.credentials.get() is None


@pytest.mark.asyncio
async def test_error_body_message_is_preserved() -> None:
    handler = RecordingHandler(
        {("DELETE", "/api/gemini/documents/d1"): httpx.Response(500, json={"message": "Store is locked"})}
    )

    async with _client(handler) as client:
        with pytest.raises(TransportError) as excinfo:
            await client.delete_document("d1")

    assert not isinstance(excinfo.value, CredentialError)
    assert excinfo.value.message == "Store is locked"
    assert excinfo.value.status_code == 500


@pytest.mark.asyncio
async def test_network_failure_raises_no_response() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with _client(handler) as client:
        with pytest.raises(NoResponseError):
            await client.list_stores()


@pytest.mark.asyncio
async def test_bulk_delete_collects_successes_and_failures() -> None:
    handler = RecordingHandler(
        {
            ("DELETE", "/api/gemini/documents/s%2Fdocuments%2Fa"): httpx.Response(200, json={}),
            ("DELETE", "/api/gemini/documents/s%2Fdocuments%2Fb"): httpx.Response(
                500, json={"message": "Document is in use"}
            ),
        }
    )

    async with _client(handler) as client:
        result = await client.bulk_delete_documents(["s/documents/a", "s/documents/b"])

    assert result.success == ["s/documents/a"]
    assert result.failed == [("s/documents/b", "Document is in use")]
    assert result.to_dict()["failed"] == [{"name": "s/documents/b", "error": "Document is in use"}]


@pytest.mark.asyncio
async def test_file_search_and_questions() -> None:
    handler = RecordingHandler(
        {
            ("POST", "/api/gemini/search"): httpx.Response(
                200,
                json={
                    "text": "Wear gloves.",
                    "groundingChunks": [{"retrievedContext": {"text": "Step 3: gloves"}}, {}],
                },
            ),
            ("POST", "/api/gemini/generate-questions"): httpx.Response(503, json={"message": "busy"}),
        }
    )

    async with _client(handler) as client:
        result = await client.file_search("s1", "What PPE is needed?", "de")
        questions = await client.generate_example_questions("s1")

    assert result.text == "Wear gloves."
    assert [chunk.text for chunk in result.grounding_chunks] == ["Step 3: gloves", None]
    assert json.loads(handler.requests[0].content) == {
        "ragStoreName": "s1",
        "query": "What PPE is needed?",
        "language": "de",
    }
    assert questions == []


@pytest.mark.asyncio
async def test_generate_speech_and_health_check() -> None:
    handler = RecordingHandler(
        {
            ("POST", "/api/gemini/generate-speech"): httpx.Response(200, json={"audio": "AAAA"}),
            ("GET", "/health"): httpx.Response(200, json={"status": "ok"}),
        }
    )

    async with _client(handler) as client:
        audio = await client.generate_speech("Hello")
        health = await client.check_health()

    assert audio == "AAAA"
    assert health == {"status": "ok"}
