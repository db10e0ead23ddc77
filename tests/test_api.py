from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from sopdesk.app import create_app
from sopdesk.client import BulkOperationResult, Document, GroundingChunk, QueryResult, Store
from sopdesk.config import Settings
from sopdesk.errors import CredentialError, NoResponseError
from sopdesk.metadata import CustomMetadata
from sopdesk.uploads import UploadJobManager, UploadOrchestrator


class FakeApiClient:
    def __init__(self, backend) -> None:
        self.backend = backend
        self.deleted: list[str] = []
        self.searches: list[tuple[str, str, str]] = []
        self.documents = [
            Document(
                name="fileSearchStores/line-4/documents/press",
                display_name="Press SOP v1.0",
                store_name="fileSearchStores/line-4",
                store_display_name="Line 4",
                custom_metadata=[
                    CustomMetadata.string("version", "1.0"),
                    CustomMetadata.string("tags", "safety"),
                ],
                size_bytes=1024,
                create_time="2024-05-01T08:00:00Z",
            ),
            Document(
                name="fileSearchStores/line-4/documents/press-2",
                display_name="Press SOP v2.0",
                store_name="fileSearchStores/line-4",
                store_display_name="Line 4",
                custom_metadata=[
                    CustomMetadata.string("version", "2.0"),
                    CustomMetadata.string("notes", "New guard, new torque"),
                ],
                size_bytes=2048,
                create_time="2024-06-01T08:00:00Z",
            ),
            Document(
                name="fileSearchStores/line-5/documents/weld",
                display_name="Weld SOP",
                store_name="fileSearchStores/line-5",
                store_display_name="Line 5",
                create_time=None,
            ),
        ]

    async def list_stores(self) -> list[Store]:
        return await self.backend.list_stores()

    async def create_store(self, display_name: str) -> Store:
        return await self.backend.create_store(display_name)

    async def delete_store(self, name: str) -> None:
        self.deleted.append(name)

    async def list_documents(self, store=None) -> list[Document]:
        if store is None:
            return list(self.documents)
        return [doc for doc in self.documents if doc.store_name == store]

    async def delete_document(self, name: str) -> None:
        if name.endswith("locked"):
            raise CredentialError("Permission denied", status_code=403, code="PERMISSION_DENIED")
        self.deleted.append(name)

    async def bulk_delete_documents(self, names) -> BulkOperationResult:
        result = BulkOperationResult()
        for name in names:
            if name.endswith("missing"):
                result.failed.append((name, "Not found"))
            else:
                result.success.append(name)
        return result

    async def file_search(self, store, query, language="en") -> QueryResult:
        self.searches.append((store, query, language))
        return QueryResult(text="Wear gloves.", grounding_chunks=[GroundingChunk(text="Step 3")])

    async def generate_example_questions(self, store, language="en") -> list[str]:
        return [f"What is step 1? ({language})"]

    async def generate_speech(self, text: str) -> str:
        if text == "offline":
            raise NoResponseError()
        return "AAAA"

    async def get_operation(self, handle):
        return await self.backend.get_operation(handle)

    async def upload_document(self, store, file, metadata=None):
        return await self.backend.upload_document(store, file, metadata)

    async def aclose(self) -> None:
        return None


@pytest.fixture()
def api(backend, waiter):
    fake = FakeApiClient(backend)
    app = create_app(
        settings=Settings(default_language="en"),
        client=fake,
        orchestrator=UploadOrchestrator(fake, waiter),
        upload_jobs=UploadJobManager(),
    )
    with TestClient(app) as client:
        yield client, fake, backend


def test_store_endpoints(api) -> None:
    client, fake, backend = api

    created = client.post("/stores", json={"displayName": "Packaging"})
    listed = client.get("/stores")
    deleted = client.delete("/stores/fileSearchStores/packaging-1")

    assert created.status_code == 201
    assert created.json()["displayName"] == "Packaging"
    assert listed.json()["stores"] == [created.json()]
    assert deleted.json() == {"deleted": "fileSearchStores/packaging-1"}
    assert fake.deleted == ["fileSearchStores/packaging-1"]
    assert client.post("/stores", json={"displayName": " "}).status_code == 400


def test_upload_runs_in_background_and_reports_job(api) -> None:
    client, _, backend = api

    response = client.post(
        "/uploads",
        files=[
            ("files", ("a.pdf", b"first", "application/pdf")),
            ("files", ("b.pdf", b"second", "application/pdf")),
        ],
        data={"store": "Line 4", "version": "2.1.0", "tags": "safety, press"},
    )

    assert response.status_code == 202
    job_id = response.json()["job"]["id"]
    job = client.get(f"/uploads/{job_id}").json()["job"]
    assert job["status"] == "completed"
    assert job["file_names"] == ["a.pdf", "b.pdf"]
    assert job["progress"]["current"] == 100
    assert [name for _, name, _ in backend.uploads] == ["a.pdf", "b.pdf"]
    metadata = backend.uploads[0][2]
    assert [entry.key for entry in metadata] == ["version", "tags"]
    assert client.get("/uploads").json()["jobs"][0]["id"] == job_id


def test_upload_without_store_uses_session_store(api) -> None:
    client, _, backend = api

    response = client.post("/uploads", files=[("files", ("a.pdf", b"x", "application/pdf"))])

    assert response.status_code == 202
    assert response.json()["job"]["store"].startswith("chat-session-")
    assert backend.created[0].startswith("chat-session-")
    assert backend.uploads[0][2] is None


def test_upload_rejects_invalid_metadata_and_empty_files(api) -> None:
    client, _, backend = api

    invalid = client.post(
        "/uploads",
        files=[("files", ("a.pdf", b"x", "application/pdf"))],
        data={"version": "two"},
    )
    missing_version = client.post(
        "/uploads",
        files=[("files", ("a.pdf", b"x", "application/pdf"))],
        data={"notes": "Draft"},
    )
    empty = client.post("/uploads", files=[("files", ("a.pdf", b"", "application/pdf"))])

    assert invalid.status_code == 400
    assert invalid.json()["error"]["details"] == ["Version must be in format: X.Y.Z (e.g., 2.1.0)"]
    assert missing_version.status_code == 400
    assert missing_version.json()["error"]["message"] == "Version number is required"
    assert empty.status_code == 400
    assert backend.uploads == []


def test_upload_failure_is_recorded_on_job(make_backend, waiter) -> None:
    fake = FakeApiClient(make_backend(fail_on={"a.pdf"}))
    app = create_app(settings=Settings(), client=fake, orchestrator=UploadOrchestrator(fake, waiter))

    with TestClient(app) as client:
        job_id = client.post(
            "/uploads",
            files=[("files", ("a.pdf", b"x", "application/pdf"))],
            data={"store": "Line 4"},
        ).json()["job"]["id"]
        job = client.get(f"/uploads/{job_id}").json()["job"]

    assert job["status"] == "failed"
    assert job["error"] == "Upload rejected for a.pdf"
    assert job["result"]["outcomes"][0]["state"] == "failed"


def test_unknown_upload_job_is_404(api) -> None:
    client, _, _ = api

    assert client.get("/uploads/nope").status_code == 404


def test_documents_listing_filters_and_sorts(api) -> None:
    client, _, _ = api

    everything = client.get("/documents").json()["documents"]
    by_tag = client.get("/documents", params={"tag": "safety"}).json()["documents"]
    by_store = client.get("/documents", params={"store": "fileSearchStores/line-5"}).json()["documents"]
    sorted_docs = client.get("/documents", params={"sort_by": "version", "sort_order": "desc"}).json()["documents"]
    dated = client.get(
        "/documents",
        params={"start": "2024-05-15T00:00:00Z", "end": "2024-06-30T00:00:00Z"},
    ).json()["documents"]

    assert len(everything) == 3
    assert [doc["displayName"] for doc in by_tag] == ["Press SOP v1.0"]
    assert [doc["displayName"] for doc in by_store] == ["Weld SOP"]
    assert [doc["version"] for doc in sorted_docs] == ["2.0", "1.0", "N/A"]
    assert [doc["displayName"] for doc in dated] == ["Press SOP v2.0"]


def test_documents_listing_validates_parameters(api) -> None:
    client, _, _ = api

    assert client.get("/documents", params={"start": "2024-05-15T00:00:00Z"}).status_code == 400
    assert client.get("/documents", params={"sort_by": "size"}).status_code == 400


def test_document_stats_options_versions_and_report(api) -> None:
    client, _, _ = api

    stats = client.get("/documents/stats").json()
    options = client.get("/documents/options").json()
    versions = client.get("/documents/versions", params={"name": "Press SOP"}).json()["documents"]
    report = client.get("/documents/report").json()

    assert stats["totalDocuments"] == 3
    assert stats["documentsByStore"] == {"Line 4": 2, "Line 5": 1}
    assert stats["storageUsed"] == 3072
    assert options["stores"][0]["count"] == 2
    assert [doc["version"] for doc in versions] == ["2.0", "1.0"]
    assert report["summary"]["totalDocuments"] == 3
    assert "timestamp" in report


def test_document_export_is_csv_attachment(api) -> None:
    client, _, _ = api

    response = client.get("/documents/export", params={"store": "fileSearchStores/line-4"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert "attachment" in response.headers["content-disposition"]
    lines = response.text.split("\n")
    assert len(lines) == 3
    assert '"New guard, new torque"' in lines[2]


def test_document_delete_and_bulk_delete(api) -> None:
    client, fake, _ = api

    deleted = client.delete("/documents/fileSearchStores/line-4/documents/press")
    bulk = client.post(
        "/documents/bulk-delete",
        json={"names": ["fileSearchStores/line-4/documents/a", "fileSearchStores/line-4/documents/missing"]},
    )

    assert deleted.json() == {"deleted": "fileSearchStores/line-4/documents/press"}
    assert fake.deleted == ["fileSearchStores/line-4/documents/press"]
    assert bulk.json() == {
        "success": ["fileSearchStores/line-4/documents/a"],
        "failed": [{"name": "fileSearchStores/line-4/documents/missing", "error": "Not found"}],
    }
    assert client.post("/documents/bulk-delete", json={"names": []}).status_code == 400


def test_credential_errors_map_to_401(api) -> None:
    client, _, _ = api

    response = client.delete("/documents/fileSearchStores/line-4/documents/locked")

    assert response.status_code == 401
    assert response.json()["error"]["is_credential_error"] is True


def test_query_suggestions_and_speech(api) -> None:
    client, fake, _ = api

    answer = client.post("/query", json={"store": "fileSearchStores/line-4", "query": "PPE?"})
    suggestions = client.get("/query/suggestions", params={"store": "s", "language": "fr"})
    speech = client.post("/speech", json={"text": "Hello"})
    offline = client.post("/speech", json={"text": "offline"})

    assert answer.json() == {"text": "Wear gloves.", "groundingChunks": [{"retrievedContext": {"text": "Step 3"}}]}
    assert fake.searches == [("fileSearchStores/line-4", "PPE?", "en")]
    assert suggestions.json() == {"questions": ["What is step 1? (fr)"]}
    assert speech.json() == {"audio": "AAAA", "sampleRate": 24000}
    assert offline.status_code == 502
    assert offline.json()["error"]["message"] == "No response from server. Please check your connection."
    assert client.post("/query", json={"store": "s"}).status_code == 400


def test_metrics_endpoint_requires_prometheus(backend, waiter) -> None:
    fake = FakeApiClient(backend)
    disabled = create_app(settings=Settings(), client=fake, orchestrator=UploadOrchestrator(fake, waiter))
    enabled = create_app(
        settings=Settings(observability_prometheus_enabled=True),
        client=fake,
        orchestrator=UploadOrchestrator(fake, waiter),
    )

    with TestClient(disabled) as client:
        assert client.get("/metrics").status_code == 404
    with TestClient(enabled) as client:
        client.post("/speech", json={"text": "Hello"})
        response = client.get("/metrics")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")


class BrokenOrchestrator(UploadOrchestrator):
    async def stream_upload(self, target, files, metadata_builder=None):
        raise ValueError("unexpected store payload")
        yield  # pragma: no cover


def test_unexpected_upload_error_marks_job_failed(backend, waiter) -> None:
    fake = FakeApiClient(backend)
    app = create_app(settings=Settings(), client=fake, orchestrator=BrokenOrchestrator(fake, waiter))

    with TestClient(app) as client:
        job_id = client.post(
            "/uploads",
            files=[("files", ("a.pdf", b"x", "application/pdf"))],
            data={"store": "Line 4"},
        ).json()["job"]["id"]
        job = client.get(f"/uploads/{job_id}").json()["job"]

    assert job["status"] == "failed"
    assert job["error"] == "unexpected store payload"
