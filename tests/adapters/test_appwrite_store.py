from __future__ import annotations

import asyncio
import json
from collections.abc import Callable  # noqa: TC003
from typing import Any

import httpx
import pytest

from docmigrate.adapters.appwrite import (
    AppwriteOperationStore,
    AppwriteStore,
    StoreAPIError,
    default_resilience_config,
)
from docmigrate.adapters.appwrite.translator import equality_queries
from docmigrate.adapters.http_resilience import ResilientClient
from docmigrate.config import MissingConfigurationError, StoreConfig
from docmigrate.domain.model import Identity, OperationKind

CONFIG = StoreConfig(endpoint="https://store.test/v1", project_id="proj", api_key="secret")

type Handler = Callable[[httpx.Request], httpx.Response]


def _make_store(handler: Handler, requests: list[httpx.Request] | None = None) -> AppwriteStore:
    async def async_handler(request: httpx.Request) -> httpx.Response:
        if requests is not None:
            requests.append(request)
        return handler(request)

    resilience = default_resilience_config(CONFIG)
    client = ResilientClient(resilience)
    client._client = httpx.AsyncClient(  # noqa: SLF001  # type: ignore[reportPrivateUsage]
        transport=httpx.MockTransport(async_handler),
        base_url=CONFIG.endpoint,
        headers=dict(resilience.default_headers or {}),
    )
    return AppwriteStore(CONFIG, resilience=resilience, client=client)


def _document(document_id: str, collection_id: str = "events", **data: Any) -> dict[str, Any]:
    return {
        "$id": document_id,
        "$collectionId": collection_id,
        "$databaseId": "main",
        "$createdAt": "2024-01-01T00:00:00.000+00:00",
        **data,
    }


def _queries(request: httpx.Request) -> list[dict[str, Any]]:
    return [json.loads(value) for value in request.url.params.get_list("queries[]")]


def test_store_config_requires_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("APPWRITE_ENDPOINT", raising=False)
    monkeypatch.setenv("APPWRITE_PROJECT", "proj")
    monkeypatch.setenv("APPWRITE_KEY", "secret")

    with pytest.raises(MissingConfigurationError, match="APPWRITE_ENDPOINT"):
        StoreConfig.from_environment()


def test_requests_carry_project_headers() -> None:
    requests: list[httpx.Request] = []
    store = _make_store(lambda _: httpx.Response(404, json={"message": "nope"}), requests)

    assert asyncio.run(store.get_document("main", "events", "missing")) is None

    [request] = requests
    assert request.url.path == "/v1/databases/main/collections/events/documents/missing"
    assert request.headers["X-Appwrite-Project"] == "proj"
    assert request.headers["X-Appwrite-Key"] == "secret"


def test_find_collection_matches_names_and_caches() -> None:
    requests: list[httpx.Request] = []

    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "total": 2,
                "collections": [
                    {"$id": "c1", "name": "Event Members"},
                    {"$id": "c2", "name": "Clubs"},
                ],
            },
        )

    store = _make_store(handler, requests)

    async def lookups() -> list[str | None]:
        return [
            await store.find_collection("main", "eventmembers"),
            await store.find_collection("main", "c2"),
            await store.find_collection("main", "Unknown"),
        ]

    assert asyncio.run(lookups()) == ["c1", "c2", None]
    assert len(requests) == 1


def test_document_exists_queries_scalar_fields() -> None:
    requests: list[httpx.Request] = []

    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"total": 1, "documents": [_document("d1", title="A")]})

    store = _make_store(handler, requests)

    found = asyncio.run(
        store.document_exists("main", "events", {"title": "A", "tags": ["x"], "note": None})
    )

    assert found is not None
    assert found.id == "d1"
    assert found.data == {"title": "A"}
    assert _queries(requests[0]) == [
        {"method": "equal", "attribute": "title", "values": ["A"]},
        {"method": "limit", "values": [1]},
    ]


def test_document_exists_without_queryable_fields_skips_request() -> None:
    requests: list[httpx.Request] = []
    store = _make_store(lambda _: httpx.Response(500), requests)

    assert asyncio.run(store.document_exists("main", "events", {"tags": ["x"]})) is None
    assert requests == []


def test_equality_queries_skip_long_and_system_values() -> None:
    queries = equality_queries({"$id": "x", "long": "y" * 256, "empty": "", "n": 3, "ok": True})

    assert [json.loads(query)["attribute"] for query in queries] == ["n", "ok"]


def test_create_document_posts_id_and_data() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        return httpx.Response(201, json=_document(body["documentId"], **body["data"]))

    store = _make_store(handler, requests)

    document = asyncio.run(store.create_document("main", "events", "abc", {"title": "A"}))

    assert document.id == "abc"
    assert document.data == {"title": "A"}
    assert requests[0].method == "POST"
    assert json.loads(requests[0].content) == {"documentId": "abc", "data": {"title": "A"}}


def test_error_payload_raises_store_api_error() -> None:
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(
            409,
            json={"message": "Document already exists", "code": 409, "type": "document_already_exists"},
        )

    store = _make_store(handler)

    with pytest.raises(StoreAPIError) as excinfo:
        asyncio.run(store.create_document("main", "events", "abc", {}))

    assert excinfo.value.code == 409
    assert excinfo.value.type == "document_already_exists"


def test_list_documents_follows_cursor() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        cursor = [q for q in _queries(request) if q["method"] == "cursorAfter"]
        if not cursor:
            page = [_document(f"d{index}") for index in range(100)]
        else:
            page = [_document("last")]
        return httpx.Response(200, json={"total": 101, "documents": page})

    store = _make_store(handler, requests)

    documents = asyncio.run(store.list_documents("main", "events", {"status": "ready"}))

    assert len(documents) == 101
    assert len(requests) == 2
    assert {"method": "cursorAfter", "values": ["d99"]} in _queries(requests[1])
    assert {"method": "equal", "attribute": "status", "values": ["ready"]} in _queries(requests[1])


def test_create_identity_sets_labels_and_prefs() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/users":
            body = json.loads(request.content)
            return httpx.Response(
                201, json={"$id": body["userId"], "email": body.get("email"), "phone": ""}
            )
        return httpx.Response(200, json={})

    store = _make_store(handler, requests)
    identity = Identity(id="u1", email="a@x.com", labels=["member"], prefs={"lang": "de"})

    created = asyncio.run(store.create_identity(identity))

    assert created.id == "u1"
    assert created.phone is None
    assert created.labels == ["member"]
    assert [(request.method, request.url.path) for request in requests] == [
        ("POST", "/v1/users"),
        ("PUT", "/v1/users/u1/labels"),
        ("PATCH", "/v1/users/u1/prefs"),
    ]


def test_create_file_uploads_multipart() -> None:
    requests: list[httpx.Request] = []

    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(
            201, json={"$id": "f1", "bucketId": "b1", "name": "cv.pdf", "sizeOriginal": 3}
        )

    store = _make_store(handler, requests)

    stored = asyncio.run(store.create_file("b1", "f1", "cv.pdf", b"pdf"))

    assert (stored.id, stored.bucket_id, stored.size) == ("f1", "b1", 3)
    request = requests[0]
    assert request.headers["content-type"].startswith("multipart/form-data")
    body = request.read()
    assert b'name="fileId"' in body
    assert b'filename="cv.pdf"' in body


def test_operation_store_uses_migrations_database() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, json={"total": 0, "documents": []})
        body = json.loads(request.content)
        return httpx.Response(
            201, json=_document(body["documentId"], "currentOperations", **body["data"])
        )

    operations = AppwriteOperationStore(_make_store(handler, requests))

    operation = asyncio.run(
        operations.find_or_create_operation("events", OperationKind.AFTER_IMPORT_ACTION)
    )

    assert operation.kind is OperationKind.AFTER_IMPORT_ACTION
    assert operation.collection_id == "events"
    assert requests[0].url.path == "/v1/databases/migrations/collections/currentOperations/documents"
    assert json.loads(requests[1].content)["data"]["operationType"] == "afterImportAction"
