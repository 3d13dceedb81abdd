"""REST client for the target document store."""

from __future__ import annotations

from logging import getLogger
from typing import TYPE_CHECKING, Any, Unpack, cast

import httpx

from docmigrate.adapters.http_resilience import ResilientClient
from docmigrate.config import RateLimit, ResilienceConfig, StoreConfig
from docmigrate.domain.definitions import normalize_name
from docmigrate.domain.ports import DocumentStore, IdentityStore

from .schema import (
    BucketPayload,
    CollectionList,
    DocumentList,
    DocumentPayload,
    ErrorResponse,
    FilePayload,
    UserList,
    UserPayload,
)
from .translator import (
    cursor_after,
    equality_queries,
    identity_create_body,
    limit,
    to_bucket,
    to_document,
    to_identity,
    to_stored_file,
)

if TYPE_CHECKING:
    from collections.abc import Mapping

    from docmigrate.adapters.http_resilience import RequestOptions
    from docmigrate.domain.model import Bucket, Document, Identity, StoredFile

log = getLogger(__name__)

PAGE_SIZE = 100
_DEFAULT_TIMEOUT_SECONDS = 30.0


def default_resilience_config(config: StoreConfig) -> ResilienceConfig:
    return ResilienceConfig(
        name="appwrite",
        base_url=config.endpoint,
        timeout_seconds=_DEFAULT_TIMEOUT_SECONDS,
        ratelimit=RateLimit(max_calls=50, per_seconds=1.0),
        default_headers={
            "X-Appwrite-Project": config.project_id,
            "X-Appwrite-Key": config.api_key,
            "X-Appwrite-Response-Format": "1.4.0",
        },
    )


class StoreAPIError(RuntimeError):
    """Raised when the store answers with an error payload."""

    def __init__(self, message: str, *, code: int | None = None, error_type: str | None = None):
        super().__init__(message)
        self.code = code
        self.type = error_type


def _queries(*queries: str) -> list[tuple[str, str]]:
    return [("queries[]", query) for query in queries]


class AppwriteStore:
    """Document, storage and identity operations over the store's REST API."""

    def __init__(
        self,
        config: StoreConfig | None = None,
        *,
        resilience: ResilienceConfig | None = None,
        client: ResilientClient | None = None,
    ) -> None:
        self.config = config or StoreConfig.from_environment()
        self.resilience = resilience or default_resilience_config(self.config)
        self._client = client or ResilientClient(self.resilience)
        self._collections: dict[str, dict[str, str]] = {}

    async def __aenter__(self) -> AppwriteStore:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _perform_request(
        self,
        method: str,
        path: str,
        *,
        allow_missing: bool = False,
        **kwargs: Unpack[RequestOptions],
    ) -> dict[str, Any] | None:
        response = await self._client.request(method, path, **kwargs)
        if allow_missing and response.status_code == httpx.codes.NOT_FOUND:
            return None
        if response.is_error:
            raise self._error(response)
        if response.status_code == httpx.codes.NO_CONTENT or not response.content:
            return {}
        payload = response.json()
        if not isinstance(payload, dict):
            raise StoreAPIError(f"Unexpected response payload for {method} {path}")
        return cast(dict[str, Any], payload)

    async def _require(
        self, method: str, path: str, **kwargs: Unpack[RequestOptions]
    ) -> dict[str, Any]:
        payload = await self._perform_request(method, path, **kwargs)
        if payload is None:  # pragma: no cover
            raise StoreAPIError(f"Empty response for {method} {path}")
        return payload

    def _error(self, response: httpx.Response) -> StoreAPIError:
        try:
            error = ErrorResponse.model_validate(response.json())
        except ValueError:
            return StoreAPIError(
                f"{response.request.method} {response.request.url} failed with "
                f"HTTP {response.status_code}",
                code=response.status_code,
            )
        log.error(f"Store API error {error.code} ({error.type}): {error.message}")
        return StoreAPIError(error.message, code=error.code, error_type=error.type)

    # Collections & documents ---------------------------------------------------

    async def _collection_index(self, database_id: str) -> dict[str, str]:
        index = self._collections.get(database_id)
        if index is not None:
            return index
        index = {}
        cursor: str | None = None
        while True:
            queries = [limit(PAGE_SIZE)]
            if cursor is not None:
                queries.append(cursor_after(cursor))
            payload = await self._require(
                "GET", f"/databases/{database_id}/collections", params=_queries(*queries)
            )
            page = CollectionList.model_validate(payload)
            for collection in page.collections:
                index[collection.id] = collection.id
                index.setdefault(normalize_name(collection.name), collection.id)
            if len(page.collections) < PAGE_SIZE:
                break
            cursor = page.collections[-1].id
        self._collections[database_id] = index
        return index

    async def find_collection(self, database_id: str, name_or_id: str) -> str | None:
        index = await self._collection_index(database_id)
        return index.get(name_or_id) or index.get(normalize_name(name_or_id))

    def _documents_path(self, database_id: str, collection_id: str) -> str:
        return f"/databases/{database_id}/collections/{collection_id}/documents"

    async def document_exists(
        self, database_id: str, collection_id: str, payload: Mapping[str, Any]
    ) -> Document | None:
        queries = equality_queries(payload)
        if not queries:
            return None
        result = await self._require(
            "GET",
            self._documents_path(database_id, collection_id),
            params=_queries(*queries, limit(1)),
        )
        documents = DocumentList.model_validate(result).documents
        return to_document(documents[0]) if documents else None

    async def get_document(
        self, database_id: str, collection_id: str, document_id: str
    ) -> Document | None:
        payload = await self._perform_request(
            "GET",
            f"{self._documents_path(database_id, collection_id)}/{document_id}",
            allow_missing=True,
        )
        if payload is None:
            return None
        return to_document(DocumentPayload.model_validate(payload))

    async def list_documents(
        self,
        database_id: str,
        collection_id: str,
        filters: Mapping[str, Any] | None = None,
    ) -> list[Document]:
        documents: list[Document] = []
        base_queries = equality_queries(filters or {})
        cursor: str | None = None
        while True:
            queries = [*base_queries, limit(PAGE_SIZE)]
            if cursor is not None:
                queries.append(cursor_after(cursor))
            payload = await self._require(
                "GET",
                self._documents_path(database_id, collection_id),
                params=_queries(*queries),
            )
            page = DocumentList.model_validate(payload)
            documents.extend(to_document(item) for item in page.documents)
            if len(page.documents) < PAGE_SIZE:
                return documents
            cursor = page.documents[-1].id

    async def create_document(
        self,
        database_id: str,
        collection_id: str,
        document_id: str,
        payload: Mapping[str, Any],
    ) -> Document:
        result = await self._require(
            "POST",
            self._documents_path(database_id, collection_id),
            json={"documentId": document_id, "data": dict(payload)},
        )
        return to_document(DocumentPayload.model_validate(result))

    async def update_document(
        self,
        database_id: str,
        collection_id: str,
        document_id: str,
        payload: Mapping[str, Any],
    ) -> Document:
        result = await self._require(
            "PATCH",
            f"{self._documents_path(database_id, collection_id)}/{document_id}",
            json={"data": dict(payload)},
        )
        return to_document(DocumentPayload.model_validate(result))

    async def delete_document(
        self, database_id: str, collection_id: str, document_id: str
    ) -> None:
        await self._perform_request(
            "DELETE", f"{self._documents_path(database_id, collection_id)}/{document_id}"
        )

    # Storage -------------------------------------------------------------------

    async def get_bucket(self, bucket_id: str) -> Bucket | None:
        payload = await self._perform_request(
            "GET", f"/storage/buckets/{bucket_id}", allow_missing=True
        )
        if payload is None:
            return None
        return to_bucket(BucketPayload.model_validate(payload))

    async def create_bucket(self, bucket_id: str, name: str) -> Bucket:
        payload = await self._require(
            "POST", "/storage/buckets", json={"bucketId": bucket_id, "name": name}
        )
        return to_bucket(BucketPayload.model_validate(payload))

    async def create_file(
        self, bucket_id: str, file_id: str, filename: str, content: bytes
    ) -> StoredFile:
        payload = await self._require(
            "POST",
            f"/storage/buckets/{bucket_id}/files",
            data={"fileId": file_id},
            files={"file": (filename, content)},
        )
        return to_stored_file(FilePayload.model_validate(payload))

    # Identities ----------------------------------------------------------------

    async def list_all_identities(self) -> list[Identity]:
        identities: list[Identity] = []
        cursor: str | None = None
        while True:
            queries = [limit(PAGE_SIZE)]
            if cursor is not None:
                queries.append(cursor_after(cursor))
            payload = await self._require("GET", "/users", params=_queries(*queries))
            page = UserList.model_validate(payload)
            identities.extend(to_identity(user) for user in page.users)
            if len(page.users) < PAGE_SIZE:
                log.debug(f"Fetched {len(identities)} existing identities")
                return identities
            cursor = page.users[-1].id

    async def get_identity(self, identity_id: str) -> Identity | None:
        payload = await self._perform_request("GET", f"/users/{identity_id}", allow_missing=True)
        if payload is None:
            return None
        return to_identity(UserPayload.model_validate(payload))

    async def create_identity(self, identity: Identity) -> Identity:
        payload = await self._require("POST", "/users", json=identity_create_body(identity))
        created = to_identity(UserPayload.model_validate(payload))
        if identity.labels:
            await self._require(
                "PUT", f"/users/{created.id}/labels", json={"labels": list(identity.labels)}
            )
            created.labels = list(identity.labels)
        if identity.prefs:
            await self._require(
                "PATCH", f"/users/{created.id}/prefs", json={"prefs": dict(identity.prefs)}
            )
            created.prefs = dict(identity.prefs)
        return created


if TYPE_CHECKING:
    _document_store_check: DocumentStore = AppwriteStore()
    _identity_store_check: IdentityStore = AppwriteStore()
