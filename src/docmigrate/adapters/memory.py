"""In-memory store adapters used for dry runs and tests."""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field, replace
from logging import getLogger
from typing import TYPE_CHECKING, Any

from docmigrate.domain.definitions import normalize_name
from docmigrate.domain.import_pipeline.import_map import new_document_id
from docmigrate.domain.model import (
    Batch,
    Bucket,
    Document,
    Identity,
    Operation,
    OperationKind,
    OperationStatus,
    StoredFile,
)
from docmigrate.domain.ports import DocumentStore, IdentityStore, OperationStore

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

log = getLogger(__name__)


class DocumentConflictError(RuntimeError):
    """Raised when creating a document or identity under an id that is taken."""


def _is_scalar(value: object) -> bool:
    return isinstance(value, str | bool | int | float)


@dataclass(slots=True)
class InMemoryDocumentStore:
    """``DocumentStore`` keeping documents, buckets and files in dictionaries."""

    collections: dict[str, dict[str, str]] = field(default_factory=dict[str, dict[str, str]])
    documents: dict[tuple[str, str], dict[str, Document]] = field(
        default_factory=dict[tuple[str, str], dict[str, Document]]
    )
    buckets: dict[str, Bucket] = field(default_factory=dict[str, Bucket])
    files: dict[str, tuple[StoredFile, bytes]] = field(
        default_factory=dict[str, tuple[StoredFile, bytes]]
    )

    def add_collection(self, database_id: str, name: str, collection_id: str | None = None) -> str:
        resolved = collection_id or normalize_name(name)
        self.collections.setdefault(database_id, {})[resolved] = name
        self.documents.setdefault((database_id, resolved), {})
        return resolved

    def add_collections(self, database_id: str, names: Iterable[str]) -> None:
        for name in names:
            self.add_collection(database_id, name)

    def _documents(self, database_id: str, collection_id: str) -> dict[str, Document]:
        documents = self.documents.get((database_id, collection_id))
        if documents is None:
            raise KeyError(f"Unknown collection {database_id}/{collection_id}")
        return documents

    async def find_collection(self, database_id: str, name_or_id: str) -> str | None:
        collections = self.collections.get(database_id, {})
        if name_or_id in collections:
            return name_or_id
        key = normalize_name(name_or_id)
        for collection_id, name in collections.items():
            if normalize_name(name) == key:
                return collection_id
        return None

    async def document_exists(
        self, database_id: str, collection_id: str, payload: Mapping[str, Any]
    ) -> Document | None:
        criteria = {key: value for key, value in payload.items() if _is_scalar(value)}
        if not criteria:
            return None
        for document in self._documents(database_id, collection_id).values():
            if all(document.data.get(key) == value for key, value in criteria.items()):
                return document
        return None

    async def get_document(
        self, database_id: str, collection_id: str, document_id: str
    ) -> Document | None:
        return self._documents(database_id, collection_id).get(document_id)

    async def list_documents(
        self,
        database_id: str,
        collection_id: str,
        filters: Mapping[str, Any] | None = None,
    ) -> list[Document]:
        criteria = dict(filters or {})
        return [
            document
            for document in self._documents(database_id, collection_id).values()
            if all(document.data.get(key) == value for key, value in criteria.items())
        ]

    async def create_document(
        self,
        database_id: str,
        collection_id: str,
        document_id: str,
        payload: Mapping[str, Any],
    ) -> Document:
        documents = self._documents(database_id, collection_id)
        if document_id in documents:
            raise DocumentConflictError(f"Document {collection_id}/{document_id} already exists")
        document = Document(
            id=document_id,
            collection_id=collection_id,
            database_id=database_id,
            data=deepcopy(dict(payload)),
        )
        documents[document_id] = document
        return document

    async def update_document(
        self,
        database_id: str,
        collection_id: str,
        document_id: str,
        payload: Mapping[str, Any],
    ) -> Document:
        documents = self._documents(database_id, collection_id)
        document = documents.get(document_id)
        if document is None:
            raise KeyError(f"Document {collection_id}/{document_id} not found")
        document.data.update(deepcopy(dict(payload)))
        return document

    async def delete_document(
        self, database_id: str, collection_id: str, document_id: str
    ) -> None:
        self._documents(database_id, collection_id).pop(document_id, None)

    async def get_bucket(self, bucket_id: str) -> Bucket | None:
        return self.buckets.get(bucket_id)

    async def create_bucket(self, bucket_id: str, name: str) -> Bucket:
        if bucket_id in self.buckets:
            raise DocumentConflictError(f"Bucket {bucket_id} already exists")
        bucket = Bucket(id=bucket_id, name=name)
        self.buckets[bucket_id] = bucket
        return bucket

    async def create_file(
        self, bucket_id: str, file_id: str, filename: str, content: bytes
    ) -> StoredFile:
        if bucket_id not in self.buckets:
            raise KeyError(f"Bucket {bucket_id} not found")
        stored = StoredFile(id=file_id, bucket_id=bucket_id, name=filename, size=len(content))
        self.files[file_id] = (stored, content)
        return stored


@dataclass(slots=True)
class InMemoryIdentityStore:
    identities: dict[str, Identity] = field(default_factory=dict[str, Identity])

    async def list_all_identities(self) -> list[Identity]:
        return list(self.identities.values())

    async def get_identity(self, identity_id: str) -> Identity | None:
        return self.identities.get(identity_id)

    async def create_identity(self, identity: Identity) -> Identity:
        if identity.id in self.identities:
            raise DocumentConflictError(f"Identity {identity.id} already exists")
        stored = replace(identity, labels=list(identity.labels), prefs=dict(identity.prefs))
        self.identities[identity.id] = stored
        return stored


@dataclass(slots=True)
class InMemoryOperationStore:
    operations: dict[str, Operation] = field(default_factory=dict[str, Operation])
    batches: dict[str, Batch] = field(default_factory=dict[str, Batch])

    def _matching(self, collection_id: str, kind: OperationKind) -> list[Operation]:
        return [
            operation
            for operation in self.operations.values()
            if operation.collection_id == collection_id
            and operation.kind is kind
            and operation.status is not OperationStatus.COMPLETED
        ]

    async def find_or_create_operation(
        self, collection_id: str, kind: OperationKind
    ) -> Operation:
        matching = self._matching(collection_id, kind)
        if matching:
            return matching[0]
        operation = Operation(id=new_document_id(), collection_id=collection_id, kind=kind)
        self.operations[operation.id] = operation
        return operation

    async def get_operation(self, operation_id: str) -> Operation | None:
        return self.operations.get(operation_id)

    async def update_operation(self, operation_id: str, **fields: Any) -> Operation:
        operation = self.operations[operation_id]
        for name, value in fields.items():
            if not hasattr(operation, name):
                raise ValueError(f"Unknown operation field: {name}")
            setattr(operation, name, list(value) if name == "batches" else value)
        return operation

    async def list_pending_operations(
        self, collection_id: str, kind: OperationKind
    ) -> list[Operation]:
        return self._matching(collection_id, kind)

    async def create_batch(self, operation_id: str, data: str) -> Batch:
        batch = Batch(id=new_document_id(), operation_id=operation_id, data=data)
        self.batches[batch.id] = batch
        return batch

    async def get_batch(self, batch_id: str) -> Batch | None:
        return self.batches.get(batch_id)

    async def delete_batch(self, batch_id: str) -> None:
        self.batches.pop(batch_id, None)


if TYPE_CHECKING:
    _document_store_check: DocumentStore = InMemoryDocumentStore()
    _identity_store_check: IdentityStore = InMemoryIdentityStore()
    _operation_store_check: OperationStore = InMemoryOperationStore()
