"""Operation journal kept inside the store's own ``migrations`` database."""

from __future__ import annotations

from logging import getLogger
from typing import TYPE_CHECKING, Any, Final

from docmigrate.domain.definitions import MIGRATIONS_DATABASE_NAME
from docmigrate.domain.import_pipeline.import_map import new_document_id
from docmigrate.domain.model import Batch, Operation, OperationKind, OperationStatus
from docmigrate.domain.ports import OperationStore

if TYPE_CHECKING:
    from docmigrate.domain.model import Document

    from .client import AppwriteStore

log = getLogger(__name__)

OPERATIONS_COLLECTION: Final[str] = "currentOperations"
BATCHES_COLLECTION: Final[str] = "batches"

_OPERATION_FIELDS: Final[dict[str, str]] = {
    "collection_id": "collectionId",
    "kind": "operationType",
    "status": "status",
    "total": "total",
    "progress": "progress",
    "batches": "batches",
    "error": "error",
}


def _operation_from_document(document: Document) -> Operation:
    data = document.data
    return Operation(
        id=document.id,
        collection_id=str(data.get("collectionId", "")),
        kind=OperationKind(data.get("operationType", OperationKind.IMPORT_DATA)),
        status=OperationStatus(data.get("status") or OperationStatus.PENDING),
        total=int(data.get("total") or 0),
        progress=int(data.get("progress") or 0),
        batches=[str(batch_id) for batch_id in data.get("batches") or []],
        error=data.get("error"),
    )


def _batch_from_document(document: Document) -> Batch:
    data = document.data
    return Batch(
        id=document.id,
        operation_id=str(data.get("operationId", "")),
        data=str(data.get("data", "")),
        processed=bool(data.get("processed", False)),
    )


def _operation_payload(fields: dict[str, Any]) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for name, value in fields.items():
        key = _OPERATION_FIELDS.get(name)
        if key is None:
            continue
        payload[key] = str(value) if isinstance(value, OperationStatus | OperationKind) else value
    return payload


class AppwriteOperationStore:
    """``OperationStore`` backed by the ``currentOperations`` and ``batches`` collections."""

    def __init__(
        self, store: AppwriteStore, *, database_id: str = MIGRATIONS_DATABASE_NAME
    ) -> None:
        self._store = store
        self._database_id = database_id

    async def _operations(self, collection_id: str, kind: OperationKind) -> list[Operation]:
        documents = await self._store.list_documents(
            self._database_id,
            OPERATIONS_COLLECTION,
            {"collectionId": collection_id, "operationType": str(kind)},
        )
        return [_operation_from_document(document) for document in documents]

    async def find_or_create_operation(
        self, collection_id: str, kind: OperationKind
    ) -> Operation:
        for operation in await self._operations(collection_id, kind):
            if operation.status is not OperationStatus.COMPLETED:
                return operation
        operation = Operation(id=new_document_id(), collection_id=collection_id, kind=kind)
        document = await self._store.create_document(
            self._database_id,
            OPERATIONS_COLLECTION,
            operation.id,
            _operation_payload(
                {
                    "collection_id": operation.collection_id,
                    "kind": operation.kind,
                    "status": operation.status,
                    "total": operation.total,
                    "progress": operation.progress,
                    "batches": operation.batches,
                }
            ),
        )
        log.debug(f"Created {kind} operation {document.id} for {collection_id}")
        return _operation_from_document(document)

    async def get_operation(self, operation_id: str) -> Operation | None:
        document = await self._store.get_document(
            self._database_id, OPERATIONS_COLLECTION, operation_id
        )
        return _operation_from_document(document) if document is not None else None

    async def update_operation(self, operation_id: str, **fields: Any) -> Operation:
        document = await self._store.update_document(
            self._database_id, OPERATIONS_COLLECTION, operation_id, _operation_payload(fields)
        )
        return _operation_from_document(document)

    async def list_pending_operations(
        self, collection_id: str, kind: OperationKind
    ) -> list[Operation]:
        return [
            operation
            for operation in await self._operations(collection_id, kind)
            if operation.status is not OperationStatus.COMPLETED
        ]

    async def create_batch(self, operation_id: str, data: str) -> Batch:
        document = await self._store.create_document(
            self._database_id,
            BATCHES_COLLECTION,
            new_document_id(),
            {"operationId": operation_id, "data": data, "processed": False},
        )
        return _batch_from_document(document)

    async def get_batch(self, batch_id: str) -> Batch | None:
        document = await self._store.get_document(
            self._database_id, BATCHES_COLLECTION, batch_id
        )
        return _batch_from_document(document) if document is not None else None

    async def delete_batch(self, batch_id: str) -> None:
        await self._store.delete_document(self._database_id, BATCHES_COLLECTION, batch_id)


if TYPE_CHECKING:
    _operation_store_check: OperationStore = AppwriteOperationStore(AppwriteStore())
