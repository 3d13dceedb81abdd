"""Deferred post-import actions and their durable queue.

Actions that need a document to exist (attaching an uploaded file, patching a
field from another collection) are persisted as batches of an
``afterImportAction`` operation. Draining executes every pending batch, deletes
it on success and leaves it in place on failure so a later drain retries it.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from logging import getLogger
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from docmigrate.domain.definitions import ActionSpec, AttributeMapping, normalize_name
from docmigrate.domain.model import OperationKind, OperationStatus

from .import_map import new_document_id
from .results import FailureKind
from .transform import resolve_template

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from docmigrate.domain.model import Batch, Bucket, StoredFile
    from docmigrate.domain.ports import DocumentStore, OperationStore

    from .import_map import IdGenerator, ImportMap
    from .results import RunSummary

log = getLogger(__name__)

type ActionHandler = Callable[..., Awaitable[Any]]

FILE_ACTION = "createFileAndUpdateField"


class UnknownActionError(KeyError):
    """Raised when a batch names an action that is not registered."""


class ActionEnvelope(BaseModel):
    """Everything needed to run a record's deferred actions after a restart."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    db_id: str = Field(alias="dbId")
    collection_id: str = Field(alias="collectionId")
    collection_name: str = Field(alias="collectionName")
    source_id: str | None = Field(default=None, alias="sourceId")
    final_item: dict[str, Any] = Field(default_factory=dict, alias="finalItem")
    attribute_mappings: list[AttributeMapping] = Field(
        default_factory=list, alias="attributeMappings"
    )
    context: dict[str, Any] = Field(default_factory=dict)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, data: str) -> ActionEnvelope:
        return cls.model_validate_json(data)

    @property
    def actions(self) -> list[ActionSpec]:
        return [action for mapping in self.attribute_mappings for action in mapping.post_import_actions]


def document_bucket_id(bucket_id: str, database_name: str) -> str:
    return f"{bucket_id}_{normalize_name(database_name)}"


def mappings_with_actions(
    mappings: Sequence[AttributeMapping],
    context: Mapping[str, Any],
    item: Mapping[str, Any],
    *,
    bucket_id: str,
    base_dir: Path | None = None,
) -> list[AttributeMapping]:
    """Return the mappings that carry deferred actions.

    A mapping with ``fileData`` gains an implicit ``createFileAndUpdateField`` action
    whose file path is resolved against ``context``/``item`` and ``base_dir``.
    """

    result: list[AttributeMapping] = []
    for mapping in mappings:
        actions = list(mapping.post_import_actions)
        if mapping.file_data is not None:
            file_path = str(resolve_template(mapping.file_data.path, context, item))
            if file_path.lower().startswith(("http://", "https://")):
                log.warning(f"Skipping remote file {file_path!r} for {mapping.target_key}")
            else:
                path = Path(file_path).expanduser()
                if base_dir is not None and not path.is_absolute():
                    path = base_dir / path
                actions.append(
                    ActionSpec(
                        action=FILE_ACTION,
                        params=[
                            "{dbId}",
                            "{collId}",
                            "{docId}",
                            mapping.target_key,
                            bucket_id,
                            str(path),
                            mapping.file_data.name,
                        ],
                    )
                )
        if actions:
            result.append(mapping.model_copy(update={"post_import_actions": actions}))
    return result


def _locate_file(path: Path, file_name: str) -> Path:
    if path.is_file():
        return path
    if path.is_dir():
        for child in sorted(path.iterdir()):
            if child.is_file() and child.stem == file_name:
                return child
    raise FileNotFoundError(f"No file matching {file_name!r} at {path}")


class ActionRegistry:
    """Named deferred actions executed against the document store."""

    def __init__(
        self,
        store: DocumentStore,
        *,
        id_generator: IdGenerator = new_document_id,
    ) -> None:
        self._store = store
        self._id_generator = id_generator
        self._handlers: dict[str, ActionHandler] = {
            FILE_ACTION: self.create_file_and_update_field,
            "updateCreatedDocument": self.update_created_document,
            "checkAndUpdateFieldInDocument": self.check_and_update_field_in_document,
            "setFieldFromOtherCollectionDocument": self.set_field_from_other_collection_document,
            "createOrGetBucket": self.create_or_get_bucket,
        }

    def register(self, name: str, handler: ActionHandler) -> None:
        self._handlers[name] = handler

    def __contains__(self, name: object) -> bool:
        return name in self._handlers

    async def execute(
        self, spec: ActionSpec, context: Mapping[str, Any], item: Mapping[str, Any]
    ) -> Any:
        handler = self._handlers.get(spec.action)
        if handler is None:
            raise UnknownActionError(spec.action)
        params = [resolve_template(param, context, item) for param in spec.params]
        log.debug(f"Running {spec.action} with {params!r}")
        return await handler(*params)

    async def create_or_get_bucket(self, bucket_name: str, bucket_id: str | None = None) -> Bucket:
        resolved_id = bucket_id or normalize_name(bucket_name)
        bucket = await self._store.get_bucket(resolved_id)
        if bucket is not None:
            return bucket
        log.info(f"Creating bucket {resolved_id}")
        return await self._store.create_bucket(resolved_id, bucket_name)

    async def create_file_and_update_field(
        self,
        db_id: str,
        collection_id: str,
        document_id: str,
        field_name: str,
        bucket_id: str,
        file_path: str,
        file_name: str,
    ) -> StoredFile:
        path = await asyncio.to_thread(_locate_file, Path(file_path), str(file_name))
        content = await asyncio.to_thread(path.read_bytes)
        bucket = await self.create_or_get_bucket(bucket_id, bucket_id)
        stored = await self._store.create_file(bucket.id, self._id_generator(), path.name, content)
        await self._store.update_document(db_id, collection_id, document_id, {field_name: stored.id})
        log.info(f"Attached {path.name} to {collection_id}/{document_id}.{field_name}")
        return stored

    async def update_created_document(
        self, db_id: str, collection_id: str, document_id: str, data: Mapping[str, Any]
    ) -> None:
        await self._store.update_document(db_id, collection_id, document_id, dict(data))

    async def check_and_update_field_in_document(
        self,
        db_id: str,
        collection_id: str,
        document_id: str,
        field_name: str,
        old_value: Any,
        new_value: Any,
    ) -> bool:
        document = await self._store.get_document(db_id, collection_id, document_id)
        if document is None or document.data.get(field_name) != old_value:
            return False
        await self._store.update_document(db_id, collection_id, document_id, {field_name: new_value})
        return True

    async def set_field_from_other_collection_document(
        self,
        db_id: str,
        collection: str,
        document_id: str,
        field_name: str,
        other_collection: str,
        other_document_id: str,
        other_field_name: str,
    ) -> None:
        collection_id = await self._store.find_collection(db_id, collection)
        other_id = await self._store.find_collection(db_id, other_collection)
        if collection_id is None or other_id is None:
            raise LookupError(f"Unknown collection {collection!r} or {other_collection!r}")
        other = await self._store.get_document(db_id, other_id, other_document_id)
        if other is None:
            raise LookupError(f"Document {other_collection}/{other_document_id} not found")
        value = other.data.get(other_field_name)
        await self._store.update_document(db_id, collection_id, document_id, {field_name: value})


@dataclass(slots=True)
class DrainResult:
    executed: int = 0
    failed: int = 0


class ActionQueue:
    """Durable queue of deferred actions, persisted through an :class:`OperationStore`."""

    def __init__(self, operations: OperationStore, registry: ActionRegistry) -> None:
        self._operations = operations
        self._registry = registry
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, collection_id: str) -> asyncio.Lock:
        lock = self._locks.get(collection_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[collection_id] = lock
        return lock

    async def enqueue(self, envelope: ActionEnvelope) -> Batch:
        # operation.batches is read-modify-write, serialise it per collection
        async with self._lock(envelope.collection_id):
            operation = await self._operations.find_or_create_operation(
                envelope.collection_id, OperationKind.AFTER_IMPORT_ACTION
            )
            batch = await self._operations.create_batch(operation.id, envelope.to_json())
            batches = [*operation.batches, batch.id]
            await self._operations.update_operation(
                operation.id,
                batches=batches,
                total=operation.total + 1,
                status=OperationStatus.READY,
            )
        log.debug(f"Queued post-import actions for {envelope.collection_name}/{envelope.source_id}")
        return batch

    def _refresh_context(
        self, envelope: ActionEnvelope, import_map: ImportMap | None
    ) -> dict[str, Any]:
        context = dict(envelope.context)
        if import_map is None:
            return context
        document_id = context.get("docId")
        record = import_map.find_record_by(
            envelope.collection_name, lambda candidate: candidate.doc_id == document_id
        )
        if record is not None:
            context.update(record.context)
        return context

    async def drain(
        self,
        collection_id: str,
        *,
        import_map: ImportMap | None = None,
        summary: RunSummary | None = None,
    ) -> DrainResult:
        """Execute every pending batch of ``collection_id``.

        Successful batches are deleted and removed from their operation; an operation
        without remaining batches is marked completed. A failing batch is logged and
        kept so the next drain picks it up again.
        """

        result = DrainResult()
        operations = await self._operations.list_pending_operations(
            collection_id, OperationKind.AFTER_IMPORT_ACTION
        )
        for operation in operations:
            remaining = list(operation.batches)
            progress = operation.progress
            for batch_id in list(operation.batches):
                batch = await self._operations.get_batch(batch_id)
                if batch is None or batch.processed:
                    remaining.remove(batch_id)
                    continue
                envelope: ActionEnvelope | None = None
                try:
                    envelope = ActionEnvelope.from_json(batch.data)
                    context = self._refresh_context(envelope, import_map)
                    for spec in envelope.actions:
                        await self._registry.execute(spec, context, envelope.final_item)
                except Exception as exc:  # noqa: BLE001
                    result.failed += 1
                    log.error(f"Post-import batch {batch_id} failed: {exc!r}")
                    if summary is not None:
                        summary.fail(
                            envelope.collection_name if envelope else collection_id,
                            FailureKind.ACTION_FAILED,
                            f"batch {batch_id}: {exc}",
                            source_id=envelope.source_id if envelope else None,
                        )
                    continue
                await self._operations.delete_batch(batch_id)
                remaining.remove(batch_id)
                progress += 1
                await self._operations.update_operation(
                    operation.id, batches=list(remaining), progress=progress
                )
                result.executed += 1

            status = OperationStatus.READY if remaining else OperationStatus.COMPLETED
            await self._operations.update_operation(operation.id, status=status, batches=remaining)

        if summary is not None:
            summary.actions_executed += result.executed
            summary.actions_failed += result.failed
        return result
