"""Batch import orchestrator: stage, commit, resolve, drain."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from logging import getLogger
from typing import TYPE_CHECKING, Any

from docmigrate.domain.definitions import ImportType
from docmigrate.domain.model import Identity, OperationKind, OperationStatus

from .actions import (
    ActionEnvelope,
    ActionQueue,
    ActionRegistry,
    document_bucket_id,
    mappings_with_actions,
)
from .context import MigrationRun
from .identity import split_identity_payload
from .import_map import ImportRecord, new_document_id
from .merge import deep_merge, fill_missing
from .relationships import RelationshipResolver, write_back_payloads
from .results import CollectionState, FailureKind, OutcomeStatus, RecordOutcome
from .schema import validate_payload
from .transform import (
    MISSING,
    UnknownConverterError,
    UnknownValidationRuleError,
    get_path,
    transform_record,
    validate_item,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable, Mapping
    from pathlib import Path

    from docmigrate.config import MigrationConfig
    from docmigrate.domain.definitions import (
        CollectionDefinition,
        DatabaseDefinition,
        ImportDef,
        ProjectDefinition,
    )
    from docmigrate.domain.model import Operation
    from docmigrate.domain.ports import (
        DocumentStore,
        IdentityStore,
        OperationStore,
        SourceLoader,
    )

    from .import_map import IdGenerator
    from .results import RunSummary

log = getLogger(__name__)

type _Commit = Callable[[ImportRecord], Awaitable[None]]


class MissingOperationMetadataError(RuntimeError):
    """The operation store could neither find nor create an operation record."""


@dataclass(slots=True)
class _StagedBatch:
    """Records touched by one import definition's stage step, in stage order."""

    records: list[ImportRecord] = field(default_factory=list[ImportRecord])
    _seen: set[int] = field(default_factory=set[int])

    def add(self, record: ImportRecord) -> None:
        if id(record) not in self._seen:
            self._seen.add(id(record))
            self.records.append(record)

    def __len__(self) -> int:
        return len(self.records)


def _source_id(item: Mapping[str, Any], import_def: ImportDef) -> str | None:
    value = get_path(item, import_def.primary_key_field)
    if value is MISSING or value is None or value == "":
        return None
    return str(value)


def _build_context(
    run: MigrationRun,
    collection: CollectionDefinition,
    collection_id: str,
    item: Mapping[str, Any],
) -> dict[str, Any]:
    return {
        **item,
        "dbId": run.database_id,
        "dbName": run.database.name,
        "collId": collection_id,
        "collName": collection.name,
    }


class ImportController:
    """Migrate every configured collection of a project into one database at a time.

    A run goes through explicit phases: all collections are staged and committed
    (at most ``max_parallel_collections`` at once, create definitions before update
    definitions), then references are resolved over the complete import map and
    written back, and finally the deferred action queue is drained.
    """

    def __init__(
        self,
        *,
        project: ProjectDefinition,
        store: DocumentStore,
        identities: IdentityStore,
        operations: OperationStore,
        source_loader: SourceLoader,
        config: MigrationConfig,
        id_generator: IdGenerator = new_document_id,
        base_dir: Path | None = None,
    ) -> None:
        self.project = project
        self.store = store
        self.identities = identities
        self.operations = operations
        self.source_loader = source_loader
        self.config = config
        self.id_generator = id_generator
        self.base_dir = base_dir
        self.registry = ActionRegistry(store, id_generator=id_generator)
        self.queue = ActionQueue(operations, self.registry)
        self.last_run: MigrationRun | None = None

    async def run_database(self, database: DatabaseDefinition) -> RunSummary:
        run = MigrationRun.start(
            self.project, database, id_generator=self.id_generator, base_dir=self.base_dir
        )
        self.last_run = run
        log.info(f"Migrating database {database.name} ({run.database_id})")

        existing = await self.identities.list_all_identities()
        run.identities.seed(existing)

        limit = asyncio.Semaphore(self.config.max_parallel_collections)

        async def bounded(collection: CollectionDefinition) -> None:
            async with limit:
                await self._run_collection(run, collection)

        await asyncio.gather(*(bounded(collection) for collection in self.project.collections))

        log.info(f"[{database.name}] resolving relationships")
        references = RelationshipResolver(run).resolve()
        if self.config.write_back_references and references:
            await self._write_back(run, write_back_payloads(references))

        log.info(f"[{database.name}] draining post-import actions")
        for collection in self.project.collections:
            collection_id = run.collection_ids.get(collection.key)
            if collection_id is None:
                continue
            try:
                await self.queue.drain(
                    collection_id, import_map=run.import_map, summary=run.summary
                )
            except Exception as exc:
                log.exception(f"[{database.name}] {collection.name}: draining actions failed")
                run.summary.fail(
                    collection.name, FailureKind.STORE_ERROR, f"{type(exc).__name__}: {exc}"
                )

        for line in run.summary.describe():
            log.info(f"[{database.name}] {line}")
        return run.summary

    # Collections -------------------------------------------------------------

    async def _run_collection(self, run: MigrationRun, collection: CollectionDefinition) -> None:
        try:
            await self._migrate_collection(run, collection)
        except Exception as exc:
            log.exception(f"[{run.database.name}] {collection.name}: collection aborted")
            run.summary.fail(
                collection.name, FailureKind.STORE_ERROR, f"{type(exc).__name__}: {exc}"
            )
            run.summary.set_state(collection.name, CollectionState.FAILED)

    async def _migrate_collection(
        self, run: MigrationRun, collection: CollectionDefinition
    ) -> None:
        summary = run.summary
        summary.collection(collection.name)
        collection_id = await self.store.find_collection(
            run.database_id, collection.id or collection.name
        )
        if collection_id is None:
            summary.fail(
                collection.name,
                FailureKind.CONFIGURATION,
                f"collection {collection.name!r} does not exist in {run.database.name}",
            )
            summary.set_state(collection.name, CollectionState.FAILED)
            return
        run.collection_ids[collection.key] = collection_id

        try:
            operation = await self._start_operation(collection_id)
        except MissingOperationMetadataError as exc:
            summary.fail(collection.name, FailureKind.OPERATION_METADATA, str(exc))
            summary.set_state(collection.name, CollectionState.FAILED)
            return

        processed = 0
        summary.set_state(collection.name, CollectionState.CREATING)
        for import_def in collection.create_defs:
            processed += await self._run_import_def(run, collection, collection_id, import_def)
            await self.operations.update_operation(operation.id, progress=processed)

        if collection.update_defs:
            summary.set_state(collection.name, CollectionState.UPDATING)
            for import_def in collection.update_defs:
                processed += await self._run_import_def(run, collection, collection_id, import_def)
                await self.operations.update_operation(operation.id, progress=processed)

        await self.operations.update_operation(
            operation.id, status=OperationStatus.COMPLETED, total=processed, progress=processed
        )
        summary.set_state(collection.name, CollectionState.DONE)

    async def _start_operation(self, collection_id: str) -> Operation:
        try:
            operation = await self.operations.find_or_create_operation(
                collection_id, OperationKind.IMPORT_DATA
            )
            return await self.operations.update_operation(
                operation.id, status=OperationStatus.IN_PROGRESS
            )
        except Exception as exc:
            raise MissingOperationMetadataError(
                f"no import operation for collection {collection_id}: {exc}"
            ) from exc

    async def _run_import_def(
        self,
        run: MigrationRun,
        collection: CollectionDefinition,
        collection_id: str,
        import_def: ImportDef,
    ) -> int:
        try:
            items = await self.source_loader(import_def)
        except (OSError, ValueError) as exc:
            run.summary.fail(
                collection.name,
                FailureKind.CONFIGURATION,
                f"cannot read {import_def.file_path}: {exc}",
            )
            return 0
        log.info(
            f"[{run.database.name}] {collection.name}: {import_def.type} pass over "
            f"{len(items)} record(s) from {import_def.file_path}"
        )

        try:
            if import_def.type is ImportType.UPDATE:
                staged = self._stage_updates(run, collection, collection_id, import_def, items)
                commit = self._commit_update
            else:
                staged = self._stage_creates(run, collection, collection_id, import_def, items)
                commit = self._commit_create
        except (UnknownConverterError, UnknownValidationRuleError) as exc:
            run.summary.fail(
                collection.name,
                FailureKind.CONFIGURATION,
                f"{import_def.file_path}: {type(exc).__name__} {exc}",
            )
            return 0

        await self._commit_all(
            run,
            collection,
            staged,
            lambda record: commit(run, collection, collection_id, record),
        )
        return len(items)

    # Stage step (synchronous) -------------------------------------------------

    def _prepare(
        self,
        run: MigrationRun,
        collection: CollectionDefinition,
        collection_id: str,
        import_def: ImportDef,
        item: Mapping[str, Any],
        *,
        partial: bool,
    ) -> tuple[dict[str, Any], dict[str, Any]] | None:
        """Transform and validate one raw item; ``None`` when it was rejected."""

        source_id = _source_id(item, import_def)
        context = _build_context(run, collection, collection_id, item)
        payload = transform_record(item, import_def.attribute_mappings)
        context = fill_missing(context, payload)

        errors = validate_item(payload, import_def.attribute_mappings, context)
        if run.is_identity_collection(collection.name):
            _, domain_payload = split_identity_payload(payload)
        else:
            domain_payload = payload
        errors.extend(validate_payload(collection, domain_payload, partial=partial))
        if errors:
            run.summary.fail(
                collection.name,
                FailureKind.VALIDATION,
                "; ".join(errors),
                source_id=source_id,
                payload=payload,
            )
            return None
        return context, payload

    def _stage_creates(
        self,
        run: MigrationRun,
        collection: CollectionDefinition,
        collection_id: str,
        import_def: ImportDef,
        items: Iterable[Mapping[str, Any]],
    ) -> _StagedBatch:
        staged = _StagedBatch()
        for item in items:
            try:
                record = self._stage_create(run, collection, collection_id, import_def, item)
            except (UnknownConverterError, UnknownValidationRuleError):
                raise
            except Exception as exc:
                self._record_error(run, collection, import_def, item, exc)
                continue
            if record is not None:
                staged.add(record)
        return staged

    def _stage_create(
        self,
        run: MigrationRun,
        collection: CollectionDefinition,
        collection_id: str,
        import_def: ImportDef,
        item: Mapping[str, Any],
    ) -> ImportRecord | None:
        prepared = self._prepare(run, collection, collection_id, import_def, item, partial=False)
        if prepared is None:
            return None
        context, payload = prepared
        source_id = _source_id(item, import_def)

        if run.is_identity_collection(collection.name):
            return self._stage_identity(run, import_def, item, context, payload, source_id)

        stage = run.import_map.ensure_stage(collection.name, collection)
        if source_id is not None and source_id in stage.ids:
            run.summary.fail(
                collection.name,
                FailureKind.DUPLICATE_KEY,
                f"source id {source_id!r} already imported as {stage.ids.target_for(source_id)}",
                source_id=source_id,
                payload=payload,
            )
            return None
        target_id = run.import_map.assign_unique_target_id(collection.name)
        if source_id is not None:
            stage.ids.claim(source_id, target_id)
        record = ImportRecord(
            raw_data=dict(item),
            context=context,
            final_data=payload,
            import_def=import_def,
            source_id=source_id,
            target_id=target_id,
        )
        return run.import_map.put_record(collection.name, record)

    def _record_error(
        self,
        run: MigrationRun,
        collection: CollectionDefinition,
        import_def: ImportDef,
        item: Mapping[str, Any],
        exc: Exception,
    ) -> None:
        source_id = _source_id(item, import_def)
        log.debug(f"{collection.name}: record {source_id} raised", exc_info=exc)
        run.summary.fail(
            collection.name,
            FailureKind.VALIDATION,
            f"{type(exc).__name__}: {exc}",
            source_id=source_id,
            payload=dict(item),
        )

    def _stage_identity(
        self,
        run: MigrationRun,
        import_def: ImportDef,
        item: Mapping[str, Any],
        context: dict[str, Any],
        payload: dict[str, Any],
        source_id: str | None,
    ) -> ImportRecord:
        collection_name = self.project.users_collection_name
        stage = run.import_map.ensure_stage(collection_name)

        claimed = stage.ids.target_for(source_id) if source_id is not None else None
        if claimed is not None:
            # the same source row twice is folded into its first occurrence
            canonical_id = claimed
            identity_payload, domain_payload = split_identity_payload(payload)
        else:
            candidate_id = run.import_map.assign_unique_target_id(collection_name)
            resolution = run.identities.resolve(
                payload, source_id=source_id, candidate_id=candidate_id
            )
            canonical_id = resolution.canonical_id
            identity_payload = resolution.identity_payload
            domain_payload = resolution.domain_payload
            if source_id is not None:
                stage.ids.claim(source_id, canonical_id)

        self._stage_identity_payload(run, import_def, canonical_id, identity_payload)

        record = ImportRecord(
            raw_data=dict(item),
            context=context,
            final_data=domain_payload,
            import_def=import_def,
            source_id=source_id,
            target_id=canonical_id,
        )
        winner = stage.record_for_target(canonical_id)
        if winner is not None:
            winner.absorb(record)
            return winner
        run.import_map.reserve_target_id(collection_name, canonical_id)
        return run.import_map.put_record(collection_name, record)

    def _stage_identity_payload(
        self,
        run: MigrationRun,
        import_def: ImportDef,
        canonical_id: str,
        identity_payload: dict[str, Any],
    ) -> None:
        stage = run.import_map.ensure_stage(run.identity_stage)
        existing = stage.record_for_target(canonical_id)
        if existing is not None:
            existing.final_data = deep_merge(existing.final_data, identity_payload)
            return
        stage.records.append(
            ImportRecord(
                raw_data={},
                context={},
                final_data=dict(identity_payload),
                import_def=import_def,
                target_id=canonical_id,
            )
        )

    def _locate_update_target(
        self,
        run: MigrationRun,
        collection: CollectionDefinition,
        import_def: ImportDef,
        context: Mapping[str, Any],
        source_id: str | None,
    ) -> ImportRecord | None:
        stage = run.import_map.get_stage(collection.name)
        if stage is None:
            return None
        mapping = import_def.update_mapping
        if mapping is not None:
            original = context.get(mapping.original_id_field)
            if original is not None:
                key = str(original)
                record = stage.find(
                    lambda candidate: str(candidate.context.get(mapping.target_field)) == key
                )
                if record is not None:
                    return record
        if source_id is None:
            return None
        target_id = stage.ids.target_for(source_id)
        if target_id is None:
            target_id = run.merge_table.canonical_for(source_id)
        if target_id is None:
            return None
        return stage.record_for_target(target_id)

    def _stage_updates(
        self,
        run: MigrationRun,
        collection: CollectionDefinition,
        collection_id: str,
        import_def: ImportDef,
        items: Iterable[Mapping[str, Any]],
    ) -> _StagedBatch:
        staged = _StagedBatch()
        for item in items:
            try:
                record = self._stage_update(run, collection, collection_id, import_def, item)
            except (UnknownConverterError, UnknownValidationRuleError):
                raise
            except Exception as exc:
                self._record_error(run, collection, import_def, item, exc)
                continue
            if record is not None:
                staged.add(record)
        return staged

    def _stage_update(
        self,
        run: MigrationRun,
        collection: CollectionDefinition,
        collection_id: str,
        import_def: ImportDef,
        item: Mapping[str, Any],
    ) -> ImportRecord | None:
        prepared = self._prepare(run, collection, collection_id, import_def, item, partial=True)
        if prepared is None:
            return None
        context, payload = prepared
        source_id = _source_id(item, import_def)
        record = self._locate_update_target(run, collection, import_def, context, source_id)
        if record is None:
            run.summary.fail(
                collection.name,
                FailureKind.UPDATE_TARGET_MISSING,
                "no previously imported record to update",
                source_id=source_id,
                payload=payload,
            )
            return None

        if run.is_identity_collection(collection.name) and record.target_id is not None:
            identity_payload, payload = split_identity_payload(payload)
            self._stage_identity_payload(run, import_def, record.target_id, identity_payload)
        record.final_data = deep_merge(record.final_data, payload)
        record.context = fill_missing(record.context, context)
        return record

    # Commit step (bounded concurrency) -----------------------------------------

    async def _commit_all(
        self,
        run: MigrationRun,
        collection: CollectionDefinition,
        staged: _StagedBatch,
        commit: _Commit,
    ) -> None:
        if not staged:
            return
        limit = asyncio.Semaphore(self.config.batch_size)

        async def bounded(record: ImportRecord) -> None:
            async with limit:
                await commit(record)

        results = await asyncio.gather(
            *(bounded(record) for record in staged.records), return_exceptions=True
        )
        for record, result in zip(staged.records, results, strict=True):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                run.summary.fail(
                    collection.name,
                    FailureKind.STORE_ERROR,
                    f"{type(result).__name__}: {result}",
                    source_id=record.source_id,
                    payload=record.final_data,
                )

    async def _commit_create(
        self,
        run: MigrationRun,
        collection: CollectionDefinition,
        collection_id: str,
        record: ImportRecord,
    ) -> None:
        database_id = run.database_id
        if record.is_created:
            # a later identity row folded into a record that already exists
            document_id = record.doc_id or ""
            await self.store.update_document(
                database_id, collection_id, document_id, record.final_data
            )
            self._outcome(run, collection, record, OutcomeStatus.UPDATED)
            return

        target_id = record.target_id or run.import_map.assign_unique_target_id(collection.name)
        if run.is_identity_collection(collection.name):
            # identity documents share the identity's id, so only an exact id match is adopted
            await self._ensure_identity(run, target_id)
            existing = await self.store.get_document(database_id, collection_id, target_id)
        else:
            existing = await self.store.document_exists(
                database_id, collection_id, record.final_data
            )

        if existing is not None:
            status = OutcomeStatus.EXISTING
            document_id = existing.id
            if record.source_id is not None and document_id != target_id:
                stage = run.import_map.get_stage(collection.name)
                if stage is not None and record.source_id in stage.ids:
                    stage.ids.rebind(record.source_id, document_id)
        else:
            status = OutcomeStatus.CREATED
            document = await self.store.create_document(
                database_id, collection_id, target_id, record.final_data
            )
            document_id = document.id

        record.mark_created(document_id)
        self._outcome(run, collection, record, status)
        await self._enqueue_actions(run, collection, collection_id, record)

    async def _ensure_identity(self, run: MigrationRun, identity_id: str) -> None:
        stage = run.import_map.get_stage(run.identity_stage)
        staged = stage.record_for_target(identity_id) if stage is not None else None
        if staged is not None and staged.is_created:
            return
        if await self.identities.get_identity(identity_id) is None:
            data = staged.final_data if staged is not None else {}
            await self.identities.create_identity(
                Identity(
                    id=identity_id,
                    email=data.get("email"),
                    phone=data.get("phone"),
                    name=data.get("name"),
                    labels=list(data.get("labels") or []),
                    prefs=dict(data.get("prefs") or {}),
                )
            )
            log.debug(f"Created identity {identity_id}")
        if staged is not None:
            staged.mark_created(identity_id)

    async def _commit_update(
        self,
        run: MigrationRun,
        collection: CollectionDefinition,
        collection_id: str,
        record: ImportRecord,
    ) -> None:
        document_id = record.doc_id
        if document_id is None:
            run.summary.fail(
                collection.name,
                FailureKind.UPDATE_TARGET_MISSING,
                "the record to update was never created",
                source_id=record.source_id,
                payload=record.final_data,
            )
            return
        await self.store.update_document(
            run.database_id, collection_id, document_id, record.final_data
        )
        self._outcome(run, collection, record, OutcomeStatus.UPDATED)

    def _outcome(
        self,
        run: MigrationRun,
        collection: CollectionDefinition,
        record: ImportRecord,
        status: OutcomeStatus,
    ) -> None:
        run.summary.record(
            RecordOutcome(
                collection=collection.name,
                source_id=record.source_id,
                document_id=record.doc_id or "",
                status=status,
            )
        )

    async def _enqueue_actions(
        self,
        run: MigrationRun,
        collection: CollectionDefinition,
        collection_id: str,
        record: ImportRecord,
    ) -> None:
        mappings = mappings_with_actions(
            record.import_def.attribute_mappings,
            record.context,
            record.final_data,
            bucket_id=document_bucket_id(self.project.document_bucket_id, run.database.name),
            base_dir=run.base_dir,
        )
        if not mappings:
            return
        await self.queue.enqueue(
            ActionEnvelope(
                db_id=run.database_id,
                collection_id=collection_id,
                collection_name=collection.name,
                source_id=record.source_id,
                final_item=record.final_data,
                attribute_mappings=mappings,
                context=record.context,
            )
        )

    # Reference write-back --------------------------------------------------------

    async def _write_back(
        self, run: MigrationRun, payloads: dict[tuple[str, str], dict[str, Any]]
    ) -> None:
        limit = asyncio.Semaphore(self.config.batch_size)

        async def bounded(collection_key: str, document_id: str, payload: dict[str, Any]) -> None:
            async with limit:
                await self.store.update_document(
                    run.database_id, run.collection_ids[collection_key], document_id, payload
                )

        keys = list(payloads)
        results = await asyncio.gather(
            *(bounded(key, document_id, payloads[(key, document_id)]) for key, document_id in keys),
            return_exceptions=True,
        )
        for (key, document_id), result in zip(keys, results, strict=True):
            if isinstance(result, Exception):
                collection = self.project.collection(key)
                run.summary.fail(
                    collection.name if collection is not None else key,
                    FailureKind.STORE_ERROR,
                    f"writing references of {document_id} failed: {result}",
                    payload=payloads[(key, document_id)],
                )
            elif isinstance(result, BaseException):
                raise result
            else:
                run.summary.written_back += 1
        log.info(
            f"[{run.database.name}] wrote back references of "
            f"{run.summary.written_back} document(s)"
        )

