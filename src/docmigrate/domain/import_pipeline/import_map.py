"""Per-run staging store: collection stages, import records and id tables."""

from __future__ import annotations

import secrets
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from logging import getLogger
from typing import TYPE_CHECKING, Any, Final

from docmigrate.domain.definitions import normalize_name

from .merge import deep_merge, fill_missing

if TYPE_CHECKING:
    from docmigrate.domain.definitions import CollectionDefinition, ImportDef

log = getLogger(__name__)

type IdGenerator = Callable[[], str]
type RecordPredicate = Callable[[ImportRecord], bool]

IDENTITY_STAGE: Final[str] = "users"
DOC_ID: Final[str] = "docId"
MAX_ID_ATTEMPTS: Final[int] = 100


def new_document_id() -> str:
    """Return a 20 character hex id, the same shape the store generates."""

    return secrets.token_hex(10)


def collection_key(name: str) -> str:
    return normalize_name(name)


class UnknownCollectionError(KeyError):
    """Raised when writing to a collection that has no stage."""


@dataclass(slots=True, kw_only=True)
class ImportRecord:
    """One staged unit of migration work.

    ``context`` only ever grows; ``context["docId"]`` is written once the
    document exists in the store and gates every reference to this record.
    """

    raw_data: dict[str, Any]
    context: dict[str, Any]
    final_data: dict[str, Any]
    import_def: ImportDef
    source_id: str | None = None
    target_id: str | None = None

    @property
    def doc_id(self) -> str | None:
        value = self.context.get(DOC_ID)
        return str(value) if value else None

    @property
    def is_created(self) -> bool:
        return self.doc_id is not None

    def mark_created(self, document_id: str, extra: dict[str, Any] | None = None) -> None:
        self.target_id = document_id
        if extra:
            self.context.update(extra)
        self.context[DOC_ID] = document_id

    def merge(self, other: ImportRecord) -> None:
        """Deep-merge ``other`` (same source id) into this record."""

        self.final_data = deep_merge(self.final_data, other.final_data)
        self.context = deep_merge(self.context, other.context)

    def absorb(self, other: ImportRecord) -> None:
        """Fold a deduplicated record into this one without touching its own keys."""

        self.final_data = deep_merge(self.final_data, other.final_data)
        self.context = fill_missing(self.context, other.context)


@dataclass(slots=True)
class IdReconciliationTable:
    """Source identifier to target identifier mapping for one collection."""

    _targets: dict[str, str] = field(default_factory=dict[str, str])

    def claim(self, source_id: str, target_id: str) -> bool:
        """Register ``source_id``; returns ``False`` if it was already claimed."""

        if source_id in self._targets:
            return False
        self._targets[source_id] = target_id
        return True

    def target_for(self, source_id: str) -> str | None:
        return self._targets.get(source_id)

    def rebind(self, source_id: str, target_id: str) -> None:
        """Point an already-claimed source id at the document that was actually used."""

        if source_id not in self._targets:
            raise KeyError(source_id)
        self._targets[source_id] = target_id

    def source_ids(self) -> list[str]:
        return list(self._targets)

    def is_assigned(self, target_id: str) -> bool:
        return target_id in self._targets.values()

    def target_ids(self) -> set[str]:
        return set(self._targets.values())

    def items(self) -> list[tuple[str, str]]:
        return list(self._targets.items())

    def __contains__(self, source_id: object) -> bool:
        return source_id in self._targets

    def __len__(self) -> int:
        return len(self._targets)


@dataclass(slots=True, kw_only=True)
class CollectionStage:
    key: str
    schema: CollectionDefinition | None = None
    records: list[ImportRecord] = field(default_factory=list[ImportRecord])
    ids: IdReconciliationTable = field(default_factory=IdReconciliationTable)
    reserved_ids: set[str] = field(default_factory=set[str])

    def find(self, predicate: RecordPredicate) -> ImportRecord | None:
        for record in self.records:
            if predicate(record):
                return record
        return None

    def record_for_source(self, source_id: str) -> ImportRecord | None:
        return self.find(lambda record: record.source_id == source_id)

    def record_for_target(self, target_id: str) -> ImportRecord | None:
        return self.find(lambda record: record.target_id == target_id)


class ImportMap:
    """Owns every collection stage of a migration run.

    Collection names are normalised with :func:`collection_key` so lookups do
    not depend on how a name was capitalised or spaced in the project file.
    """

    def __init__(self, *, id_generator: IdGenerator = new_document_id) -> None:
        self._stages: dict[str, CollectionStage] = {}
        self._id_generator = id_generator

    def ensure_stage(
        self, name: str, schema: CollectionDefinition | None = None
    ) -> CollectionStage:
        key = collection_key(name)
        stage = self._stages.get(key)
        if stage is None:
            stage = CollectionStage(key=key, schema=schema)
            self._stages[key] = stage
        elif schema is not None and stage.schema is None:
            stage.schema = schema
        return stage

    def get_stage(self, name: str) -> CollectionStage | None:
        return self._stages.get(collection_key(name))

    def get_or_create_stage(self, name: str) -> CollectionStage | None:
        """Return the stage for ``name``; only the identity stage is created on demand."""

        stage = self.get_stage(name)
        if stage is None and collection_key(name) == IDENTITY_STAGE:
            stage = self.ensure_stage(IDENTITY_STAGE)
        if stage is None:
            log.warning(f"No stage configured for collection {name!r}")
        return stage

    def _require_stage(self, name: str) -> CollectionStage:
        stage = self.get_stage(name)
        if stage is None:
            raise UnknownCollectionError(name)
        return stage

    def put_record(self, name: str, record: ImportRecord) -> ImportRecord:
        """Stage ``record`` and return the record that now holds its data.

        A second record carrying an already-staged source id is deep-merged into the
        first one (a duplicate-key diagnostic is logged) and the first is returned.
        """

        stage = self._require_stage(name)
        if record.source_id is not None:
            existing = stage.record_for_source(record.source_id)
            if existing is not None and existing is not record:
                log.warning(
                    f"Duplicate source id {record.source_id!r} in {stage.key}; merging payloads"
                )
                existing.merge(record)
                return existing
        stage.records.append(record)
        return record

    def find_record_by(self, name: str, predicate: RecordPredicate) -> ImportRecord | None:
        stage = self.get_stage(name)
        if stage is None:
            return None
        return stage.find(predicate)

    def assign_unique_target_id(self, name: str) -> str:
        """Generate an id unused by ``name``'s id table and earlier assignments."""

        stage = self._require_stage(name)
        for _ in range(MAX_ID_ATTEMPTS):
            candidate = self._id_generator()
            if not stage.ids.is_assigned(candidate) and candidate not in stage.reserved_ids:
                stage.reserved_ids.add(candidate)
                return candidate
        raise RuntimeError(f"Could not generate a unique id for {stage.key}")

    def reserve_target_id(self, name: str, target_id: str) -> None:
        self._require_stage(name).reserved_ids.add(target_id)

    def records(self, name: str) -> list[ImportRecord]:
        stage = self.get_stage(name)
        return list(stage.records) if stage else []

    def keys(self) -> list[str]:
        return list(self._stages)

    def __iter__(self) -> Iterator[CollectionStage]:
        return iter(self._stages.values())

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and collection_key(name) in self._stages
