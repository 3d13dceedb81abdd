"""Global relationship resolution over the fully staged import map."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from logging import getLogger
from typing import TYPE_CHECKING, Any, cast

from .import_map import collection_key
from .results import FailureKind

if TYPE_CHECKING:
    from docmigrate.domain.definitions import CollectionDefinition, IdMapping

    from .context import MigrationRun
    from .import_map import CollectionStage, ImportRecord

log = getLogger(__name__)


@dataclass(slots=True, kw_only=True, frozen=True)
class ResolvedReference:
    collection: str
    document_id: str
    field: str
    target_collection: str
    target_ids: tuple[str, ...]
    many: bool

    @property
    def store_value(self) -> str | list[str]:
        return list(self.target_ids) if self.many else self.target_ids[0]


def _is_blank(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def _as_keys(value: Any) -> list[str]:
    if isinstance(value, list):
        return [str(item) for item in cast(list[Any], value) if item is not None]
    return [str(value)]


def collection_id_mappings(collection: CollectionDefinition) -> list[IdMapping]:
    """All reference mappings of ``collection``'s import definitions, de-duplicated."""

    seen: set[tuple[str, str, str, str | None]] = set()
    mappings: list[IdMapping] = []
    for import_def in collection.import_defs:
        for mapping in import_def.id_mappings:
            key = (
                mapping.source_field,
                mapping.target_field,
                collection_key(mapping.target_collection),
                mapping.field_to_set,
            )
            if key in seen:
                continue
            seen.add(key)
            mappings.append(mapping)
    return mappings


class RelationshipResolver:
    """Rewrite source-id references to the documents created for them.

    Runs once after every collection's create and update passes. Identity
    references are first rewritten through the merge table, since merged-away
    identity records have no staged record of their own, then every mapping is
    looked up against the target collection's staged records.
    """

    def __init__(self, run: MigrationRun) -> None:
        self._run = run

    def resolve(self) -> list[ResolvedReference]:
        rewritten = self.rewrite_merged_identities()
        if rewritten:
            log.info(f"Rewrote {rewritten} identity reference(s) to canonical ids")
        references = self.resolve_references()
        self._run.summary.resolved_references += len(references)
        return references

    def _stages_with_mappings(
        self,
    ) -> Iterator[tuple[CollectionDefinition, CollectionStage, list[IdMapping]]]:
        for collection in self._run.project.collections:
            stage = self._run.import_map.get_stage(collection.name)
            mappings = collection_id_mappings(collection)
            if stage is None or not mappings:
                continue
            yield collection, stage, mappings

    def rewrite_merged_identities(self) -> int:
        """Point identity references at canonical ids; returns the number rewritten."""

        merge_table = self._run.merge_table
        rewritten = 0
        for _collection, stage, mappings in self._stages_with_mappings():
            for mapping in mappings:
                if not self._run.is_identity_collection(mapping.target_collection):
                    continue
                for record in stage.records:
                    value = record.context.get(mapping.source_field)
                    if _is_blank(value):
                        continue
                    if isinstance(value, list):
                        items = cast(list[Any], value)
                        updated: Any = [
                            merge_table.canonical_for(str(item)) or item for item in items
                        ]
                    else:
                        updated = merge_table.canonical_for(str(value)) or value
                    if updated != value:
                        record.context[mapping.source_field] = updated
                        rewritten += 1
        return rewritten

    def resolve_references(self) -> list[ResolvedReference]:
        references: list[ResolvedReference] = []
        for collection, stage, mappings in self._stages_with_mappings():
            for record in stage.records:
                if not record.is_created:
                    continue
                for mapping in mappings:
                    reference = self._resolve_one(collection, record, mapping)
                    if reference is not None:
                        references.append(reference)
        return references

    def _resolve_one(
        self,
        collection: CollectionDefinition,
        record: ImportRecord,
        mapping: IdMapping,
    ) -> ResolvedReference | None:
        value = record.context.get(mapping.source_field)
        if _is_blank(value):
            return None

        target_stage = self._run.import_map.get_stage(mapping.target_collection)
        if target_stage is None:
            self._run.summary.fail(
                collection.name,
                FailureKind.UNRESOLVED_REFERENCE,
                f"target collection {mapping.target_collection!r} is not configured",
                source_id=record.source_id,
            )
            return None

        by_document = self._run.is_identity_collection(mapping.target_collection)
        matches: list[ImportRecord] = []
        matched: set[int] = set()
        for key in _as_keys(value):
            for candidate in target_stage.records:
                if id(candidate) in matched or not candidate.is_created:
                    continue
                if _matches(candidate, mapping.target_field, key, by_document=by_document):
                    matches.append(candidate)
                    matched.add(id(candidate))

        destination = mapping.destination
        if not matches:
            self._run.summary.fail(
                collection.name,
                FailureKind.UNRESOLVED_REFERENCE,
                f"no {mapping.target_collection} record with "
                f"{mapping.target_field}={value!r} for field {destination!r}",
                source_id=record.source_id,
            )
            return None

        many = collection.is_array_attribute(destination) or isinstance(
            record.final_data.get(destination), list
        )
        if many:
            record.final_data[destination] = [dict(match.final_data) for match in matches]
        else:
            record.final_data[destination] = dict(matches[0].final_data)

        document_id = record.doc_id
        if document_id is None:
            return None
        return ResolvedReference(
            collection=collection.key,
            document_id=document_id,
            field=destination,
            target_collection=collection_key(mapping.target_collection),
            target_ids=tuple(match.doc_id or "" for match in (matches if many else matches[:1])),
            many=many,
        )


def _matches(record: ImportRecord, field: str, key: str, *, by_document: bool) -> bool:
    value = record.context.get(field)
    if value is not None and str(value) == key:
        return True
    # identity references were rewritten to canonical (document) ids
    return by_document and record.doc_id == key


def write_back_payloads(
    references: list[ResolvedReference],
) -> dict[tuple[str, str], dict[str, Any]]:
    """Group resolved references into one store update payload per document."""

    payloads: dict[tuple[str, str], dict[str, Any]] = {}
    for reference in references:
        payload = payloads.setdefault((reference.collection, reference.document_id), {})
        payload[reference.field] = reference.store_value
    return payloads
