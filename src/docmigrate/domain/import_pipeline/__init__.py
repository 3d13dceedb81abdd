"""Identifier reconciliation and relationship resolution for document migrations.

A migration run stages every source record in an :class:`ImportMap`, collapses
identity records sharing an email or phone through the
:class:`IdentityDeduplicator`, commits the staged documents with bounded
concurrency, rewrites cross-collection references once everything exists and
finally drains the durable queue of deferred actions.
"""

from __future__ import annotations

from .actions import ActionEnvelope, ActionQueue, ActionRegistry, UnknownActionError
from .context import MigrationRun
from .identity import IdentityConflict, IdentityDeduplicator, MergeTable
from .import_map import (
    CollectionStage,
    IdReconciliationTable,
    ImportMap,
    ImportRecord,
    collection_key,
    new_document_id,
)
from .merge import deep_merge
from .orchestrator import ImportController, MissingOperationMetadataError
from .relationships import RelationshipResolver, ResolvedReference
from .results import (
    CollectionState,
    FailureKind,
    OutcomeStatus,
    RecordFailure,
    RecordOutcome,
    RunSummary,
)
from .transform import UnknownConverterError, transform_record

__all__ = [
    "ActionEnvelope",
    "ActionQueue",
    "ActionRegistry",
    "CollectionStage",
    "CollectionState",
    "FailureKind",
    "IdReconciliationTable",
    "IdentityConflict",
    "IdentityDeduplicator",
    "ImportController",
    "ImportMap",
    "ImportRecord",
    "MergeTable",
    "MigrationRun",
    "MissingOperationMetadataError",
    "OutcomeStatus",
    "RecordFailure",
    "RecordOutcome",
    "RelationshipResolver",
    "ResolvedReference",
    "RunSummary",
    "UnknownActionError",
    "UnknownConverterError",
    "collection_key",
    "deep_merge",
    "new_document_id",
    "transform_record",
]
