"""Per-item outcomes and the aggregated run summary."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from enum import StrEnum
from logging import getLogger
from typing import Any, Literal

log = getLogger(__name__)


class CollectionState(StrEnum):
    PENDING = "pending"
    CREATING = "creating"
    UPDATING = "updating"
    DONE = "done"
    FAILED = "failed"


class FailureKind(StrEnum):
    CONFIGURATION = "configuration"
    OPERATION_METADATA = "operation_metadata"
    VALIDATION = "validation"
    DUPLICATE_KEY = "duplicate_key"
    UPDATE_TARGET_MISSING = "update_target_missing"
    UNRESOLVED_REFERENCE = "unresolved_reference"
    STORE_ERROR = "store_error"
    ACTION_FAILED = "action_failed"


class OutcomeStatus(StrEnum):
    CREATED = "created"
    EXISTING = "existing"
    UPDATED = "updated"
    FAILED = "failed"


@dataclass(slots=True, kw_only=True, frozen=True)
class RecordOutcome:
    collection: str
    source_id: str | None
    document_id: str
    status: OutcomeStatus


@dataclass(slots=True, kw_only=True, frozen=True)
class RecordFailure:
    collection: str
    source_id: str | None
    kind: FailureKind
    reason: str
    payload: dict[str, Any] | None = None
    status: Literal[OutcomeStatus.FAILED] = OutcomeStatus.FAILED


type RecordResult = RecordOutcome | RecordFailure


@dataclass(slots=True)
class CollectionSummary:
    name: str
    state: CollectionState = CollectionState.PENDING
    counts: Counter[OutcomeStatus] = field(default_factory=Counter[OutcomeStatus])

    @property
    def created(self) -> int:
        return self.counts[OutcomeStatus.CREATED]

    @property
    def updated(self) -> int:
        return self.counts[OutcomeStatus.UPDATED]

    @property
    def skipped(self) -> int:
        return self.counts[OutcomeStatus.EXISTING]

    @property
    def failed(self) -> int:
        return self.counts[OutcomeStatus.FAILED]


@dataclass(slots=True)
class RunSummary:
    """Everything a run produced, inspectable by callers and tests."""

    database: str
    collections: dict[str, CollectionSummary] = field(
        default_factory=dict[str, CollectionSummary]
    )
    outcomes: list[RecordOutcome] = field(default_factory=list[RecordOutcome])
    failures: list[RecordFailure] = field(default_factory=list[RecordFailure])
    resolved_references: int = 0
    written_back: int = 0
    actions_executed: int = 0
    actions_failed: int = 0

    def collection(self, name: str) -> CollectionSummary:
        summary = self.collections.get(name)
        if summary is None:
            summary = CollectionSummary(name=name)
            self.collections[name] = summary
        return summary

    def set_state(self, name: str, state: CollectionState) -> None:
        self.collection(name).state = state
        log.info(f"[{self.database}] {name}: {state}")

    def record(self, result: RecordResult) -> None:
        self.collection(result.collection).counts[result.status] += 1
        if isinstance(result, RecordFailure):
            self.failures.append(result)
            log.error(
                f"[{self.database}] {result.collection} record {result.source_id!r} "
                f"{result.kind}: {result.reason}"
            )
            if result.payload is not None:
                log.debug(f"Offending payload: {result.payload!r}")
        else:
            self.outcomes.append(result)

    def fail(
        self,
        collection: str,
        kind: FailureKind,
        reason: str,
        *,
        source_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> RecordFailure:
        failure = RecordFailure(
            collection=collection,
            source_id=source_id,
            kind=kind,
            reason=reason,
            payload=payload,
        )
        self.record(failure)
        return failure

    def failures_of(self, kind: FailureKind) -> list[RecordFailure]:
        return [failure for failure in self.failures if failure.kind is kind]

    @property
    def ok(self) -> bool:
        return not self.failures

    def describe(self) -> list[str]:
        lines = [
            f"{name}: {item.state} created={item.created} updated={item.updated} "
            f"existing={item.skipped} failed={item.failed}"
            for name, item in self.collections.items()
        ]
        lines.append(
            f"references={self.resolved_references} written_back={self.written_back} "
            f"actions={self.actions_executed} actions_failed={self.actions_failed}"
        )
        return lines
