"""Records exchanged with the target store and the operation journal."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


class OperationStatus(StrEnum):
    PENDING = "pending"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ERROR = "error"


class OperationKind(StrEnum):
    IMPORT_DATA = "importData"
    AFTER_IMPORT_ACTION = "afterImportAction"


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(slots=True, kw_only=True)
class Document:
    id: str
    collection_id: str
    database_id: str
    data: dict[str, Any] = field(default_factory=dict[str, Any])


@dataclass(slots=True, kw_only=True)
class Identity:
    id: str
    email: str | None = None
    phone: str | None = None
    name: str | None = None
    labels: list[str] = field(default_factory=list[str])
    prefs: dict[str, Any] = field(default_factory=dict[str, Any])


@dataclass(slots=True, kw_only=True)
class Bucket:
    id: str
    name: str


@dataclass(slots=True, kw_only=True)
class StoredFile:
    id: str
    bucket_id: str
    name: str
    size: int = 0


@dataclass(eq=False, kw_only=True)
class Operation:
    """Bookkeeping record tracking one kind of work for a collection."""

    id: str
    collection_id: str
    kind: OperationKind
    status: OperationStatus = OperationStatus.PENDING
    total: int = 0
    progress: int = 0
    batches: list[str] = field(default_factory=list[str])
    error: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass(eq=False, kw_only=True)
class Batch:
    """Serialized payload belonging to an operation."""

    id: str
    operation_id: str
    data: str
    processed: bool = False
    created_at: datetime = field(default_factory=_utcnow)
