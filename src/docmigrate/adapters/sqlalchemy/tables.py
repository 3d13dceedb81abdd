"""SQLAlchemy mapping metadata for the local operation journal."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from functools import cache
from typing import TYPE_CHECKING, Any, cast

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Dialect,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    TypeDecorator,
    orm,
)

from docmigrate.domain.model import Batch, Operation, OperationKind, OperationStatus

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine

log = logging.getLogger(__name__)


class UTCDateTime(TypeDecorator[datetime]):
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        _ = dialect
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        _ = dialect
        if value is None:
            return None
        return value if value.tzinfo else value.replace(tzinfo=UTC)


class StringListType(TypeDecorator[list[str]]):
    impl = Text
    cache_ok = True

    def process_bind_param(self, value: list[str] | None, dialect: Dialect) -> str | None:
        _ = dialect
        if value is None:
            return None
        return json.dumps(list(value))

    def process_result_value(self, value: str | None, dialect: Dialect) -> list[str]:
        _ = dialect
        if value is None:
            return []
        loaded = json.loads(value)
        if not isinstance(loaded, list):
            return []
        return [str(item) for item in cast(list[Any], loaded)]


mapper_registry = orm.registry()
mapper_registry.metadata.naming_convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_label)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_label)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

operation_table = Table(
    "operation",
    mapper_registry.metadata,
    Column("id", String(64), primary_key=True),
    Column("collection_id", String(64), nullable=False),
    Column("kind", Enum(OperationKind, native_enum=False), nullable=False),
    Column("status", Enum(OperationStatus, native_enum=False), nullable=False),
    Column("total", Integer, nullable=False, default=0),
    Column("progress", Integer, nullable=False, default=0),
    Column("batches", StringListType(), nullable=False),
    Column("error", Text, nullable=True),
    Column("created_at", UTCDateTime(), nullable=False),
    Column("updated_at", UTCDateTime(), nullable=False),
    Index(None, "collection_id", "kind"),
)

batch_table = Table(
    "batch",
    mapper_registry.metadata,
    Column("id", String(64), primary_key=True),
    Column("operation_id", String(64), ForeignKey("operation.id"), nullable=False),
    Column("data", Text, nullable=False),
    Column("processed", Boolean, nullable=False, default=False),
    Column("created_at", UTCDateTime(), nullable=False),
)


@cache
def start_mappers() -> orm.registry:
    """Map the journal records onto their tables (idempotent)."""

    log.info("Starting SQLAlchemy mappers")
    mapper_registry.map_imperatively(Operation, operation_table)
    mapper_registry.map_imperatively(Batch, batch_table)
    return mapper_registry


def create_all_tables(engine: Engine) -> None:
    mapper_registry.metadata.create_all(engine)
