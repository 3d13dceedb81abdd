"""SQLite-backed operation journal for deferred post-import actions."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime
from logging import getLogger
from typing import TYPE_CHECKING, Any

from sqlalchemy import create_engine, make_url, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from docmigrate.config import get_database_config
from docmigrate.domain.import_pipeline.import_map import new_document_id
from docmigrate.domain.model import Batch, Operation, OperationKind, OperationStatus
from docmigrate.domain.ports import OperationStore

from .tables import batch_table, create_all_tables, operation_table, start_mappers

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine

log = getLogger(__name__)

_OPERATION_FIELDS = frozenset({"status", "total", "progress", "batches", "error"})


class StartupError(RuntimeError):
    """Raised when the journal is used before initialisation."""


@dataclass(slots=True)
class _AdapterState:
    _engine: Engine | None = None
    _session_factory: sessionmaker[Session] | None = None

    @property
    def engine(self) -> Engine | None:
        return self._engine

    @engine.setter
    def engine(self, value: Engine | None) -> None:
        self._session_factory = None
        self._engine = value

    @property
    def session_factory(self) -> sessionmaker[Session]:
        if self._engine is None:
            raise StartupError(
                "SQLAlchemy journal not initialised. Call docmigrate.adapters.sqlalchemy."
                "journal.startup() before creating an operation store."
            )
        if self._session_factory is None:
            self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False)
        return self._session_factory


_STATE = _AdapterState()


def create_journal_engine(database_uri: str) -> Engine:
    """Create an engine usable from the worker threads the operation store runs on.

    An in-memory SQLite database lives inside a single connection, so it is shared
    through a ``StaticPool`` instead of one database per thread.
    """

    url = make_url(database_uri)
    if url.get_backend_name() != "sqlite":
        return create_engine(url, future=True)
    connect_args = {"check_same_thread": False}
    if url.database in (None, "", ":memory:"):
        return create_engine(
            url, future=True, poolclass=StaticPool, connect_args=connect_args
        )
    return create_engine(url, future=True, connect_args=connect_args)


def startup(
    *,
    engine: Engine | None = None,
    database_uri: str | None = None,
    force: bool = False,
) -> None:
    """Initialise the SQLAlchemy engine, tables and session factory."""

    if _STATE.engine is not None and not force:
        raise StartupError(
            "SQLAlchemy journal already initialised. Pass force=True to reconfigure."
        )
    if _STATE.engine is not None:
        _STATE.engine.dispose()

    resolved_engine = engine or create_journal_engine(database_uri or get_database_config().uri)
    start_mappers()
    create_all_tables(resolved_engine)
    _STATE.engine = resolved_engine
    log.debug(f"Operation journal ready at {resolved_engine.url}")


def is_started() -> bool:
    """Return whether the journal has been initialised."""

    return _STATE.engine is not None


def shutdown() -> None:
    """Dispose the managed engine and reset state (primarily for tests)."""

    if _STATE.engine is not None:
        _STATE.engine.dispose()
    _STATE.engine = None


def _now() -> datetime:
    return datetime.now(UTC)


class SqlAlchemyOperationStore:
    """``OperationStore`` persisting operations and batches in a local database.

    Sessions are synchronous; every call runs in a worker thread so a journal write
    does not stall the store requests of other collections.
    """

    def __init__(self) -> None:
        self.session_factory: sessionmaker[Session] = _STATE.session_factory

    async def find_or_create_operation(
        self, collection_id: str, kind: OperationKind
    ) -> Operation:
        return await asyncio.to_thread(self._find_or_create_operation, collection_id, kind)

    async def get_operation(self, operation_id: str) -> Operation | None:
        return await asyncio.to_thread(self._get, Operation, operation_id)

    async def update_operation(self, operation_id: str, **fields: Any) -> Operation:
        unknown = set(fields) - _OPERATION_FIELDS
        if unknown:
            raise ValueError(f"Unknown operation fields: {sorted(unknown)}")
        return await asyncio.to_thread(self._update_operation, operation_id, fields)

    async def list_pending_operations(
        self, collection_id: str, kind: OperationKind
    ) -> list[Operation]:
        return await asyncio.to_thread(self._pending_operations, collection_id, kind)

    async def create_batch(self, operation_id: str, data: str) -> Batch:
        return await asyncio.to_thread(self._create_batch, operation_id, data)

    async def get_batch(self, batch_id: str) -> Batch | None:
        return await asyncio.to_thread(self._get, Batch, batch_id)

    async def delete_batch(self, batch_id: str) -> None:
        await asyncio.to_thread(self._delete_batch, batch_id)

    def _get[T](self, entity: type[T], entity_id: str) -> T | None:
        with self.session_factory() as session:
            return session.get(entity, entity_id)

    def _find_or_create_operation(self, collection_id: str, kind: OperationKind) -> Operation:
        with self.session_factory() as session:
            stmt = (
                select(Operation)
                .where(operation_table.c.collection_id == collection_id)
                .where(operation_table.c.kind == kind)
                .where(operation_table.c.status != OperationStatus.COMPLETED)
                .order_by(operation_table.c.created_at)
                .limit(1)
            )
            operation = session.execute(stmt).scalar_one_or_none()
            if operation is not None:
                return operation
            operation = Operation(id=new_document_id(), collection_id=collection_id, kind=kind)
            session.add(operation)
            session.commit()
            log.debug(f"Created {kind} operation {operation.id} for {collection_id}")
            return operation

    def _update_operation(self, operation_id: str, fields: dict[str, Any]) -> Operation:
        with self.session_factory() as session:
            operation = session.get(Operation, operation_id)
            if operation is None:
                raise KeyError(operation_id)
            for name, value in fields.items():
                setattr(operation, name, list(value) if name == "batches" else value)
            operation.updated_at = _now()
            session.commit()
            return operation

    def _pending_operations(self, collection_id: str, kind: OperationKind) -> list[Operation]:
        with self.session_factory() as session:
            stmt = (
                select(Operation)
                .where(operation_table.c.collection_id == collection_id)
                .where(operation_table.c.kind == kind)
                .where(operation_table.c.status != OperationStatus.COMPLETED)
                .order_by(operation_table.c.created_at)
            )
            return list(session.execute(stmt).scalars())

    def _create_batch(self, operation_id: str, data: str) -> Batch:
        with self.session_factory() as session:
            batch = Batch(id=new_document_id(), operation_id=operation_id, data=data)
            session.add(batch)
            session.commit()
            return batch

    def _delete_batch(self, batch_id: str) -> None:
        with self.session_factory() as session:
            session.execute(batch_table.delete().where(batch_table.c.id == batch_id))
            session.commit()



if TYPE_CHECKING:
    _operation_store_check: OperationStore = SqlAlchemyOperationStore()
