from __future__ import annotations

import json
import os
from itertools import count
from typing import TYPE_CHECKING, Any

import pytest
from sqlalchemy.engine import Engine  # noqa: TC002

from docmigrate.adapters.memory import (
    InMemoryDocumentStore,
    InMemoryIdentityStore,
    InMemoryOperationStore,
)
from docmigrate.adapters.sqlalchemy import create_journal_engine, shutdown, startup
from docmigrate.config import MigrationConfig
from docmigrate.domain.definitions import ProjectDefinition

os.environ.setdefault("DATABASE_URI", "sqlite+pysqlite:///:memory:")

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator
    from pathlib import Path

    from docmigrate.domain.import_pipeline.import_map import IdGenerator


@pytest.fixture
def sequential_ids() -> IdGenerator:
    counter = count(1)

    def generate() -> str:
        return f"doc{next(counter):04d}"

    return generate


@pytest.fixture
def migration_config() -> MigrationConfig:
    return MigrationConfig(batch_size=4, max_parallel_collections=2)


@pytest.fixture
def write_json(tmp_path: Path) -> Callable[[str, Any], Path]:
    def write(name: str, data: Any) -> Path:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data), encoding="utf-8")
        return path

    return write


@pytest.fixture
def make_project() -> Callable[..., ProjectDefinition]:
    def build(
        collections: list[dict[str, Any]],
        *,
        users_collection: str = "Members",
        databases: list[str] | None = None,
    ) -> ProjectDefinition:
        return ProjectDefinition.model_validate(
            {
                "databases": [{"name": name} for name in databases or ["Main"]],
                "collections": collections,
                "usersCollectionName": users_collection,
            }
        )

    return build


@pytest.fixture
def document_store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def identity_store() -> InMemoryIdentityStore:
    return InMemoryIdentityStore()


@pytest.fixture
def operation_store() -> InMemoryOperationStore:
    return InMemoryOperationStore()


@pytest.fixture
def sqlite_engine() -> Iterator[Engine]:
    engine = create_journal_engine("sqlite+pysqlite:///:memory:")
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def sqlite_journal(sqlite_engine: Engine) -> Iterator[Engine]:
    startup(engine=sqlite_engine, force=True)
    try:
        yield sqlite_engine
    finally:
        shutdown()
