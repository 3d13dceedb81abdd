"""Application orchestration entry points."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from logging import getLogger
from typing import TYPE_CHECKING, Literal

from docmigrate.adapters.appwrite import AppwriteOperationStore, AppwriteStore
from docmigrate.adapters.json_source import JsonSourceLoader
from docmigrate.adapters.memory import (
    InMemoryDocumentStore,
    InMemoryIdentityStore,
    InMemoryOperationStore,
)
from docmigrate.adapters.snapshot import write_snapshot
from docmigrate.adapters.sqlalchemy import SqlAlchemyOperationStore, is_started, startup
from docmigrate.config import MigrationConfig, StoreConfig, get_migration_config
from docmigrate.domain.import_pipeline import ImportController

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence
    from pathlib import Path

    from docmigrate.domain.definitions import ProjectDefinition
    from docmigrate.domain.import_pipeline import RunSummary
    from docmigrate.domain.ports import DocumentStore, IdentityStore, OperationStore, SourceLoader

type JournalBackend = Literal["store", "local"]

log = getLogger(__name__)


@dataclass(slots=True, kw_only=True)
class MigrationAdapters:
    """The external collaborators a migration run talks to."""

    store: DocumentStore
    identities: IdentityStore
    operations: OperationStore
    source_loader: SourceLoader
    close: Callable[[], Awaitable[None]] | None = None

    async def aclose(self) -> None:
        if self.close is not None:
            await self.close()


def build_dry_run_adapters(
    project: ProjectDefinition, *, base_dir: Path | None = None
) -> MigrationAdapters:
    """In-memory adapters with every configured collection pre-created."""

    store = InMemoryDocumentStore()
    for database in project.databases_to_run():
        store.add_collections(
            database.identifier, (collection.name for collection in project.collections)
        )
    return MigrationAdapters(
        store=store,
        identities=InMemoryIdentityStore(),
        operations=InMemoryOperationStore(),
        source_loader=JsonSourceLoader(base_dir=base_dir),
    )


def build_store_adapters(
    *,
    journal: JournalBackend = "store",
    store_config: StoreConfig | None = None,
    base_dir: Path | None = None,
) -> MigrationAdapters:
    store = AppwriteStore(store_config or StoreConfig.from_environment())
    operations: OperationStore
    if journal == "local":
        if not is_started():
            startup()
        operations = SqlAlchemyOperationStore()
    else:
        operations = AppwriteOperationStore(store)
    return MigrationAdapters(
        store=store,
        identities=store,
        operations=operations,
        source_loader=JsonSourceLoader(base_dir=base_dir),
        close=store.aclose,
    )


async def run_import_async(
    project: ProjectDefinition,
    adapters: MigrationAdapters,
    *,
    database_names: Sequence[str] | None = None,
    migration: MigrationConfig | None = None,
    base_dir: Path | None = None,
    snapshot_path: Path | None = None,
) -> dict[str, RunSummary]:
    controller = ImportController(
        project=project,
        store=adapters.store,
        identities=adapters.identities,
        operations=adapters.operations,
        source_loader=adapters.source_loader,
        config=migration or get_migration_config(),
        base_dir=base_dir,
    )
    summaries: dict[str, RunSummary] = {}
    try:
        for database in project.databases_to_run(list(database_names or [])):
            summaries[database.name] = await controller.run_database(database)
            if snapshot_path is not None and controller.last_run is not None:
                write_snapshot(controller.last_run, snapshot_path)
    finally:
        await adapters.aclose()
    return summaries


def run_import(
    project: ProjectDefinition,
    *,
    database_names: Sequence[str] | None = None,
    dry_run: bool = False,
    journal: JournalBackend = "store",
    base_dir: Path | None = None,
    snapshot_path: Path | None = None,
    migration: MigrationConfig | None = None,
    adapters: MigrationAdapters | None = None,
) -> dict[str, RunSummary]:
    """Migrate every selected database of ``project`` and return one summary each."""

    if adapters is None:
        adapters = (
            build_dry_run_adapters(project, base_dir=base_dir)
            if dry_run
            else build_store_adapters(journal=journal, base_dir=base_dir)
        )
    log.info(
        "Starting migration: databases=%s, dry_run=%s, journal=%s",
        ", ".join(database_names) if database_names else "all",
        dry_run,
        journal,
    )
    summaries = asyncio.run(
        run_import_async(
            project,
            adapters,
            database_names=database_names,
            migration=migration,
            base_dir=base_dir,
            snapshot_path=snapshot_path,
        )
    )
    failed = sum(len(summary.failures) for summary in summaries.values())
    log.info(f"Finished migration of {len(summaries)} database(s) with {failed} failure(s)")
    return summaries
