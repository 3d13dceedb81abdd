"""Migration-run context owning every structure shared by the pipeline phases."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .identity import IdentityDeduplicator
from .import_map import IDENTITY_STAGE, ImportMap, new_document_id
from .results import RunSummary

if TYPE_CHECKING:
    from pathlib import Path

    from docmigrate.domain.definitions import DatabaseDefinition, ProjectDefinition

    from .identity import MergeTable
    from .import_map import IdGenerator

FALLBACK_IDENTITY_STAGE = "_identities"


@dataclass(slots=True, kw_only=True)
class MigrationRun:
    """State of one migration run against one target database.

    Created empty at the start of :meth:`ImportController.run_database`, filled by
    the create and update passes, read by the relationship resolver and discarded
    when the run ends.
    """

    project: ProjectDefinition
    database: DatabaseDefinition
    import_map: ImportMap
    identities: IdentityDeduplicator
    summary: RunSummary
    identity_stage: str = IDENTITY_STAGE
    base_dir: Path | None = None
    collection_ids: dict[str, str] = field(default_factory=dict[str, str])

    @classmethod
    def start(
        cls,
        project: ProjectDefinition,
        database: DatabaseDefinition,
        *,
        id_generator: IdGenerator = new_document_id,
        base_dir: Path | None = None,
    ) -> MigrationRun:
        import_map = ImportMap(id_generator=id_generator)
        # the implicit identity stage must not collide with a collection called "users"
        identity_stage = (
            FALLBACK_IDENTITY_STAGE
            if project.identity_collection_key == IDENTITY_STAGE
            else IDENTITY_STAGE
        )
        import_map.ensure_stage(identity_stage)
        for collection in project.collections:
            import_map.ensure_stage(collection.name, collection)
        return cls(
            project=project,
            database=database,
            import_map=import_map,
            identities=IdentityDeduplicator(),
            summary=RunSummary(database=database.name),
            identity_stage=identity_stage,
            base_dir=base_dir,
        )

    @property
    def database_id(self) -> str:
        return self.database.identifier

    @property
    def merge_table(self) -> MergeTable:
        return self.identities.merge_table

    def is_identity_collection(self, name: str) -> bool:
        return self.project.is_identity_collection(name)

    def snapshot(self) -> dict[str, Any]:
        """Return a JSON-friendly view of the id tables, merge table and staged data."""

        return {
            "database": self.database.name,
            "idTables": [
                {"collection": stage.key, "data": stage.ids.items()}
                for stage in self.import_map
                if len(stage.ids)
            ],
            "mergeTable": [
                [canonical, list(sources)]
                for canonical, sources in self.merge_table.buckets().items()
            ],
            "collections": [
                {
                    "collection": stage.key,
                    "data": [
                        {"docId": record.doc_id, "sourceId": record.source_id, **record.final_data}
                        for record in stage.records
                    ],
                }
                for stage in self.import_map
            ],
        }
