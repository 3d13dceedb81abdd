"""Tuning defaults for migration runs."""

from __future__ import annotations

from dataclasses import dataclass

from .env import env_positive_int

DEFAULT_BATCH_SIZE = 25
DEFAULT_MAX_PARALLEL_COLLECTIONS = 3


@dataclass(frozen=True, slots=True)
class MigrationConfig:
    batch_size: int = DEFAULT_BATCH_SIZE
    max_parallel_collections: int = DEFAULT_MAX_PARALLEL_COLLECTIONS
    write_back_references: bool = True


def get_migration_config() -> MigrationConfig:
    return MigrationConfig(
        batch_size=env_positive_int("DOCMIGRATE_BATCH_SIZE", DEFAULT_BATCH_SIZE),
        max_parallel_collections=env_positive_int(
            "DOCMIGRATE_MAX_PARALLEL", DEFAULT_MAX_PARALLEL_COLLECTIONS
        ),
    )
