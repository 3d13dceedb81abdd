"""SQLAlchemy adapter package for the local operation journal."""

from __future__ import annotations

from .journal import (
    SqlAlchemyOperationStore,
    StartupError,
    create_journal_engine,
    is_started,
    shutdown,
    startup,
)
from .tables import create_all_tables, mapper_registry, start_mappers

__all__ = [
    "SqlAlchemyOperationStore",
    "StartupError",
    "create_all_tables",
    "create_journal_engine",
    "is_started",
    "mapper_registry",
    "shutdown",
    "start_mappers",
    "startup",
]
