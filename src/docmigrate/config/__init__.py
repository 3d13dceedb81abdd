"""Application configuration helpers."""

from __future__ import annotations

from .env import env_positive_int, require_env_vars
from .errors import ConfigurationError, MissingConfigurationError, ProjectDefinitionError
from .http_resilience import RateLimit, ResilienceConfig, RetryPolicy
from .logging import configure_logging
from .migration import MigrationConfig, get_migration_config
from .project import find_project_file, load_project
from .storage import DatabaseConfig, StorageConfig, get_database_config, get_storage_config
from .store import StoreConfig

__all__ = [
    "ConfigurationError",
    "DatabaseConfig",
    "MigrationConfig",
    "MissingConfigurationError",
    "ProjectDefinitionError",
    "RateLimit",
    "ResilienceConfig",
    "RetryPolicy",
    "StorageConfig",
    "StoreConfig",
    "configure_logging",
    "env_positive_int",
    "find_project_file",
    "get_database_config",
    "get_migration_config",
    "get_storage_config",
    "load_project",
    "require_env_vars",
]
