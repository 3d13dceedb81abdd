"""Load and validate migration project files."""

from __future__ import annotations

import os
from logging import getLogger
from pathlib import Path
from typing import Any, Final

import yaml
from pydantic import ValidationError

from docmigrate.domain.definitions import ProjectDefinition

from .errors import MissingConfigurationError, ProjectDefinitionError

log = getLogger(__name__)

DEFAULT_PROJECT_FILENAMES: Final[tuple[str, ...]] = ("docmigrate.yaml", "docmigrate.yml")


def load_yaml_file(path: Path) -> dict[str, Any]:
    with path.open(encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def find_project_file(start: Path | None = None) -> Path:
    """Return the project file named by ``DOCMIGRATE_CONFIG`` or found in ``start``."""

    env_path = os.getenv("DOCMIGRATE_CONFIG")
    if env_path:
        return Path(env_path).expanduser().resolve()
    base = (start or Path.cwd()).resolve()
    for filename in DEFAULT_PROJECT_FILENAMES:
        candidate = base / filename
        if candidate.is_file():
            return candidate
    names = ", ".join(DEFAULT_PROJECT_FILENAMES)
    raise MissingConfigurationError(f"No project file found in {base} (looked for {names})")


def load_project(path: Path) -> ProjectDefinition:
    """Parse ``path`` into a :class:`ProjectDefinition`.

    Relative ``filePath`` entries of import definitions are resolved against the
    directory holding the project file so runs do not depend on the working directory.
    """

    try:
        raw = load_yaml_file(path)
    except FileNotFoundError as exc:
        raise ProjectDefinitionError(f"Project file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ProjectDefinitionError(f"Project file {path} is not valid YAML: {exc}") from exc

    try:
        project = ProjectDefinition.model_validate(raw)
    except ValidationError as exc:
        raise ProjectDefinitionError(f"Project file {path} is invalid:\n{exc}") from exc

    base_dir = path.resolve().parent
    for collection in project.collections:
        for import_def in collection.import_defs:
            file_path = Path(import_def.file_path).expanduser()
            if not file_path.is_absolute():
                import_def.file_path = str(base_dir / file_path)

    log.debug(
        "Loaded project %s: %d database(s), %d collection(s)",
        path,
        len(project.databases),
        len(project.collections),
    )
    return project
