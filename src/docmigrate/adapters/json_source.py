"""Load raw source records from JSON files."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from logging import getLogger
from pathlib import Path
from typing import TYPE_CHECKING, Any, cast

from docmigrate.domain.import_pipeline.transform import MISSING, get_path
from docmigrate.domain.ports import SourceLoader

if TYPE_CHECKING:
    from docmigrate.domain.definitions import ImportDef

log = getLogger(__name__)


class SourceFormatError(ValueError):
    """Raised when a source file does not contain a list of records."""


def _read_json(path: Path) -> Any:
    with path.open(encoding="utf-8") as handle:
        return json.load(handle)


@dataclass(slots=True)
class JsonSourceLoader:
    """Read ``importDef.filePath`` and return the records under ``basePath``.

    ``basePath`` is a dot-path into the loaded document; without it the file
    itself must be a list (or a single object, treated as one record).
    """

    base_dir: Path | None = None

    def resolve(self, import_def: ImportDef) -> Path:
        path = Path(import_def.file_path).expanduser()
        if not path.is_absolute() and self.base_dir is not None:
            path = self.base_dir / path
        return path

    async def __call__(self, import_def: ImportDef) -> list[dict[str, Any]]:
        path = self.resolve(import_def)
        data = await asyncio.to_thread(_read_json, path)
        if import_def.base_path:
            data = get_path(data, import_def.base_path) if isinstance(data, dict) else MISSING
            if data is MISSING:
                raise SourceFormatError(f"{path} has no records under {import_def.base_path!r}")
        if isinstance(data, dict):
            data = [data]
        if not isinstance(data, list):
            raise SourceFormatError(f"{path} does not contain a list of records")
        records = [
            cast(dict[str, Any], item) for item in cast(list[Any], data) if isinstance(item, dict)
        ]
        skipped = len(cast(list[Any], data)) - len(records)
        if skipped:
            log.warning(f"Skipped {skipped} non-object entries in {path}")
        log.debug(f"Loaded {len(records)} record(s) from {path}")
        return records


if TYPE_CHECKING:
    _loader_check: SourceLoader = JsonSourceLoader()
