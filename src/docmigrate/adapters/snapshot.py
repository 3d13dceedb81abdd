"""Write the import map of a finished run to disk for inspection."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from logging import getLogger
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path

    from docmigrate.domain.import_pipeline import MigrationRun

log = getLogger(__name__)


def snapshot_filename(database: str, *, now: datetime | None = None) -> str:
    stamp = (now or datetime.now(UTC)).strftime("%Y%m%dT%H%M%SZ")
    return f"{database}-{stamp}.json"


def write_snapshot(run: MigrationRun, path: Path) -> Path:
    """Dump ``run``'s id tables, merge table and staged payloads as JSON.

    ``path`` may be a directory, in which case a timestamped file named after the
    database is created inside it.
    """

    target = path / snapshot_filename(run.database.key) if path.is_dir() else path
    target.parent.mkdir(parents=True, exist_ok=True)
    with target.open("w", encoding="utf-8") as handle:
        json.dump(run.snapshot(), handle, indent=2, default=str, ensure_ascii=False)
    log.info(f"Wrote import map snapshot to {target}")
    return target
