from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import pytest

from docmigrate.adapters.json_source import JsonSourceLoader, SourceFormatError
from docmigrate.adapters.snapshot import snapshot_filename, write_snapshot
from docmigrate.domain.definitions import ImportDef, ProjectDefinition
from docmigrate.domain.import_pipeline import MigrationRun

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path


def _import_def(file_path: str, base_path: str | None = None) -> ImportDef:
    return ImportDef.model_validate({"filePath": file_path, "basePath": base_path})


def test_loads_records_relative_to_base_dir(
    tmp_path: Path, write_json: Callable[[str, Any], Path]
) -> None:
    write_json("data/members.json", [{"id": 1}, "junk", {"id": 2}])
    loader = JsonSourceLoader(base_dir=tmp_path)

    records = asyncio.run(loader(_import_def("data/members.json")))

    assert records == [{"id": 1}, {"id": 2}]


def test_base_path_selects_nested_records(
    tmp_path: Path, write_json: Callable[[str, Any], Path]
) -> None:
    write_json("export.json", {"payload": {"rows": [{"id": "a"}]}, "meta": {}})
    loader = JsonSourceLoader(base_dir=tmp_path)

    records = asyncio.run(loader(_import_def("export.json", "payload.rows")))

    assert records == [{"id": "a"}]


def test_single_object_is_one_record(
    tmp_path: Path, write_json: Callable[[str, Any], Path]
) -> None:
    write_json("one.json", {"id": "solo"})

    assert asyncio.run(JsonSourceLoader(base_dir=tmp_path)(_import_def("one.json"))) == [
        {"id": "solo"}
    ]


def test_missing_base_path_raises(
    tmp_path: Path, write_json: Callable[[str, Any], Path]
) -> None:
    write_json("export.json", {"payload": {}})

    with pytest.raises(SourceFormatError):
        asyncio.run(JsonSourceLoader(base_dir=tmp_path)(_import_def("export.json", "rows")))


def test_missing_file_raises_os_error(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        asyncio.run(JsonSourceLoader(base_dir=tmp_path)(_import_def("absent.json")))


def test_snapshot_is_written_into_directory(tmp_path: Path) -> None:
    project = ProjectDefinition.model_validate(
        {"databases": [{"name": "Main DB"}], "collections": [{"name": "Events"}]}
    )
    run = MigrationRun.start(project, project.databases[0])
    stage = run.import_map.ensure_stage("Events")
    stage.ids.claim("1", "abc")
    run.merge_table.add("abc", "1")

    path = write_snapshot(run, tmp_path)

    assert path.parent == tmp_path
    assert path.name.startswith("maindb-")
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["database"] == "Main DB"
    assert data["idTables"] == [{"collection": "events", "data": [["1", "abc"]]}]
    assert data["mergeTable"] == [["abc", ["1"]]]


def test_snapshot_filename_is_timestamped() -> None:
    name = snapshot_filename("main", now=datetime(2024, 5, 1, 12, 30, tzinfo=UTC))

    assert name == "main-20240501T123000Z.json"
