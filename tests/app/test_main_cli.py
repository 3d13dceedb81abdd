from __future__ import annotations

from pathlib import Path

import pytest

from docmigrate import main as main_module
from docmigrate.config import MigrationConfig

PROJECT_YAML = """\
databases:
  - name: Main
  - name: Archive
collections:
  - name: Events
    importDefs:
      - filePath: data/events.json
"""


@pytest.fixture
def project_file(tmp_path: Path) -> Path:
    path = tmp_path / "docmigrate.yaml"
    path.write_text(PROJECT_YAML, encoding="utf-8")
    return path


@pytest.fixture
def captured(monkeypatch: pytest.MonkeyPatch) -> dict[str, object]:
    calls: dict[str, object] = {}

    def fake_run_import(project: object, **kwargs: object) -> dict[str, object]:
        calls["project"] = project
        calls.update(kwargs)
        return {}

    monkeypatch.setattr(main_module, "run_import", fake_run_import)
    return calls


def test_main_cli_defaults(
    monkeypatch: pytest.MonkeyPatch, project_file: Path, captured: dict[str, object]
) -> None:
    monkeypatch.setenv("DOCMIGRATE_CONFIG", str(project_file))

    main_module.main([])

    assert captured["database_names"] is None
    assert captured["dry_run"] is False
    assert captured["journal"] == "store"
    assert captured["snapshot_path"] is None
    assert captured["base_dir"] == project_file.parent.resolve()
    assert isinstance(captured["migration"], MigrationConfig)


def test_main_cli_with_flags(
    tmp_path: Path, project_file: Path, captured: dict[str, object]
) -> None:
    main_module.main(
        [
            "--config",
            str(project_file),
            "--database",
            "Main",
            "--dry-run",
            "--journal",
            "local",
            "--snapshot",
            str(tmp_path / "snap.json"),
        ]
    )

    assert captured["database_names"] == ["Main"]
    assert captured["dry_run"] is True
    assert captured["journal"] == "local"
    assert captured["snapshot_path"] == tmp_path / "snap.json"
    project = captured["project"]
    events_file = project.collections[0].import_defs[0].file_path  # type: ignore[attr-defined]
    assert Path(events_file) == project_file.parent.resolve() / "data" / "events.json"


def test_main_cli_snapshot_without_path_uses_data_dir(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    project_file: Path,
    captured: dict[str, object],
) -> None:
    monkeypatch.setenv("DOCMIGRATE_DATA_DIR", str(tmp_path / "data"))

    main_module.main(["--config", str(project_file), "--snapshot"])

    assert captured["snapshot_path"] == (tmp_path / "data" / "snapshots").resolve()
    assert (tmp_path / "data" / "snapshots").is_dir()


def test_main_cli_missing_project_file(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, captured: dict[str, object]
) -> None:
    monkeypatch.delenv("DOCMIGRATE_CONFIG", raising=False)
    monkeypatch.chdir(tmp_path)

    with pytest.raises(SystemExit) as excinfo:
        main_module.main([])

    assert excinfo.value.code == 2
    assert captured == {}


def test_main_cli_unknown_database(project_file: Path, captured: dict[str, object]) -> None:
    with pytest.raises(SystemExit) as excinfo:
        main_module.main(["--config", str(project_file), "--database", "Nope"])

    assert excinfo.value.code == 2
    assert captured == {}


def test_main_cli_run_failure_exits_with_one(
    monkeypatch: pytest.MonkeyPatch, project_file: Path
) -> None:
    def failing_run_import(*_: object, **__: object) -> None:
        raise RuntimeError("store unreachable")

    monkeypatch.setattr(main_module, "run_import", failing_run_import)

    with pytest.raises(SystemExit) as excinfo:
        main_module.main(["--config", str(project_file)])

    assert excinfo.value.code == 1
