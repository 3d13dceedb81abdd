#!/usr/bin/env python3

# ruff: noqa: T201

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from signal import SIGINT, signal
from typing import TYPE_CHECKING

from dotenv import load_dotenv

from docmigrate.app import run_import
from docmigrate.config import (
    ConfigurationError,
    MigrationConfig,
    configure_logging,
    find_project_file,
    get_migration_config,
    get_storage_config,
    load_project,
)

if TYPE_CHECKING:
    from collections.abc import Sequence
    from types import FrameType

    from docmigrate.domain.definitions import ProjectDefinition

log = logging.getLogger(__name__)


def _parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Migrate source records into the document store"
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Project file (default: $DOCMIGRATE_CONFIG or ./docmigrate.yaml)",
    )
    parser.add_argument(
        "--database",
        action="append",
        dest="databases",
        metavar="NAME",
        help="Only migrate this database; may be given more than once",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Run against an in-memory store without touching the network",
    )
    parser.add_argument(
        "--journal",
        choices=("store", "local"),
        default="store",
        help="Where deferred actions are persisted (default: %(default)s)",
    )
    parser.add_argument(
        "--snapshot",
        nargs="?",
        const="",
        metavar="PATH",
        help=(
            "Write the import map as JSON to this file or directory after each database "
            "(default: the snapshots directory under $DOCMIGRATE_DATA_DIR)"
        ),
    )
    parser.add_argument("--verbose", action="store_true", help="Log debug output")
    return parser.parse_args(list(argv))


def _load(args: argparse.Namespace) -> tuple[ProjectDefinition, Path, MigrationConfig]:
    project_file = args.config.expanduser().resolve() if args.config else find_project_file()
    project = load_project(project_file)
    if not project.databases_to_run(args.databases):
        raise ValueError("No database selected for migration")
    return project, project_file.parent, get_migration_config()


def _snapshot_path(value: str | None) -> Path | None:
    if value is None:
        return None
    if not value:
        return get_storage_config().snapshot_dir()
    return Path(value).expanduser()


def main(argv: Sequence[str] | None = None) -> None:
    """Main application entry point."""
    parsed_args: argparse.Namespace
    try:
        parsed_args = _parse_args(sys.argv[1:] if argv is None else argv)
        configure_logging(level=logging.DEBUG if parsed_args.verbose else logging.INFO)
        project, base_dir, migration = _load(parsed_args)
    except (ValueError, ConfigurationError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(2)

    try:
        summaries = run_import(
            project,
            database_names=parsed_args.databases,
            dry_run=parsed_args.dry_run,
            journal=parsed_args.journal,
            base_dir=base_dir,
            snapshot_path=_snapshot_path(parsed_args.snapshot),
            migration=migration,
        )
    except ConfigurationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(2)
    except Exception as e:  # noqa: BLE001
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    for name, summary in summaries.items():
        for line in summary.describe():
            log.info(f"{name}: {line}")


def sigint_handler(_signal_received: int, _frame: FrameType | None) -> None:
    """Handle SIGINT (Ctrl+C) gracefully."""
    print("\nClosed by user (Ctrl+C)")
    sys.exit(0)


def cli() -> None:
    load_dotenv()
    signal(SIGINT, sigint_handler)
    main()


if __name__ == "__main__":
    cli()
