"""
Command-line interface for the forum migration pipeline.

Each stage is a sub-command. Stages communicate only through the files in the
data directory, so they can be re-run individually:

    forum-migrator cleanup      # optional, before a fresh run
    forum-migrator export
    forum-migrator transform
    forum-migrator load
    forum-migrator recalculate
    forum-migrator verify
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import TYPE_CHECKING

from dotenv import load_dotenv

from .cleanup import cleanup_target
from .config import MigrationSettings, SourceConfig, TargetConfig
from .diagnostics import run_debug_check
from .extractor import export_legacy_data
from .loader import run_load
from .recalculator import recalculate_counts
from .target_store import TargetStore
from .transformer import run_transform
from .utils import setup_logging
from .verifier import verify_migration

if TYPE_CHECKING:
    from collections.abc import Sequence

logger: logging.Logger = logging.getLogger(__name__)

NEXT_STEPS: dict[str, str] = {
    "cleanup": "export",
    "export": "transform",
    "transform": "load",
    "load": "recalculate",
    "recalculate": "verify",
}


def parse_arguments(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="forum-migrator",
        description="Migrate a Vanilla Forums database to a Supabase-backed forum",
    )
    _ = parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    _ = parser.add_argument(
        "--data-dir",
        help="Directory for snapshots, transformed files and ID mappings (default: $MIGRATION_DATA_DIR or ./migration-data)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")
    _ = subparsers.add_parser("cleanup", help="Delete all migrated data from the target and reset ID mappings")
    _ = subparsers.add_parser("export", help="Export the legacy database to JSON snapshots")
    _ = subparsers.add_parser("transform", help="Transform snapshots into target records")
    _ = subparsers.add_parser("load", help="Import transformed records into the target")
    _ = subparsers.add_parser("recalculate", help="Recalculate thread, category and profile counters")
    _ = subparsers.add_parser("verify", help="Verify the migrated data")
    _ = subparsers.add_parser("debug", help="Show target counts and dangling references in transformed data")

    return parser.parse_args(argv)


def run_command(command: str, settings: MigrationSettings) -> int:
    """Run one pipeline stage and return the process exit code."""
    if command == "export":
        _ = export_legacy_data(SourceConfig.from_env(), settings.data_dir)
        return 0
    if command == "transform":
        _ = run_transform(settings)
        return 0

    store = TargetStore.from_config(TargetConfig.from_env())
    if command == "cleanup":
        _ = cleanup_target(settings, store)
    elif command == "load":
        _ = run_load(settings, store)
    elif command == "recalculate":
        _ = recalculate_counts(store)
    elif command == "verify":
        return verify_migration(store, settings.data_dir).exit_code
    elif command == "debug":
        _ = run_debug_check(store, settings.data_dir)
    else:
        msg = f"Unknown command: {command}"
        raise ValueError(msg)
    return 0


def main(argv: Sequence[str] | None = None) -> None:
    """Main entry point."""
    args = parse_arguments(argv)
    _ = load_dotenv()

    verbose: bool = getattr(args, "verbose", False)
    setup_logging(verbose=verbose)

    try:
        settings = MigrationSettings.from_env(args.data_dir)
        exit_code = run_command(args.command, settings)
    except Exception:
        logger.exception(f"Stage '{args.command}' failed")
        sys.exit(1)

    if exit_code == 0 and args.command in NEXT_STEPS:
        print(f"\nNext step: forum-migrator {NEXT_STEPS[args.command]}")
    sys.exit(exit_code)
