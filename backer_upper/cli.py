"""
Command-line interface for backer-upper.

Notes
-----
The CLI is intentionally thin. It resolves one of the entry modes into a
BackupConfig, takes the target lock, and delegates to the engine:

- ``backup --config FILE``                     target from the file
- ``backup --config FILE --target DIR``        target overridden
- ``backup --source PATH --target DIR [--exclude S ...]``

Exit codes
----------
0 on a clean run, 1 when the run completed but some sources, roots or files
failed, 2 on configuration, lock, safety or usage errors.
"""

from __future__ import annotations

import argparse
import logging
import time
from dataclasses import replace
from datetime import datetime
from pathlib import Path

from backer_engine.archive_paths import validate_target_root
from backer_engine.backup.render import render_backup_summary_text, render_counts
from backer_engine.backup.service import RootSummary, run_backup
from backer_engine.config import BackupConfig, config_from_arguments, load_backup_config
from backer_engine.errors import BackerError
from backer_engine.report_store import write_report_atomic
from backer_engine.target_lock import acquire_target_lock

_STATUS_INTERVAL_SECONDS = 1.0


def build_parser() -> argparse.ArgumentParser:
    """
    Build and return the top-level argument parser.

    Returns
    -------
    argparse.ArgumentParser
        Configured parser.
    """
    parser = argparse.ArgumentParser(
        prog="backer-upper",
        description="Incremental, file-level backups into zip archives with change logs",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase log verbosity (-v: info, -vv: debug).",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    backup_p = sub.add_parser(
        "backup",
        help="Back up configured sources, archiving only new and changed files",
    )
    origin = backup_p.add_mutually_exclusive_group(required=True)
    origin.add_argument("--config", type=Path, help="Path to a JSON backup configuration file")
    origin.add_argument(
        "--source",
        help='Source directory; whole-segment wildcards select several roots, e.g. "C:/projects/*"',
    )
    backup_p.add_argument(
        "--target",
        type=Path,
        default=None,
        help="Directory backups are written to. Required with --source; overrides the config file's target.",
    )
    backup_p.add_argument(
        "--exclude",
        action="append",
        default=[],
        help="Exclusion substring matched against full paths. Repeatable. Only valid with --source.",
    )
    backup_p.add_argument(
        "--no-compare",
        action="store_true",
        help="Ignore previous change logs and archive every file.",
    )
    backup_p.add_argument(
        "--report",
        type=Path,
        default=None,
        help="Write a JSON summary of the run to this path.",
    )
    backup_p.add_argument(
        "--max-items",
        type=int,
        default=100,
        help="Maximum number of failed files to list in output (default: 100).",
    )
    backup_p.add_argument(
        "--force",
        action="store_true",
        help="Break the target lock if it is provably stale.",
    )
    backup_p.add_argument(
        "--break-lock",
        action="store_true",
        help="Break the target lock even if it is not provably stale.",
    )

    return parser


def resolve_backup_config(args: argparse.Namespace) -> BackupConfig:
    """
    Turn parsed ``backup`` arguments into a BackupConfig.

    Raises
    ------
    ConfigError
        If the configuration file is invalid.
    ValueError
        If the argument combination is invalid.
    """
    compare = not args.no_compare
    if args.config is not None:
        if args.exclude:
            raise ValueError("--exclude is only valid with --source (put exclusions in the config file).")
        config = load_backup_config(args.config, target=args.target)
        return config if compare else replace(config, compare_with_previous=False)

    if args.target is None:
        raise ValueError("--target is required with --source.")
    return config_from_arguments(
        source=args.source,
        target=args.target,
        exclude=args.exclude,
        compare_with_previous=compare,
    )


class _StatusLine:
    """Throttled single-line progress output for one root at a time."""

    def __init__(self) -> None:
        self._last = 0.0

    def __call__(self, root: RootSummary) -> None:
        now = time.monotonic()
        if now - self._last < _STATUS_INTERVAL_SECONDS:
            return
        self._last = now
        print(
            f"\r  ... scanning {root.root_directory}: {root.files_seen} files processed "
            f"{render_counts(root.counts)}",
            end="",
            flush=True,
        )


def _configure_logging(verbosity: int) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _print_configuration(config: BackupConfig) -> None:
    print(f"Performing BACKUP ... [{datetime.now():%H:%M}]")
    print(f"- Target: {config.target}")
    for source in config.sources:
        print(f"  - Source path: {source.path}")
        if source.exclude:
            print("      - Excluding:")
            for exclusion in source.exclude:
                print(f'          "{exclusion}"')
    print()


def _run_backup_command(args: argparse.Namespace) -> int:
    if args.max_items < 0:
        print("ERROR: --max-items must be non-negative.")
        return 2

    try:
        config = resolve_backup_config(args)
        config = replace(config, target=validate_target_root(config.target))
    except (BackerError, ValueError) as exc:
        print(f"ERROR: {exc}")
        return 2

    _print_configuration(config)

    try:
        with acquire_target_lock(
            target_root=config.target,
            command="backup",
            force=args.force,
            break_lock=args.break_lock,
        ):
            summary = run_backup(config, progress=_StatusLine())
        print()
        print(render_backup_summary_text(summary, max_items=args.max_items))
        if args.report is not None:
            write_report_atomic(args.report, summary)
            print(f"Report written: {args.report}")
    except BackerError as exc:
        print(f"ERROR: {exc}")
        return 2

    return 1 if summary.has_failures else 0


def main(argv: list[str] | None = None) -> int:
    """
    CLI entry point.

    Parameters
    ----------
    argv:
        Optional argument vector. If None, argparse uses sys.argv.

    Returns
    -------
    int
        Process exit code.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    if args.command == "backup":
        return _run_backup_command(args)

    parser.print_help()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
