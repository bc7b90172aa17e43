"""
Backup orchestration.

This module coordinates, for every configured source in order:
- source pattern parsing
- root directory resolution
- one archive run per resolved root (classify, copy, log, finalize)
- aggregation of counts, failures, scan issues and warnings

Failure posture
---------------
- A source with an invalid pattern is recorded and skipped.
- A root whose archive cannot be opened or finalized is recorded and skipped.
- Per-file failures are recorded by the archive run; the run continues.
- Nothing here raises for runtime conditions; the summary carries everything.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from backer_engine.backup.archive import ArchiveRun, FileFailure
from backer_engine.backup.changelog import FileStatus
from backer_engine.backup.match import parse_source_pattern
from backer_engine.backup.scan import ScanIssue, scan_files, scan_roots
from backer_engine.clock import Clock, SystemClock
from backer_engine.config import BackupConfig, SourceSpec
from backer_engine.errors import (
    ArchiveIOError,
    ChangeLogError,
    InvalidSourceSpecError,
    SafetyViolationError,
)

logger = logging.getLogger(__name__)


def _empty_counts() -> dict[FileStatus, int]:
    return {status: 0 for status in FileStatus}


@dataclass(slots=True)
class RootSummary:
    """
    Tally for one resolved source root.

    Attributes
    ----------
    source_path:
        Configured source path the root was resolved from.
    root_directory:
        The resolved root directory.
    archive_name:
        Base name of this run's container and log.
    files_seen:
        Files handed to the archive run, including failed ones.
    counts:
        Per-status counts; DELETED holds the run's fresh deletions.
    failures:
        Files that could not be read or archived.
    scan_issues:
        Directories or entries that could not be listed.
    warnings:
        Recovered run-level problems (e.g. an unusable previous log).
    error:
        Set if the root could not be archived at all.
    container_kept:
        Whether the container remains on disk.
    log_kept:
        Whether the change log remains on disk.
    """

    source_path: str
    root_directory: str
    archive_name: str = ""
    files_seen: int = 0
    counts: dict[FileStatus, int] = field(default_factory=_empty_counts)
    failures: list[FileFailure] = field(default_factory=list)
    scan_issues: list[ScanIssue] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    error: str | None = None
    container_kept: bool = False
    log_kept: bool = False

    @property
    def deleted(self) -> int:
        """Number of files newly deleted since the previous run."""
        return self.counts[FileStatus.DELETED]

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable payload."""
        return {
            "source_path": self.source_path,
            "root_directory": self.root_directory,
            "archive_name": self.archive_name,
            "files_seen": self.files_seen,
            "counts": {status.value: count for status, count in self.counts.items()},
            "failures": [
                {"relative_path": f.relative_path, "message": f.message} for f in self.failures
            ],
            "scan_issues": [{"path": i.path, "message": i.message} for i in self.scan_issues],
            "warnings": list(self.warnings),
            "error": self.error,
            "container_kept": self.container_kept,
            "log_kept": self.log_kept,
        }


@dataclass(frozen=True, slots=True)
class SourceFailure:
    """A configured source that could not be scanned at all."""

    source_path: str
    message: str


@dataclass(slots=True)
class BackupSummary:
    """
    Aggregated result of a backup invocation.

    Attributes
    ----------
    roots:
        One summary per resolved root, in processing order.
    source_failures:
        Sources skipped because their path was invalid.
    source_issues:
        Scan issues hit while resolving roots (not tied to one root).
    """

    roots: list[RootSummary] = field(default_factory=list)
    source_failures: list[SourceFailure] = field(default_factory=list)
    source_issues: list[ScanIssue] = field(default_factory=list)

    @property
    def files_seen(self) -> int:
        """Total files handed to archive runs."""
        return sum(root.files_seen for root in self.roots)

    @property
    def totals(self) -> dict[FileStatus, int]:
        """Per-status counts summed over all roots."""
        totals = _empty_counts()
        for root in self.roots:
            for status, count in root.counts.items():
                totals[status] += count
        return totals

    @property
    def failed_files(self) -> list[FileFailure]:
        """Every per-file failure, in processing order."""
        return [failure for root in self.roots for failure in root.failures]

    @property
    def has_failures(self) -> bool:
        """True if any source, root or file failed."""
        return bool(self.source_failures) or any(root.error or root.failures for root in self.roots)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable payload."""
        return {
            "files_seen": self.files_seen,
            "totals": {status.value: count for status, count in self.totals.items()},
            "roots": [root.to_dict() for root in self.roots],
            "source_failures": [
                {"source_path": f.source_path, "message": f.message} for f in self.source_failures
            ],
            "source_issues": [{"path": i.path, "message": i.message} for i in self.source_issues],
        }


ProgressCallback = Callable[[RootSummary], None]


def run_backup(
    config: BackupConfig,
    *,
    clock: Clock | None = None,
    progress: ProgressCallback | None = None,
) -> BackupSummary:
    """
    Run an incremental backup of every configured source.

    Parameters
    ----------
    config:
        Fully resolved configuration.
    clock:
        Time source for archive names. Defaults to the system clock.
    progress:
        Optional callable invoked with the in-flight RootSummary after each file.

    Returns
    -------
    BackupSummary
        Counts, failures and issues for every source and root.
    """
    run_clock = clock or SystemClock()
    summary = BackupSummary()

    for source in config.sources:
        try:
            pattern = parse_source_pattern(source.path)
        except InvalidSourceSpecError as exc:
            logger.error("Skipping source %s: %s", source.path, exc)
            summary.source_failures.append(SourceFailure(source_path=source.path, message=str(exc)))
            continue

        for root in scan_roots(source, pattern=pattern, issues=summary.source_issues):
            root_summary = _backup_root(
                config=config,
                source=source,
                root_directory=root.directory,
                clock=run_clock,
                progress=progress,
            )
            summary.roots.append(root_summary)

    return summary


def _backup_root(
    *,
    config: BackupConfig,
    source: SourceSpec,
    root_directory: str,
    clock: Clock,
    progress: ProgressCallback | None,
) -> RootSummary:
    """Archive one resolved root and return its tally."""
    root_summary = RootSummary(source_path=source.path, root_directory=root_directory)

    try:
        run = ArchiveRun(
            config.target,
            root_directory,
            compare_with_previous=config.compare_with_previous,
            clock=clock,
        )
        root_summary.archive_name = run.archive_name
        run.create()
    except (ArchiveIOError, ChangeLogError, SafetyViolationError, OSError) as exc:
        logger.error("Cannot open archive for %s: %s", root_directory, exc)
        root_summary.error = str(exc)
        return root_summary

    logger.info("Archiving %s into %s", root_directory, run.archive_directory)
    files = scan_files(root_directory, source.exclude)
    for relative_path in files:
        status = run.write_file(root_directory, relative_path)
        root_summary.files_seen += 1
        if status is not None:
            root_summary.counts[status] += 1
        if progress is not None:
            progress(root_summary)

    root_summary.scan_issues.extend(files.issues)
    root_summary.failures.extend(run.failures)

    try:
        result = run.finalize()
    except (ArchiveIOError, ChangeLogError) as exc:
        logger.error("Cannot finalize archive for %s: %s", root_directory, exc)
        root_summary.error = str(exc)
    else:
        root_summary.counts[FileStatus.DELETED] += result.fresh_deleted_count
        root_summary.container_kept = result.container_kept
        root_summary.log_kept = result.log_kept

    root_summary.warnings.extend(run.warnings)
    return root_summary
