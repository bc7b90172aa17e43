"""
Archive runs: one zip container plus one change log per source root and run.

Lifecycle
---------
``UNOPENED --create()--> OPEN --finalize()--> FINALIZED``

- ``create`` loads the previous run's log (when comparison is requested)
  before the current log exists, then opens the container and current log.
- ``write_file`` classifies one file against the previous log, copies its
  bytes into the container when it is CREATED or CHANGED, and appends the
  classification to the current log. Per-file I/O failures and paths that
  cannot be logged are recorded on the run and never raised.
- ``finalize`` appends DELETED entries for previously known paths that were
  not logged (failed files included), removes an empty container, and
  finalizes both logs.

Invariants
----------
- CREATED/CHANGED entries name the current container, and their bytes are in it.
- UNCHANGED and DELETED entries carry the previous entry's archive name.
- A kept current log is a full snapshot of the root.

Concurrency
-----------
Container writes and log appends are serialized with a lock, so concurrent
``write_file`` callers are safe. Two processes writing to the same archive
directory are not supported; callers must hold a target lock.
"""

from __future__ import annotations

import logging
import os
import threading
import zipfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from backer_engine.archive_paths import (
    CONTAINER_SUFFIX,
    LOG_SUFFIX,
    archive_directory_for,
    format_archive_name,
)
from backer_engine.backup.changelog import ChangeLog, FileStatus, LogEntry
from backer_engine.clock import Clock, SystemClock, nanoseconds_to_filetime
from backer_engine.errors import (
    ArchiveIOError,
    ChangeLogError,
    InvalidStateError,
    LogFormatError,
)

logger = logging.getLogger(__name__)

COMPRESSION = zipfile.ZIP_DEFLATED
# Fastest deflate level; a single fixed setting for every run.
COMPRESSION_LEVEL = 1


class RunState(str, Enum):
    """States of an :class:`ArchiveRun`."""

    UNOPENED = "unopened"
    OPEN = "open"
    FINALIZED = "finalized"


@dataclass(frozen=True, slots=True)
class FileFailure:
    """
    A file that could not be classified or archived.

    Attributes
    ----------
    root_directory:
        Source root the file belongs to.
    relative_path:
        Root-relative path of the file.
    message:
        Human-readable reason.
    """

    root_directory: str
    relative_path: str
    message: str


@dataclass(frozen=True, slots=True)
class FinalizeResult:
    """
    Outcome of finalizing a run.

    Attributes
    ----------
    deleted_count:
        DELETED entries appended for previous paths this run did not log.
    fresh_deleted_count:
        The subset of those that were not already DELETED in the previous log.
    container_kept:
        False if the container was removed because nothing was written.
    log_kept:
        False if the current log was removed because it added no information.
    """

    deleted_count: int
    fresh_deleted_count: int
    container_kept: bool
    log_kept: bool


def file_time_of(stat_result: os.stat_result) -> int:
    """
    Return the later of creation and last write time, in FILETIME ticks.

    Creation time is only available where the platform reports it
    (``st_birthtime``, or ``st_ctime`` on Windows before Python exposed
    ``st_birthtime`` there). Elsewhere the last write time is used alone.
    """
    modified = nanoseconds_to_filetime(stat_result.st_mtime_ns)

    birth_ns = getattr(stat_result, "st_birthtime_ns", None)
    if birth_ns is None:
        birth = getattr(stat_result, "st_birthtime", None)
        if birth is None and os.name == "nt":
            birth_ns = stat_result.st_ctime_ns
        elif birth is not None:
            birth_ns = int(birth * 1_000_000_000)

    if birth_ns is None:
        return modified
    return max(modified, nanoseconds_to_filetime(birth_ns))


def classify(current_mtime: int, current_size: int, previous: LogEntry | None) -> FileStatus:
    """
    Classify a file against its entry in the previous log.

    Returns
    -------
    FileStatus
        CREATED if unknown or previously deleted, UNCHANGED if mtime and size
        are both equal, CHANGED otherwise.
    """
    if previous is None or previous.status is FileStatus.DELETED:
        return FileStatus.CREATED
    if previous.mtime == current_mtime and previous.size == current_size:
        return FileStatus.UNCHANGED
    return FileStatus.CHANGED


class ArchiveRun:
    """
    One backup run of one source root.

    Parameters
    ----------
    target_root:
        Backup target directory.
    content_root:
        Source root directory being archived; determines the archive directory.
    compare_with_previous:
        If True, the newest existing log for the root is loaded and only
        changed files are archived.
    clock:
        Time source for the archive name.
    """

    def __init__(
        self,
        target_root: Path,
        content_root: str,
        *,
        compare_with_previous: bool = True,
        clock: Clock | None = None,
    ) -> None:
        self.content_root = content_root
        self.compare_with_previous = compare_with_previous
        self.archive_directory = archive_directory_for(target_root, content_root)
        self.archive_name = format_archive_name(clock or SystemClock())
        self.container_path = self.archive_directory / f"{self.archive_name}{CONTAINER_SUFFIX}"
        self.current_log = ChangeLog(self.archive_directory / f"{self.archive_name}{LOG_SUFFIX}")
        self.previous_log: ChangeLog | None = None

        self.state = RunState.UNOPENED
        self.failures: list[FileFailure] = []
        self.warnings: list[str] = []

        self._zip: zipfile.ZipFile | None = None
        self._container_empty = True
        self._lock = threading.Lock()

    def create(self) -> None:
        """
        Open the run: load the previous log, create the container and log.

        Raises
        ------
        InvalidStateError
            If the run was already created.
        ArchiveIOError
            If the archive directory or container cannot be created.
        ChangeLogIOError
            If the current log cannot be created.
        """
        if self.state is not RunState.UNOPENED:
            raise InvalidStateError(f"Archive run already {self.state.value}: {self.container_path}")

        # The previous log must be located before the current one exists.
        if self.compare_with_previous:
            self.previous_log = self._load_previous_log()

        try:
            self.archive_directory.mkdir(parents=True, exist_ok=True)
            self._zip = zipfile.ZipFile(
                self.container_path,
                mode="x",
                compression=COMPRESSION,
                compresslevel=COMPRESSION_LEVEL,
                # Files dated before 1980 are stored with a clamped date.
                strict_timestamps=False,
            )
        except OSError as exc:
            raise ArchiveIOError(f"Failed to create archive container: {self.container_path} ({exc!s})") from exc

        try:
            self.current_log.create()
        except ChangeLogError:
            self._zip.close()
            self._zip = None
            self.container_path.unlink(missing_ok=True)
            raise

        self.state = RunState.OPEN
        logger.info("Opened archive %s", self.container_path)

    def _load_previous_log(self) -> ChangeLog | None:
        previous = ChangeLog.most_recent_for(self.archive_directory)
        if previous is None:
            return None
        try:
            previous.load_all()
        except ChangeLogError as exc:
            message = f"Previous change log unusable, archiving every file: {exc!s}"
            logger.warning(message)
            self.warnings.append(message)
            return None
        logger.info("Comparing against %s (%d entries)", previous.path, len(previous))
        return previous

    def write_file(self, root_directory: str, relative_path: str) -> FileStatus | None:
        """
        Classify one file and archive its bytes if needed.

        Parameters
        ----------
        root_directory:
            Source root directory (trailing slash).
        relative_path:
            Forward-slash path relative to ``root_directory``.

        Returns
        -------
        FileStatus | None
            The classification, or None if the file failed and was recorded in
            ``failures``.

        Raises
        ------
        InvalidStateError
            If the run is not open.
        """
        if self.state is not RunState.OPEN:
            raise InvalidStateError(
                f"Cannot write to archive in state {self.state.value!r}; call create() first."
            )

        full_path = root_directory + relative_path
        try:
            stat_result = os.stat(full_path)
            mtime = file_time_of(stat_result)
            size = int(stat_result.st_size)

            previous = self.previous_log.find(relative_path) if self.previous_log is not None else None
            status = classify(mtime, size, previous)
            archive = previous.archive if status is FileStatus.UNCHANGED and previous else self.archive_name
            entry = LogEntry(path=relative_path, status=status, mtime=mtime, size=size, archive=archive)
            # Reject unloggable paths before any bytes are written.
            entry.to_line()

            with self._lock:
                if status.writes_content:
                    self._write_content(full_path, relative_path)
                self.current_log.append(entry)
        except (OSError, LogFormatError, ChangeLogError) as exc:
            self._record_failure(root_directory, relative_path, exc)
            return None

        logger.debug("%s %s", status.value, relative_path)
        return status

    def _write_content(self, full_path: str, relative_path: str) -> None:
        assert self._zip is not None
        self._zip.write(full_path, arcname=relative_path)
        self._container_empty = False

    def _record_failure(self, root_directory: str, relative_path: str, exc: Exception) -> None:
        logger.warning("Failed reading and archiving %s%s: %s", root_directory, relative_path, exc)
        with self._lock:
            self.failures.append(
                FileFailure(root_directory=root_directory, relative_path=relative_path, message=str(exc))
            )

    def finalize(self) -> FinalizeResult:
        """
        Close the run.

        Appends a DELETED entry for every path known to the previous log but
        not logged in this run, removes the container if nothing was written,
        and finalizes both logs. A current log that records no new content and
        no fresh deletions is removed; the previous log then remains the newest
        complete snapshot.

        Returns
        -------
        FinalizeResult
            Deletion counts and which artifacts were kept.

        Raises
        ------
        InvalidStateError
            If the run is not open.
        ArchiveIOError
            If the container cannot be closed or removed.
        """
        if self.state is not RunState.OPEN:
            raise InvalidStateError(f"Cannot finalize archive in state {self.state.value!r}.")

        deleted_count, fresh_deleted_count = self._transfer_missing_entries()

        assert self._zip is not None
        try:
            self._zip.close()
            if self._container_empty:
                self.container_path.unlink(missing_ok=True)
        except OSError as exc:
            raise ArchiveIOError(f"Failed to close archive container: {self.container_path} ({exc!s})") from exc
        finally:
            self._zip = None
            self.state = RunState.FINALIZED

        log_kept = not self.current_log.is_empty
        if self._container_empty and fresh_deleted_count == 0 and self.previous_log is not None:
            log_kept = False
            self.current_log.discard()
        else:
            self.current_log.finalize()

        if self.previous_log is not None:
            self.previous_log.finalize()

        logger.info(
            "Finalized archive %s (deleted=%d, fresh=%d, container kept=%s, log kept=%s)",
            self.archive_name,
            deleted_count,
            fresh_deleted_count,
            not self._container_empty,
            log_kept,
        )
        return FinalizeResult(
            deleted_count=deleted_count,
            fresh_deleted_count=fresh_deleted_count,
            container_kept=not self._container_empty,
            log_kept=log_kept,
        )

    def _transfer_missing_entries(self) -> tuple[int, int]:
        """
        Append DELETED entries for previous paths this run did not log.

        Failed files are not in the current log, so they are carried forward
        as DELETED like any other missing path.

        Returns
        -------
        tuple[int, int]
            DELETED entries appended, and how many of those were not already
            DELETED in the previous log.
        """
        if self.previous_log is None:
            return 0, 0

        deleted_count = 0
        fresh_deleted_count = 0
        for previous in self.previous_log:
            if previous.path in self.current_log:
                continue
            try:
                self.current_log.append(previous.as_deleted())
            except ChangeLogError as exc:
                message = f"Failed to record DELETED entry for {previous.path}: {exc!s}"
                logger.warning(message)
                self.warnings.append(message)
                continue
            deleted_count += 1
            if previous.status is not FileStatus.DELETED:
                fresh_deleted_count += 1
        return deleted_count, fresh_deleted_count
