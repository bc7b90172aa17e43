"""
Append-only change logs.

A change log records, for one backup run of one source root, the status of
every file: one line per path, in the order the run produced them::

    docs/readme.txt|CREATED|133497000000000000|1024|133497000000000000 (2024-01-01 00-00-00)

Fields are ``path|STATUS|mtime|size|archive``. ``mtime`` is in FILETIME ticks,
``archive`` is the base name of the container holding the path's bytes.

Design constraints
------------------
- The log being written is append-only; every append is flushed and fsynced
  before ``append`` returns.
- A previous log is loaded fully into memory and only queried.
- A log that never received an entry is deleted when finalized.
- Parsing is strict: a malformed line fails the whole load.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import IO, Iterator, Self

from backer_engine.archive_paths import LOG_SUFFIX, parse_archive_timestamp
from backer_engine.errors import ChangeLogIOError, ChangeLogParseError, LogFormatError

logger = logging.getLogger(__name__)

FIELD_SEPARATOR = "|"
_FIELD_COUNT = 5
_FORBIDDEN_PATH_CHARACTERS = (FIELD_SEPARATOR, "\n", "\r")


class FileStatus(str, Enum):
    """
    Classification of a file relative to the previous run.

    The values are written into change logs. Treat them as a stable external
    contract.
    """

    CREATED = "CREATED"
    UNCHANGED = "UNCHANGED"
    CHANGED = "CHANGED"
    DELETED = "DELETED"

    @property
    def writes_content(self) -> bool:
        """True for statuses whose bytes go into the current container."""
        return self in (FileStatus.CREATED, FileStatus.CHANGED)


@dataclass(frozen=True, slots=True)
class LogEntry:
    """
    One line of a change log.

    Attributes
    ----------
    path:
        Root-relative, forward-slash file path.
    status:
        Classification for this run.
    mtime:
        Later of creation and last write time, in FILETIME ticks.
    size:
        File size in bytes.
    archive:
        Base name of the container holding (or last holding) the bytes.
    """

    path: str
    status: FileStatus
    mtime: int
    size: int
    archive: str = ""

    def to_line(self) -> str:
        """
        Serialize this entry as a log line, without the terminating newline.

        Raises
        ------
        LogFormatError
            If a field contains the separator or a line break, or is not
            encodable as UTF-8 (undecodable file names on POSIX).
        """
        if not self.path:
            raise LogFormatError("Log entry path must not be empty")
        for field_name, value in (("path", self.path), ("archive", self.archive)):
            if any(ch in value for ch in _FORBIDDEN_PATH_CHARACTERS):
                raise LogFormatError(f"{field_name} cannot be written to a change log: {value!r}")
            try:
                value.encode("utf-8")
            except UnicodeEncodeError as exc:
                raise LogFormatError(f"{field_name} is not valid UTF-8: {value!r}") from exc
        return FIELD_SEPARATOR.join(
            (self.path, self.status.value, str(self.mtime), str(self.size), self.archive)
        )

    @classmethod
    def from_line(cls, line: str) -> Self:
        """
        Parse a log line (with or without its newline).

        Raises
        ------
        ValueError
            If the field count, status literal or numbers are invalid.
        """
        fields = line.rstrip("\n").split(FIELD_SEPARATOR)
        if len(fields) != _FIELD_COUNT:
            raise ValueError(f"expected {_FIELD_COUNT} fields, found {len(fields)}")

        path, status_text, mtime_text, size_text, archive = fields
        if not path:
            raise ValueError("empty path")
        try:
            status = FileStatus(status_text.upper())
        except ValueError as exc:
            raise ValueError(f"unknown status {status_text!r}") from exc
        return cls(
            path=path,
            status=status,
            mtime=_parse_int(mtime_text, "mtime"),
            size=_parse_int(size_text, "size"),
            archive=archive,
        )

    def as_deleted(self) -> LogEntry:
        """Return a DELETED copy that keeps mtime, size and archive."""
        return replace(self, status=FileStatus.DELETED)


def _parse_int(text: str, field_name: str) -> int:
    # int() alone would accept " 12", "1_000" and "+5".
    if not text or not (text.isdigit() or (text[0] == "-" and text[1:].isdigit())):
        raise ValueError(f"{field_name} is not an integer: {text!r}")
    return int(text)


class ChangeLog:
    """
    A change log file plus an in-memory index of its entries by path.

    A log is used either as the *current* log (``create`` then ``append``) or
    as a *previous* log (``load_all`` then ``find``), never both.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._entries: dict[str, LogEntry] = {}
        self._handle: IO[str] | None = None
        self._empty = True
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, path: object) -> bool:
        return path in self._entries

    def __iter__(self) -> Iterator[LogEntry]:
        return iter(list(self._entries.values()))

    @property
    def is_empty(self) -> bool:
        """True until an entry is appended (or a non-empty log is loaded)."""
        return self._empty

    @property
    def is_open(self) -> bool:
        """True while the log is open for appending."""
        return self._handle is not None

    @classmethod
    def most_recent_for(cls, archive_directory: Path) -> ChangeLog | None:
        """
        Find the newest log in an archive directory.

        Parameters
        ----------
        archive_directory:
            Directory holding the runs of one source root.

        Returns
        -------
        ChangeLog | None
            An unloaded ChangeLog for the log whose leading FILETIME token is
            largest, or None if the directory is missing or has no logs.
        """
        if not archive_directory.is_dir():
            return None

        newest: tuple[int, Path] | None = None
        for candidate in archive_directory.glob(f"*{LOG_SUFFIX}"):
            if not candidate.is_file():
                continue
            timestamp = parse_archive_timestamp(candidate.name)
            if timestamp is None:
                logger.warning("Ignoring log without a timestamp in its name: %s", candidate)
                continue
            if newest is None or timestamp > newest[0]:
                newest = (timestamp, candidate)

        return cls(newest[1]) if newest is not None else None

    def create(self) -> None:
        """
        Open a new log for appending.

        Raises
        ------
        ChangeLogIOError
            If the directory cannot be created or the file cannot be opened.
        """
        if self._handle is not None:
            raise ChangeLogIOError(f"Change log is already open: {self.path}")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._handle = self.path.open("w", encoding="utf-8", newline="\n")
        except OSError as exc:
            raise ChangeLogIOError(f"Failed to create change log: {self.path} ({exc!s})") from exc

    def append(self, entry: LogEntry) -> None:
        """
        Write an entry and record it in the index.

        The line is flushed and fsynced before this method returns.

        Raises
        ------
        LogFormatError
            If the entry cannot be serialized.
        ChangeLogIOError
            If the log is not open or the write fails.
        """
        line = entry.to_line() + "\n"
        with self._lock:
            if self._handle is None:
                raise ChangeLogIOError(f"Change log is not open for writing: {self.path}")
            try:
                self._handle.write(line)
                self._handle.flush()
                os.fsync(self._handle.fileno())
            except (OSError, UnicodeError) as exc:
                raise ChangeLogIOError(f"Failed to append to change log: {self.path} ({exc!s})") from exc
            self._entries[entry.path] = entry
            self._empty = False

    def load_all(self) -> None:
        """
        Read every entry of an existing log into the index.

        Raises
        ------
        ChangeLogIOError
            If the file cannot be read.
        ChangeLogParseError
            If any line is malformed.
        """
        entries: dict[str, LogEntry] = {}
        try:
            with self.path.open("r", encoding="utf-8", newline="\n") as handle:
                for line_number, line in enumerate(handle, start=1):
                    try:
                        entry = LogEntry.from_line(line)
                    except ValueError as exc:
                        raise ChangeLogParseError(
                            f"Malformed change log line {line_number} in {self.path}: {exc!s}"
                        ) from exc
                    entries[entry.path] = entry
        except UnicodeDecodeError as exc:
            raise ChangeLogParseError(f"Change log is not valid UTF-8: {self.path}") from exc
        except OSError as exc:
            raise ChangeLogIOError(f"Failed to read change log: {self.path} ({exc!s})") from exc

        self._entries = entries
        self._empty = not entries
        logger.debug("Loaded %d entries from %s", len(entries), self.path)

    def find(self, path: str) -> LogEntry | None:
        """Return the entry for ``path``, or None if the log has none."""
        return self._entries.get(path)

    def finalize(self) -> None:
        """
        Close the log; delete the file if no entry was ever appended.

        A loaded previous log is only released from memory, never deleted.

        Raises
        ------
        ChangeLogIOError
            If closing or deleting fails.
        """
        with self._lock:
            handle, self._handle = self._handle, None
            try:
                if handle is None:
                    self._entries.clear()
                    return
                handle.close()
                if self._empty:
                    self.path.unlink(missing_ok=True)
                    logger.debug("Removed empty change log %s", self.path)
            except OSError as exc:
                raise ChangeLogIOError(f"Failed to finalize change log: {self.path} ({exc!s})") from exc
            self._entries.clear()

    def discard(self) -> None:
        """Close the log and delete its file regardless of content."""
        with self._lock:
            self._empty = True
        self.finalize()
