"""
Source tree scanning for incremental backups.

This module turns a configured source into concrete root directories and,
per root, a lazy stream of root-relative file paths. It performs no writes.

Policy
------
- Enumeration order is deterministic: entries are sorted by name; a
  directory's files are produced before the files of its subdirectories.
- Symlinked directories are not descended into. Symlinked files are produced
  like regular files.
- Excluded directories are pruned before descending; excluded files are
  skipped. Exclusions are checked against full forward-slash paths, with a
  trailing slash on directories.
- Directories that cannot be listed are treated as empty and recorded as a
  ScanIssue; they never abort a scan.
"""

from __future__ import annotations

import logging
import os
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Sequence

from backer_engine.backup.match import (
    SourcePattern,
    is_excluded,
    normalize_directory,
    parse_source_pattern,
)
from backer_engine.config import SourceSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ScanIssue:
    """
    A non-fatal issue encountered while scanning.

    Attributes
    ----------
    path:
        The path that triggered the issue (forward-slash form).
    message:
        Human-readable explanation suitable for logs or reports.
    """

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ResolvedRoot:
    """
    A concrete, wildcard-free source root directory.

    Attributes
    ----------
    source:
        The configured source that produced this root (for its exclusions).
    directory:
        Forward-slash directory path with a trailing slash.
    """

    source: SourceSpec
    directory: str

    @property
    def path(self) -> Path:
        """The root directory as a Path."""
        return Path(self.directory)


@dataclass(frozen=True, slots=True)
class _DirectoryListing:
    files: list[str]
    directories: list[str]


def _list_directory(directory: str, issues: list[ScanIssue]) -> _DirectoryListing:
    """
    List the direct children of ``directory``.

    Returns names, sorted. Listing failures yield an empty listing plus an issue.
    """
    files: list[str] = []
    directories: list[str] = []
    try:
        with os.scandir(directory) as entries:
            for entry in entries:
                try:
                    if entry.is_dir(follow_symlinks=False):
                        directories.append(entry.name)
                    elif entry.is_file():
                        files.append(entry.name)
                except OSError as exc:
                    issues.append(ScanIssue(path=directory + entry.name, message=f"Failed to inspect entry: {exc!s}"))
    except OSError as exc:
        logger.warning("Cannot list directory %s: %s", directory, exc)
        issues.append(ScanIssue(path=directory, message=f"Failed to list directory: {exc!s}"))
        return _DirectoryListing(files=[], directories=[])

    files.sort()
    directories.sort()
    return _DirectoryListing(files=files, directories=directories)


def scan_roots(
    source: SourceSpec,
    *,
    pattern: SourcePattern | None = None,
    issues: list[ScanIssue] | None = None,
) -> Iterator[ResolvedRoot]:
    """
    Resolve a configured source into concrete root directories.

    Parameters
    ----------
    source:
        Configured source.
    pattern:
        Pre-parsed pattern for ``source.path``. Parsed here if omitted.
    issues:
        Optional list that receives non-fatal scan issues.

    Yields
    ------
    ResolvedRoot
        Roots exactly ``pattern.depth`` levels below the literal root that match
        the pattern and are not excluded, in sorted order.

    Raises
    ------
    InvalidSourceSpecError
        If ``source.path`` is not a valid pattern.
    """
    parsed = pattern or parse_source_pattern(source.path)
    sink = issues if issues is not None else []

    if not os.path.isdir(parsed.literal_root):
        logger.warning("Source root does not exist or is not a directory: %s", parsed.literal_root)
        sink.append(ScanIssue(path=parsed.literal_root, message="Source root does not exist or is not a directory."))
        return

    for directory in _descend(parsed.literal_root, parsed.depth, source.exclude, sink):
        if not parsed.matches(directory):
            logger.debug("Skipping %s: does not match %s", directory, source.path)
            continue
        yield ResolvedRoot(source=source, directory=directory)


def _descend(
    directory: str,
    depth: int,
    exclusions: Sequence[str],
    issues: list[ScanIssue],
) -> Iterator[str]:
    if is_excluded(directory, exclusions):
        return
    if depth == 0:
        yield directory
        return
    for name in _list_directory(directory, issues).directories:
        yield from _descend(normalize_directory(directory + name), depth - 1, exclusions, issues)


class RelativeFileStream:
    """
    Lazy, single-pass stream of root-relative file paths.

    The stream walks ``root_directory`` with an explicit directory stack, so
    each directory is listed only when the consumer reaches it. Iterating a
    second time yields nothing; the stream is not restartable.

    Attributes
    ----------
    root_directory:
        Forward-slash root directory with a trailing slash.
    issues:
        Non-fatal issues collected so far.
    """

    def __init__(self, root_directory: str, exclusions: Sequence[str] = ()) -> None:
        self.root_directory = normalize_directory(root_directory)
        self.exclusions = tuple(exclusions)
        self.issues: list[ScanIssue] = []
        self._pending_directories: list[str] = [self.root_directory]
        self._pending_files: deque[str] = deque()

    def __iter__(self) -> Iterator[str]:
        return self

    def __next__(self) -> str:
        while not self._pending_files:
            if not self._pending_directories:
                raise StopIteration
            self._expand(self._pending_directories.pop())
        return self._pending_files.popleft()

    def _expand(self, directory: str) -> None:
        listing = _list_directory(directory, self.issues)

        for name in listing.files:
            file_path = directory + name
            if is_excluded(file_path, self.exclusions):
                continue
            self._pending_files.append(file_path[len(self.root_directory):])

        children = [
            child
            for child in (normalize_directory(directory + name) for name in listing.directories)
            if not is_excluded(child, self.exclusions)
        ]
        # Reversed so the first child is popped first.
        self._pending_directories.extend(reversed(children))


def scan_files(root_directory: str, exclusions: Sequence[str] = ()) -> RelativeFileStream:
    """
    Stream every non-excluded file below ``root_directory``.

    Parameters
    ----------
    root_directory:
        Root directory, any separator style.
    exclusions:
        Exclusion substrings checked against full file and directory paths.

    Returns
    -------
    RelativeFileStream
        Lazy stream of forward-slash paths relative to ``root_directory``.
    """
    return RelativeFileStream(root_directory, exclusions)
