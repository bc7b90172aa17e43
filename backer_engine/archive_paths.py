"""
Archive directory layout and target safety gates.

This module is the single choke point for deciding where archive containers
and change logs are written:

- Every backed-up source root gets its own archive directory directly under
  the target: ``target/<escaped content path>/``.
- Each run writes ``<base name>.zip`` and ``<base name>.log`` into that
  directory, where the base name is ``<FILETIME UTC> (<yyyy-MM-dd HH-mm-ss>)``.
- Targets that are filesystem roots, or that do not resolve to a directory
  path, are refused.
"""

from __future__ import annotations

from pathlib import Path

from backer_engine.clock import Clock, datetime_to_filetime
from backer_engine.errors import SafetyViolationError

CONTAINER_SUFFIX = ".zip"
LOG_SUFFIX = ".log"


def escape_content_path(content_path: str) -> str:
    """
    Turn a source root path into a single filesystem-safe directory name.

    Parameters
    ----------
    content_path:
        Source root directory, forward- or back-slash separated.

    Returns
    -------
    str
        ``content_path`` with a trailing separator dropped, ``:`` removed,
        spaces replaced by ``_`` and ``/`` replaced by a space, then trimmed.

    Raises
    ------
    SafetyViolationError
        If nothing usable remains after escaping.
    """
    normalized = content_path.replace("\\", "/")
    if normalized.endswith("/"):
        normalized = normalized[:-1]
    escaped = normalized.replace(":", "").replace(" ", "_").replace("/", " ").strip()
    if not escaped or escaped in {".", ".."}:
        raise SafetyViolationError(f"Source path cannot be mapped to an archive directory: {content_path!r}")
    return escaped


def archive_directory_for(target_root: Path, content_path: str) -> Path:
    """Return the archive directory holding every run of ``content_path``."""
    return target_root / escape_content_path(content_path)


def format_archive_name(clock: Clock) -> str:
    """
    Build the base name shared by a run's container and change log.

    The leading FILETIME token orders runs; the bracketed local time is for
    humans browsing the archive directory.
    """
    current = clock.now()
    ticks = datetime_to_filetime(current)
    local = current.astimezone()
    return f"{ticks} ({local:%Y-%m-%d %H-%M-%S})"


def parse_archive_timestamp(file_name: str) -> int | None:
    """
    Extract the FILETIME token from a container or log file name.

    Returns
    -------
    int | None
        The leading integer token, or None if the name does not start with one.
    """
    token = Path(file_name).stem.split(" ", 1)[0]
    if not token.isdigit():
        return None
    return int(token)


def validate_target_root(target: Path) -> Path:
    """Validate a backup target directory and return its resolved absolute form.

    Safety goals:
    - Must not exist as a regular file
    - Disallow filesystem roots (C:\\, /, etc.)
    - Normalize to an absolute resolved path

    The directory itself does not need to exist yet; archive runs create it.

    Raises
    ------
    SafetyViolationError
        If the target is unsafe.
    """
    resolved = Path(target).expanduser().resolve()

    if resolved.exists() and not resolved.is_dir():
        raise SafetyViolationError(f"Target path is not a directory: {resolved}")

    if len(resolved.parts) <= 1:
        raise SafetyViolationError(f"Refusing to use filesystem root as target: {resolved}")

    return resolved
