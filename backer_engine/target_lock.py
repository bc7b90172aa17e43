"""
Target lock for backup invocations.

Archive runs assume they are the only writer in their archive directories.
The engine does not enforce that; the CLI holds this lock for the duration of
a backup so a scheduled job and a manual run cannot interleave on one target.

The lock is a small JSON file in the target, created with exclusive open. An
existing lock blocks. ``force`` removes it only when its owner is provably
gone (same host, PID known not to be running); ``break_lock`` removes it
unconditionally.
"""

from __future__ import annotations

import json
import os
import platform
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from backer_engine.errors import TargetLockError

LOCK_FILE_NAME = ".backer-upper.lock"
LOCK_FORMAT = "backer-upper-lock/1"


@dataclass(frozen=True, slots=True)
class LockOwner:
    """Who holds a target lock, as recorded in the lock file."""

    format: str
    target: str
    acquired_at: str
    host: str
    pid: int
    command: str

    @classmethod
    def current(cls, *, target: Path, command: str) -> LockOwner:
        """Describe this process as a lock owner."""
        acquired = datetime.now(timezone.utc).replace(microsecond=0)
        return cls(
            format=LOCK_FORMAT,
            target=str(target),
            acquired_at=acquired.isoformat().replace("+00:00", "Z"),
            host=platform.node(),
            pid=os.getpid(),
            command=command,
        )

    def is_same_process(self, other: dict[str, Any]) -> bool:
        return other.get("pid") == self.pid and str(other.get("host", "")).lower() == self.host.lower()


def build_target_lock_path(target_root: Path) -> Path:
    """Return the lock file path for a backup target directory."""
    return target_root / LOCK_FILE_NAME


@contextmanager
def acquire_target_lock(
    *,
    target_root: Path,
    command: str,
    force: bool = False,
    break_lock: bool = False,
) -> Iterator[Path]:
    """
    Hold the target lock for the duration of the ``with`` block.

    Parameters
    ----------
    target_root:
        Backup target directory; created if missing.
    command:
        Command name recorded in the lock.
    force:
        Remove an existing lock whose owner is provably no longer running.
    break_lock:
        Remove an existing lock regardless of its owner.

    Yields
    ------
    Path
        The lock file path.

    Raises
    ------
    TargetLockError
        If the lock is held and may not be removed, or the lock file cannot
        be written or released.
    """
    lock_path = build_target_lock_path(target_root.expanduser())
    owner = LockOwner.current(target=target_root, command=command)

    try:
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        if not _try_create(lock_path, owner):
            _check_existing_lock(lock_path, force=force, break_lock=break_lock)
            lock_path.unlink(missing_ok=True)
            if not _try_create(lock_path, owner):
                raise TargetLockError(f"Another process took the target lock while it was being broken: {lock_path}")
    except OSError as exc:
        raise TargetLockError(f"Cannot create target lock {lock_path}: {exc!s}") from exc

    try:
        yield lock_path
    finally:
        _release(lock_path, owner)


def _try_create(lock_path: Path, owner: LockOwner) -> bool:
    try:
        with lock_path.open("x", encoding="utf-8", newline="\n") as handle:
            json.dump(asdict(owner), handle, sort_keys=True)
            handle.write("\n")
    except FileExistsError:
        return False
    return True


def _read_owner(lock_path: Path) -> dict[str, Any] | None:
    try:
        data = json.loads(lock_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def _check_existing_lock(lock_path: Path, *, force: bool, break_lock: bool) -> None:
    """Raise TargetLockError unless the existing lock may be removed."""
    if break_lock:
        return

    existing = _read_owner(lock_path)
    if existing is None:
        raise TargetLockError(
            f"Target lock {lock_path} exists but could not be read. "
            "Make sure no backup is running, then re-run with --break-lock."
        )

    details = ", ".join(f"{key}={existing.get(key)!r}" for key in ("host", "pid", "command", "acquired_at"))
    if _owner_is_gone(existing):
        if force:
            return
        raise TargetLockError(
            f"Target lock {lock_path} belongs to a process that is no longer running ({details}). "
            "Re-run with --force to remove it."
        )
    raise TargetLockError(
        f"Target lock {lock_path} is held and not provably stale ({details}). "
        "If no backup is running, re-run with --break-lock."
    )


def _owner_is_gone(existing: dict[str, Any]) -> bool:
    host = existing.get("host")
    pid = existing.get("pid")
    if not isinstance(host, str) or not isinstance(pid, int):
        return False
    if host.lower() != platform.node().lower():
        return False
    return is_pid_running(pid) is False


def _release(lock_path: Path, owner: LockOwner) -> None:
    existing = _read_owner(lock_path)
    if existing is not None and not owner.is_same_process(existing):
        # Broken and re-taken by someone else.
        return
    try:
        lock_path.unlink(missing_ok=True)
    except OSError as exc:
        raise TargetLockError(f"Cannot release target lock {lock_path}: {exc!s}") from exc


def is_pid_running(pid: int) -> bool | None:
    """
    Report whether ``pid`` is a running process on this host.

    Returns
    -------
    bool | None
        None when it cannot be determined, which includes every check on
        Windows; such locks are never treated as stale.
    """
    if pid <= 0 or os.name == "nt":
        return None
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return None
    return True
