"""
Atomic JSON persistence for backup reports.

Design constraints
------------------
- Writes are atomic (temp file + replace); a reader never sees a half report.
- Serialization is deterministic for a given in-memory object: sorted keys,
  two-space indent, non-ASCII paths written as-is.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Mapping, Protocol

from backer_engine.errors import BackerError


class ReportIOError(BackerError):
    """Raised when a report cannot be written."""


class SupportsToDict(Protocol):
    """Protocol for models that can be serialized to JSON."""

    def to_dict(self) -> dict[str, Any]:
        """Convert the model to a JSON-serializable dictionary."""
        ...


def write_json_atomic(json_path: Path, payload: Mapping[str, Any]) -> None:
    """
    Write JSON atomically to disk.

    Raises
    ------
    ReportIOError
        If the file cannot be written.
    """
    json_path = json_path.expanduser()
    temp_path = json_path.with_suffix(json_path.suffix + ".tmp")

    try:
        json_path.parent.mkdir(parents=True, exist_ok=True)
        with temp_path.open("w", encoding="utf-8", newline="\n") as handle:
            json.dump(payload, handle, indent=2, sort_keys=True, ensure_ascii=False)
            handle.write("\n")
        os.replace(temp_path, json_path)
    except OSError as exc:
        try:
            temp_path.unlink(missing_ok=True)
        except OSError:
            pass
        raise ReportIOError(f"Failed to write JSON: {json_path} ({exc!s})") from exc


def write_report_atomic(report_path: Path, report: SupportsToDict) -> None:
    """Atomically write a report model (e.g. a BackupSummary) to disk."""
    write_json_atomic(report_path, report.to_dict())
