"""
Backup configuration models and loading.

A configuration is an explicit value handed to the orchestrator; there is no
process-wide "current configuration". It can come from a JSON document or be
built directly from command-line arguments.

Document shape
--------------
::

    {
      "target": "D:/backups",
      "sources": [
        {"path": "C:/projects/*", "exclude": ["node_modules", "/.git/"]}
      ]
    }

``target`` is optional in the document; callers may supply or override it.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping, Self

from backer_engine.errors import ConfigError


def _require_keys(payload: Mapping[str, Any], keys: set[str], *, context: str) -> None:
    missing = keys.difference(payload.keys())
    if missing:
        missing_str = ", ".join(sorted(missing))
        raise ConfigError(f"Missing required keys in {context}: {missing_str}")


@dataclass(frozen=True, slots=True)
class SourceSpec:
    """
    One configured backup source.

    Attributes
    ----------
    path:
        Source directory, optionally containing whole-segment ``*`` wildcards.
    exclude:
        Exclusion substrings matched against normalized forward-slash paths.
    """

    path: str
    exclude: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], *, context: str = "source") -> Self:
        """Construct a :class:`SourceSpec` from a mapping."""
        if not isinstance(payload, Mapping):
            raise ConfigError(f"{context} must be an object")
        _require_keys(payload, {"path"}, context=context)

        path = payload["path"]
        if not isinstance(path, str) or not path.strip():
            raise ConfigError(f"{context}.path must be a non-empty string")

        raw_exclude = payload.get("exclude")
        if raw_exclude is None:
            raw_exclude = []
        if not isinstance(raw_exclude, list) or not all(isinstance(item, str) for item in raw_exclude):
            raise ConfigError(f"{context}.exclude must be a list of strings")

        # Empty exclusions would match every path.
        return cls(path=path.strip(), exclude=tuple(item for item in raw_exclude if item))

    def to_dict(self) -> dict[str, Any]:
        """Convert this model to a JSON-serializable dict."""
        return {"path": self.path, "exclude": list(self.exclude)}


@dataclass(frozen=True, slots=True)
class BackupConfig:
    """
    Fully resolved input for one backup invocation.

    Attributes
    ----------
    target:
        Directory under which per-source archive directories are written.
    sources:
        Sources in the order they are processed.
    compare_with_previous:
        When False every file is archived as CREATED, ignoring earlier logs.
    """

    target: Path
    sources: tuple[SourceSpec, ...] = field(default_factory=tuple)
    compare_with_previous: bool = True

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], *, target: Path | None = None) -> Self:
        """
        Construct a :class:`BackupConfig` from a mapping.

        Parameters
        ----------
        payload:
            Parsed configuration document.
        target:
            Target override. Takes precedence over ``payload["target"]``.

        Raises
        ------
        ConfigError
            If the document is structurally invalid or no target is known.
        """
        if not isinstance(payload, Mapping):
            raise ConfigError("Configuration document must be an object")
        _require_keys(payload, {"sources"}, context="configuration")

        raw_sources = payload["sources"]
        if not isinstance(raw_sources, list) or not raw_sources:
            raise ConfigError("configuration.sources must be a non-empty list")
        sources = tuple(
            SourceSpec.from_dict(item, context=f"sources[{index}]") for index, item in enumerate(raw_sources)
        )

        if target is None:
            raw_target = payload.get("target")
            if not isinstance(raw_target, str) or not raw_target.strip():
                raise ConfigError("No backup target given (set 'target' in the configuration or pass --target)")
            target = Path(raw_target.strip())

        compare = payload.get("compare_with_previous", True)
        if not isinstance(compare, bool):
            raise ConfigError("configuration.compare_with_previous must be a boolean")

        return cls(target=target, sources=sources, compare_with_previous=compare)

    def to_dict(self) -> dict[str, Any]:
        """Convert this model to a JSON-serializable dict."""
        return {
            "target": str(self.target),
            "sources": [source.to_dict() for source in self.sources],
            "compare_with_previous": self.compare_with_previous,
        }


def load_backup_config(config_path: Path, *, target: Path | None = None) -> BackupConfig:
    """
    Read and validate a backup configuration from disk.

    Parameters
    ----------
    config_path:
        Path to the JSON configuration file.
    target:
        Optional target override.

    Raises
    ------
    ConfigError
        If the file cannot be read, is not valid JSON, or fails validation.
    """
    try:
        text = config_path.expanduser().read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Failed to read configuration: {config_path} ({exc!s})") from exc

    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON in configuration: {config_path} ({exc!s})") from exc

    return BackupConfig.from_dict(payload, target=target)


def config_from_arguments(
    *,
    source: str,
    target: Path,
    exclude: Iterable[str] | None = None,
    compare_with_previous: bool = True,
) -> BackupConfig:
    """Build a single-source configuration from explicit arguments."""
    if not source.strip():
        raise ConfigError("Source path must not be empty")
    return BackupConfig(
        target=target,
        sources=(SourceSpec(path=source.strip(), exclude=tuple(e for e in (exclude or []) if e)),),
        compare_with_previous=compare_with_previous,
    )
