"""
Source path patterns and exclusion matching.

A source path may contain whole-segment ``*`` wildcards, each matching any
single directory name at that depth::

    C:/projects/*          every direct child of C:/projects
    /srv/*/data            every <child>/data exactly two levels below /srv

Policy
------
- The first segment must be concrete; a pattern needs an anchor directory.
- Partial-segment globs (``data*``, ``*.d``) are rejected rather than guessed at.
- Discovered directories whose literal segments differ from the pattern are
  skipped (strict matching).
- Exclusions are plain substrings of the normalized forward-slash path, not
  globs. ``node_modules`` excludes ``a/node_modules/b`` and also
  ``a/node_modules_old``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from backer_engine.errors import InvalidSourceSpecError

WILDCARD = "*"


def normalize_path(path: str) -> str:
    """Return ``path`` with every backslash replaced by a forward slash."""
    return path.replace("\\", "/")


def normalize_directory(path: str) -> str:
    """Return the forward-slash form of ``path`` with exactly one trailing slash."""
    normalized = normalize_path(path)
    return normalized if normalized.endswith("/") else normalized + "/"


def is_excluded(candidate_path: str, exclusions: Iterable[str]) -> bool:
    """
    Decide whether a path is excluded by any exclusion rule.

    Parameters
    ----------
    candidate_path:
        Absolute or relative path of a file or directory.
    exclusions:
        Exclusion substrings, in any separator style.

    Returns
    -------
    bool
        True if any normalized exclusion occurs anywhere in the normalized path.
    """
    candidate = normalize_path(candidate_path)
    return any(normalize_path(exclusion) in candidate for exclusion in exclusions if exclusion)


def _split_segments(path: str) -> list[str]:
    normalized = normalize_path(path)
    # A trailing separator does not add a level.
    if len(normalized) > 1 and normalized.endswith("/"):
        normalized = normalized.rstrip("/") or "/"
    return normalized.split("/")


@dataclass(frozen=True, slots=True)
class SourcePattern:
    """
    A parsed source path.

    Attributes
    ----------
    segments:
        Normalized path segments; wildcard segments are ``"*"``.
    literal_root:
        Segments before the first wildcard, joined with ``/`` plus a trailing slash.
    depth:
        Number of segments from the first wildcard to the end (0 without wildcards).
    """

    segments: tuple[str, ...]
    literal_root: str
    depth: int

    @property
    def has_wildcards(self) -> bool:
        """True if the pattern resolves to directories below ``literal_root``."""
        return self.depth > 0

    def matches(self, discovered_directory: str) -> bool:
        """
        Check a discovered directory against the pattern.

        The directory must have at least as many segments as the pattern and
        every non-wildcard segment must match literally.
        """
        if not self.has_wildcards:
            return True

        discovered = _split_segments(discovered_directory)
        if len(discovered) < len(self.segments):
            return False

        for expected, actual in zip(self.segments, discovered):
            if expected != WILDCARD and expected != actual:
                return False
        return True


def parse_source_pattern(source_path: str) -> SourcePattern:
    """
    Parse a source path into its literal root and wildcard depth.

    Parameters
    ----------
    source_path:
        Configured source path, for example ``"C:/projects/*"``.

    Returns
    -------
    SourcePattern
        Parsed pattern.

    Raises
    ------
    InvalidSourceSpecError
        If the path is empty, starts with a wildcard, or contains a
        partial-segment glob.
    """
    if not source_path or not source_path.strip():
        raise InvalidSourceSpecError("Source path must not be empty.")

    segments = _split_segments(source_path.strip())

    for segment in segments:
        if WILDCARD in segment and segment != WILDCARD:
            raise InvalidSourceSpecError(
                f"Only whole-segment wildcards are supported, got {segment!r} in {source_path!r}."
            )

    first_wildcard = next((i for i, segment in enumerate(segments) if segment == WILDCARD), None)
    if first_wildcard == 0:
        raise InvalidSourceSpecError(f"Source path must start with a non-wildcard segment: {source_path!r}.")

    if first_wildcard is None:
        literal_segments = segments
        depth = 0
    else:
        literal_segments = segments[:first_wildcard]
        depth = len(segments) - first_wildcard

    # ["", "srv"] joins to "/srv"; a lone "" is the POSIX root.
    literal_root = normalize_directory("/".join(literal_segments) or "/")

    return SourcePattern(segments=tuple(segments), literal_root=literal_root, depth=depth)
