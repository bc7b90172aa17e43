"""
Clock abstractions and FILETIME conversions.

Notes
-----
Engine code never reads wall-clock time directly; callers provide a Clock so
archive names are reproducible in tests.

Timestamps persisted in change logs and archive names use the Windows FILETIME
unit: 100-nanosecond ticks since 1601-01-01 UTC. Existing logs written by
earlier versions of the tool use that unit, so it is kept on every platform.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

FILETIME_EPOCH = datetime(1601, 1, 1, tzinfo=timezone.utc)

# Ticks between 1601-01-01 and 1970-01-01.
FILETIME_UNIX_OFFSET = 116_444_736_000_000_000


class Clock(Protocol):
    """A source of time for deterministic behavior."""

    def now(self) -> datetime:
        """
        Return the current time.

        Returns
        -------
        datetime
            A timezone-aware datetime.
        """
        ...


@dataclass(frozen=True, slots=True)
class SystemClock:
    """Clock that returns the current system time in UTC."""

    def now(self) -> datetime:
        """Return the current system time as an aware UTC datetime."""
        return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class FixedClock:
    """Clock that always returns a fixed time (useful for tests)."""

    fixed_time: datetime

    def now(self) -> datetime:
        """Return the fixed time, treating a naive value as UTC."""
        if self.fixed_time.tzinfo is None:
            return self.fixed_time.replace(tzinfo=timezone.utc)
        return self.fixed_time


def datetime_to_filetime(dt: datetime) -> int:
    """
    Convert an aware datetime to FILETIME ticks.

    Parameters
    ----------
    dt:
        A timezone-aware datetime.

    Returns
    -------
    int
        100 ns ticks since 1601-01-01 UTC.

    Raises
    ------
    ValueError
        If ``dt`` is naive.
    """
    if dt.tzinfo is None:
        raise ValueError("datetime must be timezone-aware")
    delta = dt.astimezone(timezone.utc) - FILETIME_EPOCH
    return (delta.days * 86_400 + delta.seconds) * 10_000_000 + delta.microseconds * 10


def nanoseconds_to_filetime(epoch_ns: int) -> int:
    """Convert nanoseconds since the Unix epoch (as in ``st_mtime_ns``) to FILETIME ticks."""
    return epoch_ns // 100 + FILETIME_UNIX_OFFSET
