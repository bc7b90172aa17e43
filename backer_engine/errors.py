"""
Domain exceptions for backer-upper.

Notes
-----
Core engine logic avoids raising generic exceptions. Every expected failure
mode maps to a domain exception with a clear meaning. Per-file I/O problems
are not raised at all; they are collected into the run summary.
"""

from __future__ import annotations


class BackerError(RuntimeError):
    """Base exception for all backer-upper domain failures."""


class InvalidSourceSpecError(BackerError):
    """Raised when a source path cannot be turned into a scan pattern."""


class InvalidStateError(BackerError):
    """Raised when an archive run operation is invoked out of order."""


class ArchiveIOError(BackerError):
    """Raised when an archive directory or container cannot be created."""


class ChangeLogError(BackerError):
    """Base class for change log failures."""


class ChangeLogIOError(ChangeLogError):
    """Raised when a change log cannot be opened, written or read."""


class ChangeLogParseError(ChangeLogError):
    """Raised when an existing change log contains a malformed line."""


class LogFormatError(ChangeLogError):
    """Raised when an entry cannot be represented in the log line format."""


class ConfigError(BackerError):
    """Raised when a backup configuration is unreadable or invalid."""


class SafetyViolationError(BackerError):
    """Raised when a target location is blocked by safety policy."""


class TargetLockError(BackerError):
    """
    Raised when acquiring, releasing, or breaking a target lock fails.

    The message is user-facing and explains how to proceed (``--force`` or
    ``--break-lock``) without requiring a stack trace.
    """
