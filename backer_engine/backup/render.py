"""
Rendering for backup summaries.

This module renders a BackupSummary to deterministic, human-readable text.
"""

from __future__ import annotations

from backer_engine.backup.changelog import FileStatus
from backer_engine.backup.service import BackupSummary, RootSummary

_STATUS_ORDER: tuple[FileStatus, ...] = (
    FileStatus.CREATED,
    FileStatus.CHANGED,
    FileStatus.UNCHANGED,
    FileStatus.DELETED,
)


def render_counts(counts: dict[FileStatus, int]) -> str:
    """Render per-status counts as a fixed-width, single-line string."""
    return ", ".join(f"{counts.get(status, 0):6} {status.value.lower()}" for status in _STATUS_ORDER)


def render_root_line(root: RootSummary) -> str:
    """Render the one-line result for a single root."""
    if root.error is not None:
        return f"  - archive root {root.root_directory}: FAILED ({root.error})"
    return f"  - archive root {root.root_directory}: {root.files_seen} files archived {render_counts(root.counts)}"


def render_backup_summary_text(summary: BackupSummary, *, max_items: int = 100) -> str:
    """
    Render a backup summary as deterministic plain text.

    Parameters
    ----------
    summary:
        The summary to render.
    max_items:
        Maximum number of failed files to list. Counts always reflect the full
        summary. Must be non-negative.

    Raises
    ------
    ValueError
        If max_items is negative.
    """
    if max_items < 0:
        raise ValueError("max_items must be non-negative.")

    lines: list[str] = ["Backup summary"]
    for root in summary.roots:
        lines.append(render_root_line(root))
        for warning in root.warnings:
            lines.append(f"      warning: {warning}")

    lines.append("")
    lines.append(f"Total: {summary.files_seen} files {render_counts(summary.totals)}")

    if summary.source_failures:
        lines.append("")
        lines.append(f"Skipped {len(summary.source_failures)} sources:")
        for failure in summary.source_failures:
            lines.append(f"    {failure.source_path}: {failure.message}")

    issues = list(summary.source_issues) + [issue for root in summary.roots for issue in root.scan_issues]
    if issues:
        lines.append("")
        lines.append(f"Scan issues: {len(issues)}")
        for issue in issues:
            lines.append(f"- {issue.path}: {issue.message}")

    failed = summary.failed_files
    if failed:
        lines.append("")
        lines.append(f"WARNING: Skipped {len(failed)} files:")
        for failure in failed[:max_items]:
            lines.append(f"    {failure.root_directory}{failure.relative_path}")
        if max_items < len(failed):
            lines.append(f"    ... ({len(failed) - max_items} more not shown)")

    return "\n".join(lines)
