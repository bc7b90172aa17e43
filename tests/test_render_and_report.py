from __future__ import annotations

import json
from pathlib import Path

import pytest

from backer_engine.backup.archive import FileFailure
from backer_engine.backup.changelog import FileStatus
from backer_engine.backup.render import render_backup_summary_text, render_counts
from backer_engine.backup.scan import ScanIssue
from backer_engine.backup.service import BackupSummary, RootSummary, SourceFailure
from backer_engine.report_store import ReportIOError, write_json_atomic, write_report_atomic


def _summary() -> BackupSummary:
    ok = RootSummary(source_path="/p/*", root_directory="/p/a/", archive_name="1 (x)", files_seen=4)
    ok.counts[FileStatus.CREATED] = 2
    ok.counts[FileStatus.UNCHANGED] = 1
    ok.counts[FileStatus.DELETED] = 3
    ok.failures = [
        FileFailure(root_directory="/p/a/", relative_path=f"f{i}.txt", message="denied") for i in range(3)
    ]
    ok.scan_issues = [ScanIssue(path="/p/a/locked/", message="Failed to list directory: denied")]
    ok.warnings = ["Previous change log unusable"]

    broken = RootSummary(source_path="/p/*", root_directory="/p/b/", error="disk full")

    return BackupSummary(
        roots=[ok, broken],
        source_failures=[SourceFailure(source_path="/q/x*", message="bad wildcard")],
    )


def test_render_counts_is_fixed_width() -> None:
    counts = {FileStatus.CREATED: 12, FileStatus.CHANGED: 0}
    assert render_counts(counts) == "    12 created,      0 changed,      0 unchanged,      0 deleted"


def test_render_summary_lists_roots_totals_and_problems() -> None:
    text = render_backup_summary_text(_summary())
    lines = text.splitlines()

    assert lines[0] == "Backup summary"
    assert lines[1].startswith("  - archive root /p/a/: 4 files archived ")
    assert lines[2] == "      warning: Previous change log unusable"
    assert lines[3] == "  - archive root /p/b/: FAILED (disk full)"
    assert "Total: 4 files      2 created,      0 changed,      1 unchanged,      3 deleted" in lines
    assert "Skipped 1 sources:" in lines
    assert "    /q/x*: bad wildcard" in lines
    assert "Scan issues: 1" in lines
    assert "WARNING: Skipped 3 files:" in lines
    assert "    /p/a/f0.txt" in lines


def test_render_summary_truncates_failed_files() -> None:
    lines = render_backup_summary_text(_summary(), max_items=1).splitlines()

    assert "    /p/a/f0.txt" in lines
    assert "    /p/a/f1.txt" not in lines
    assert lines[-1] == "    ... (2 more not shown)"


def test_render_summary_rejects_negative_max_items() -> None:
    with pytest.raises(ValueError):
        render_backup_summary_text(_summary(), max_items=-1)


def test_clean_summary_has_no_problem_sections() -> None:
    text = render_backup_summary_text(BackupSummary())
    assert "WARNING" not in text
    assert "Skipped" not in text
    assert not BackupSummary().has_failures


def test_write_report_atomic_writes_deterministic_json(tmp_path: Path) -> None:
    report_path = tmp_path / "nested" / "report.json"
    write_report_atomic(report_path, _summary())

    first = report_path.read_text(encoding="utf-8")
    payload = json.loads(first)
    assert payload["files_seen"] == 4
    assert payload["roots"][1]["error"] == "disk full"
    assert payload["source_failures"] == [{"source_path": "/q/x*", "message": "bad wildcard"}]
    assert not (tmp_path / "nested" / "report.json.tmp").exists()

    write_report_atomic(report_path, _summary())
    assert report_path.read_text(encoding="utf-8") == first


def test_write_json_atomic_failure_is_report_error(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("x", encoding="utf-8")

    with pytest.raises(ReportIOError):
        write_json_atomic(blocker / "report.json", {"a": 1})
