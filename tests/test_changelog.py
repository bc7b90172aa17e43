from __future__ import annotations

from pathlib import Path

import pytest

from backer_engine.backup.changelog import ChangeLog, FileStatus, LogEntry
from backer_engine.errors import ChangeLogIOError, ChangeLogParseError, LogFormatError


def _entry(path: str, status: FileStatus = FileStatus.CREATED, archive: str = "100 (a)") -> LogEntry:
    return LogEntry(path=path, status=status, mtime=133_497_000_000_000_000, size=42, archive=archive)


def _write_log(path: Path, lines: list[str]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(line + "\n" for line in lines), encoding="utf-8")


def test_entry_line_format() -> None:
    entry = _entry("docs/read me.txt")
    assert entry.to_line() == "docs/read me.txt|CREATED|133497000000000000|42|100 (a)"


def test_entry_parses_its_own_line_with_unicode_and_spaces() -> None:
    entry = _entry("Bücher/über uns.txt", status=FileStatus.CHANGED)
    assert LogEntry.from_line(entry.to_line() + "\n") == entry


def test_status_literal_is_case_insensitive() -> None:
    entry = LogEntry.from_line("a.txt|unchanged|1|2|x")
    assert entry.status is FileStatus.UNCHANGED


@pytest.mark.parametrize(
    "line",
    [
        "a.txt|CREATED|1|2",
        "a.txt|CREATED|1|2|x|extra",
        "|CREATED|1|2|x",
        "a.txt|MOVED|1|2|x",
        "a.txt|CREATED|one|2|x",
        "a.txt|CREATED|1| 2|x",
        "a.txt|CREATED|1|1_000|x",
    ],
)
def test_malformed_lines_are_rejected(line: str) -> None:
    with pytest.raises(ValueError):
        LogEntry.from_line(line)


@pytest.mark.parametrize(
    "path", ["a|b.txt", "line\nbreak.txt", "carriage\rreturn.txt", "", "bad\udcff.txt"]
)
def test_unrepresentable_paths_raise_format_error(path: str) -> None:
    with pytest.raises(LogFormatError):
        _entry(path).to_line()


def test_as_deleted_keeps_archive_mtime_and_size() -> None:
    deleted = _entry("a.txt").as_deleted()
    assert deleted.status is FileStatus.DELETED
    assert (deleted.archive, deleted.mtime, deleted.size) == ("100 (a)", 133_497_000_000_000_000, 42)


def test_writes_content_only_for_created_and_changed() -> None:
    assert FileStatus.CREATED.writes_content
    assert FileStatus.CHANGED.writes_content
    assert not FileStatus.UNCHANGED.writes_content
    assert not FileStatus.DELETED.writes_content


def test_create_append_find_and_finalize_keeps_file(tmp_path: Path) -> None:
    log = ChangeLog(tmp_path / "root" / "100 (a).log")
    log.create()
    assert log.is_open
    assert log.is_empty

    log.append(_entry("a.txt"))
    log.append(_entry("sub/b.txt", status=FileStatus.UNCHANGED, archive="50 (z)"))

    assert not log.is_empty
    assert len(log) == 2
    assert "a.txt" in log
    found = log.find("sub/b.txt")
    assert found is not None and found.archive == "50 (z)"
    assert log.find("missing.txt") is None

    log.finalize()
    assert not log.is_open
    assert log.path.read_text(encoding="utf-8").splitlines() == [
        "a.txt|CREATED|133497000000000000|42|100 (a)",
        "sub/b.txt|UNCHANGED|133497000000000000|42|50 (z)",
    ]


def test_appended_lines_are_on_disk_before_finalize(tmp_path: Path) -> None:
    log = ChangeLog(tmp_path / "100 (a).log")
    log.create()
    log.append(_entry("a.txt"))

    assert log.path.read_text(encoding="utf-8") == _entry("a.txt").to_line() + "\n"
    log.finalize()


def test_finalize_without_entries_removes_file(tmp_path: Path) -> None:
    log = ChangeLog(tmp_path / "100 (a).log")
    log.create()
    assert log.path.exists()

    log.finalize()
    assert not log.path.exists()


def test_discard_removes_file_with_entries(tmp_path: Path) -> None:
    log = ChangeLog(tmp_path / "100 (a).log")
    log.create()
    log.append(_entry("a.txt"))

    log.discard()
    assert not log.path.exists()


def test_finalize_of_loaded_log_never_deletes_it(tmp_path: Path) -> None:
    path = tmp_path / "100 (a).log"
    _write_log(path, [])
    log = ChangeLog(path)
    log.load_all()
    assert log.is_empty

    log.finalize()
    assert path.exists()


def test_create_fails_when_parent_is_a_file(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("x", encoding="utf-8")

    with pytest.raises(ChangeLogIOError):
        ChangeLog(blocker / "100 (a).log").create()


def test_append_requires_create(tmp_path: Path) -> None:
    with pytest.raises(ChangeLogIOError, match="not open"):
        ChangeLog(tmp_path / "100 (a).log").append(_entry("a.txt"))


def test_unrepresentable_entry_is_not_written(tmp_path: Path) -> None:
    log = ChangeLog(tmp_path / "100 (a).log")
    log.create()
    with pytest.raises(LogFormatError):
        log.append(_entry("bad|name.txt"))
    assert log.is_empty
    log.finalize()
    assert not log.path.exists()


def test_load_all_indexes_entries_last_duplicate_wins(tmp_path: Path) -> None:
    path = tmp_path / "100 (a).log"
    _write_log(
        path,
        [
            "a.txt|CREATED|1|10|100 (a)",
            "b.txt|DELETED|2|20|90 (b)",
            "a.txt|CHANGED|3|30|100 (a)",
        ],
    )
    log = ChangeLog(path)
    log.load_all()

    assert len(log) == 2
    found = log.find("a.txt")
    assert found is not None
    assert (found.status, found.mtime, found.size) == (FileStatus.CHANGED, 3, 30)
    assert [entry.path for entry in log] == ["a.txt", "b.txt"]


def test_load_all_reports_line_number_of_malformed_line(tmp_path: Path) -> None:
    path = tmp_path / "100 (a).log"
    _write_log(path, ["a.txt|CREATED|1|10|x", "garbage"])

    with pytest.raises(ChangeLogParseError, match="line 2"):
        ChangeLog(path).load_all()


def test_load_all_rejects_invalid_utf8(tmp_path: Path) -> None:
    path = tmp_path / "100 (a).log"
    path.write_bytes(b"\xff\xfe|CREATED|1|2|x\n")

    with pytest.raises(ChangeLogParseError):
        ChangeLog(path).load_all()


def test_load_all_missing_file_is_io_error(tmp_path: Path) -> None:
    with pytest.raises(ChangeLogIOError):
        ChangeLog(tmp_path / "missing.log").load_all()


def test_most_recent_for_picks_largest_timestamp(tmp_path: Path) -> None:
    for name in (
        "200 (2024-01-02 00-00-00).log",
        "1000 (2024-01-10 00-00-00).log",
        "300 (2024-01-03 00-00-00).log",
        "5000 (2024-02-01 00-00-00).zip",
        "notes.log",
    ):
        (tmp_path / name).write_text("", encoding="utf-8")

    newest = ChangeLog.most_recent_for(tmp_path)
    assert newest is not None
    assert newest.path.name == "1000 (2024-01-10 00-00-00).log"


def test_most_recent_for_without_logs(tmp_path: Path) -> None:
    assert ChangeLog.most_recent_for(tmp_path / "missing") is None
    (tmp_path / "100 (a).zip").write_text("", encoding="utf-8")
    assert ChangeLog.most_recent_for(tmp_path) is None
