from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Mapping, cast

import pytest

from backer_engine.errors import TargetLockError
from backer_engine.target_lock import acquire_target_lock, build_target_lock_path, is_pid_running


def _write_raw(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def _load_json(path: Path) -> Mapping[str, Any]:
    return cast(Mapping[str, Any], json.loads(path.read_text(encoding="utf-8")))


def _foreign_lock(pid: int = 1234) -> str:
    payload: dict[str, Any] = {
        "format": "backer-upper-lock/1",
        "target": "/backups",
        "acquired_at": "2026-01-01T00:00:00Z",
        "host": "HOST",
        "pid": pid,
        "command": "backup",
    }
    return json.dumps(payload) + "\n"


def test_acquire_target_lock_creates_and_releases_lock(tmp_path: Path) -> None:
    target = tmp_path / "target"
    lock_path = build_target_lock_path(target)
    assert not lock_path.exists()

    with acquire_target_lock(target_root=target, command="backup") as held:
        assert held == lock_path
        payload = _load_json(lock_path)
        assert payload["command"] == "backup"
        assert payload["format"] == "backer-upper-lock/1"
        assert payload["target"] == str(target)

    assert not lock_path.exists()


def test_lock_is_released_when_the_body_raises(tmp_path: Path) -> None:
    target = tmp_path / "target"

    with pytest.raises(KeyError):
        with acquire_target_lock(target_root=target, command="backup"):
            raise KeyError("boom")

    assert not build_target_lock_path(target).exists()


def test_existing_unreadable_lock_blocks_without_break_lock(tmp_path: Path) -> None:
    lock_path = build_target_lock_path(tmp_path)
    _write_raw(lock_path, "not json\n")

    with pytest.raises(TargetLockError) as excinfo:
        with acquire_target_lock(target_root=tmp_path, command="backup"):
            raise AssertionError("unreachable")

    assert "could not be read" in str(excinfo.value)
    assert lock_path.exists()


def test_existing_unreadable_lock_can_be_broken_with_break_lock(tmp_path: Path) -> None:
    lock_path = build_target_lock_path(tmp_path)
    _write_raw(lock_path, "not json\n")

    with acquire_target_lock(target_root=tmp_path, command="backup", break_lock=True):
        assert lock_path.exists()

    assert not lock_path.exists()


def test_provably_stale_lock_requires_force_unless_break_lock(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr("backer_engine.target_lock.platform.node", lambda: "HOST")
    monkeypatch.setattr("backer_engine.target_lock.is_pid_running", lambda _pid: False)

    lock_path = build_target_lock_path(tmp_path)
    _write_raw(lock_path, _foreign_lock())

    with pytest.raises(TargetLockError) as excinfo:
        with acquire_target_lock(target_root=tmp_path, command="backup"):
            raise AssertionError("unreachable")

    assert "Re-run with --force" in str(excinfo.value)

    with acquire_target_lock(target_root=tmp_path, command="backup", force=True):
        assert lock_path.exists()

    assert not lock_path.exists()


def test_not_provably_stale_lock_blocks_without_break_lock(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr("backer_engine.target_lock.platform.node", lambda: "HOST")
    monkeypatch.setattr("backer_engine.target_lock.is_pid_running", lambda _pid: None)

    lock_path = build_target_lock_path(tmp_path)
    _write_raw(lock_path, _foreign_lock())

    with pytest.raises(TargetLockError) as excinfo:
        with acquire_target_lock(target_root=tmp_path, command="backup", force=True):
            raise AssertionError("unreachable")

    msg = str(excinfo.value)
    assert "not provably stale" in msg
    assert "--break-lock" in msg
    assert "pid=1234" in msg

    with acquire_target_lock(target_root=tmp_path, command="backup", break_lock=True):
        assert _load_json(lock_path)["host"] == "HOST"

    assert not lock_path.exists()


def test_lock_from_another_host_is_never_provably_stale(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr("backer_engine.target_lock.platform.node", lambda: "OTHER")
    monkeypatch.setattr("backer_engine.target_lock.is_pid_running", lambda _pid: False)

    _write_raw(build_target_lock_path(tmp_path), _foreign_lock())

    with pytest.raises(TargetLockError, match="not provably stale"):
        with acquire_target_lock(target_root=tmp_path, command="backup", force=True):
            raise AssertionError("unreachable")


def test_release_leaves_a_lock_taken_over_by_another_owner(tmp_path: Path) -> None:
    lock_path = build_target_lock_path(tmp_path)

    with acquire_target_lock(target_root=tmp_path, command="backup"):
        lock_path.write_text(_foreign_lock(pid=999_999), encoding="utf-8")

    assert lock_path.exists()


@pytest.mark.skipif(os.name == "nt", reason="process probing is indeterminate on Windows")
def test_is_pid_running_for_this_process() -> None:
    assert is_pid_running(os.getpid()) is True
    assert is_pid_running(0) is None
