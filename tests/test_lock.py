from __future__ import annotations

import os
import time
from datetime import timedelta

import pytest

from conftest import T0
from notesync.errors import MARKER_CRASH, MARKER_INTEGRITY, MARKER_TRANSIENT, AlreadyRunning
from notesync.lock import (
    LockManager,
    LockRecord,
    clear_failure_marker,
    marker_path,
    read_failure_marker,
    write_failure_marker,
)


def _manager(tmp_path, alive=True):
    return LockManager(tmp_path / "locks", is_alive=lambda pid: alive)


def _plant(mgr, job, pid, work_dir):
    mgr.lock_dir.mkdir(parents=True, exist_ok=True)
    rec = LockRecord(owner_pid=pid, acquired_at=T0, work_dir=str(work_dir), process="sync_notes.py")
    mgr.lock_path(job).write_text(rec.render(), encoding="utf-8")


def test_lock_file_is_human_readable(tmp_path):
    mgr = _manager(tmp_path)
    lock = mgr.acquire("notes_sync", tmp_path)
    text = mgr.lock_path("notes_sync").read_text(encoding="utf-8")

    assert f"PID: {os.getpid()}" in text
    assert f"Temporary directory: {tmp_path}" in text
    assert not lock.reclaimed
    assert mgr.read("notes_sync").owner_pid == os.getpid()


def test_record_render_parse():
    rec = LockRecord(owner_pid=4711, acquired_at=T0 + timedelta(seconds=5), work_dir="/tmp/x", process="p", main_script="/s.py")
    assert LockRecord.parse(rec.render()) == rec
    with pytest.raises(ValueError):
        LockRecord.parse("garbage\n")


def test_live_owner_is_not_preempted(tmp_path):
    mgr = _manager(tmp_path, alive=True)
    _plant(mgr, "notes_sync", 999999, tmp_path)

    with pytest.raises(AlreadyRunning) as ei:
        mgr.acquire("notes_sync", tmp_path)
    assert ei.value.owner_pid == 999999
    assert mgr.read("notes_sync").owner_pid == 999999


def test_dead_owner_is_reclaimed(tmp_path):
    mgr = _manager(tmp_path, alive=False)
    _plant(mgr, "notes_sync", 999999, tmp_path)

    lock = mgr.acquire("notes_sync", tmp_path)
    assert lock.reclaimed
    assert mgr.read("notes_sync").owner_pid == os.getpid()


def test_missing_work_dir_makes_lock_stale(tmp_path):
    mgr = _manager(tmp_path, alive=True)
    _plant(mgr, "notes_sync", 999999, tmp_path / "gone")
    assert mgr.acquire("notes_sync", tmp_path).reclaimed


def test_fresh_unreadable_lock_is_held(tmp_path):
    # An owner that has only just created the file looks exactly like this.
    mgr = _manager(tmp_path)
    mgr.lock_dir.mkdir(parents=True)
    mgr.lock_path("notes_sync").write_text("", encoding="utf-8")

    with pytest.raises(AlreadyRunning):
        mgr.acquire("notes_sync", tmp_path)
    assert mgr.lock_path("notes_sync").read_text(encoding="utf-8") == ""


def test_old_unreadable_lock_is_reclaimed(tmp_path):
    mgr = _manager(tmp_path)
    mgr.lock_dir.mkdir(parents=True)
    p = mgr.lock_path("notes_sync")
    p.write_text("???", encoding="utf-8")
    old = time.time() - mgr.unreadable_grace_s - 60
    os.utime(p, (old, old))

    assert mgr.acquire("notes_sync", tmp_path).reclaimed


def test_lock_is_complete_when_it_appears(tmp_path, monkeypatch):
    mgr = _manager(tmp_path)
    seen = []
    real_link = os.link

    def link(src, dst):
        with open(src, encoding="utf-8") as f:
            seen.append(LockRecord.parse(f.read()))
        real_link(src, dst)

    monkeypatch.setattr(os, "link", link)
    mgr.acquire("notes_sync", tmp_path)

    assert [r.owner_pid for r in seen] == [os.getpid()]
    assert sorted(x.name for x in mgr.lock_dir.iterdir()) == ["notes_sync.lock"]


def test_losing_create_leaves_no_temp_files(tmp_path):
    mgr = _manager(tmp_path, alive=True)
    _plant(mgr, "notes_sync", 999999, tmp_path)

    with pytest.raises(AlreadyRunning):
        mgr.acquire("notes_sync", tmp_path)
    assert sorted(x.name for x in mgr.lock_dir.iterdir()) == ["notes_sync.lock"]


def test_release_is_idempotent(tmp_path):
    mgr = _manager(tmp_path)
    lock = mgr.acquire("notes_sync", tmp_path)
    mgr.release(lock)
    mgr.release(lock)
    mgr.release(None)
    assert not mgr.lock_path("notes_sync").exists()
    # free again
    mgr.release(mgr.acquire("notes_sync", tmp_path))


def test_release_leaves_foreign_lock(tmp_path):
    mgr = _manager(tmp_path)
    lock = mgr.acquire("notes_sync", tmp_path)
    mgr.lock_path("notes_sync").unlink()
    _plant(mgr, "notes_sync", 999999, tmp_path)
    mgr.release(lock)
    assert mgr.read("notes_sync").owner_pid == 999999


def test_jobs_lock_independently(tmp_path):
    mgr = _manager(tmp_path)
    a = mgr.acquire("notes_sync", tmp_path)
    b = mgr.acquire("reassign_countries", tmp_path)
    assert a.path != b.path


def test_failure_marker_lifecycle(tmp_path):
    lock_dir = tmp_path / "locks"
    assert read_failure_marker(lock_dir, "notes_sync") is None

    write_failure_marker(lock_dir, "notes_sync", MARKER_INTEGRITY, "flag mismatch", work_dir="/tmp/run")
    m = read_failure_marker(lock_dir, "notes_sync")
    assert m.kind == MARKER_INTEGRITY
    assert m.blocking
    assert m.work_dir == "/tmp/run"
    assert m.pid == os.getpid()

    assert clear_failure_marker(lock_dir, "notes_sync")
    assert not clear_failure_marker(lock_dir, "notes_sync")


def test_transient_marker_is_not_blocking(tmp_path):
    write_failure_marker(tmp_path, "j", MARKER_TRANSIENT, "timeout")
    assert not read_failure_marker(tmp_path, "j").blocking


def test_unreadable_marker_counts_as_crash(tmp_path):
    marker_path(tmp_path, "j").write_text("{not json", encoding="utf-8")
    assert read_failure_marker(tmp_path, "j").kind == MARKER_CRASH


def test_unknown_marker_kind_rejected(tmp_path):
    with pytest.raises(ValueError):
        write_failure_marker(tmp_path, "j", "meh", "x")
