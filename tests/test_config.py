from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from notesync.cli_paths import apply_path_overrides
from notesync.config import Config, default_max_workers
from notesync.timestamps import iso_utc, parse_iso_utc


@pytest.mark.parametrize("cores,expected", [(1, 1), (2, 1), (3, 2), (4, 3), (8, 6), (64, 16)])
def test_default_max_workers(cores, expected):
    assert default_max_workers(cores) == expected


def test_paths_default_under_repo_root(tmp_path, monkeypatch):
    for key in ("NOTESYNC_DB", "NOTESYNC_WORK_DIR", "NOTESYNC_LOCK_DIR", "NOTESYNC_LOGS_DIR"):
        monkeypatch.delenv(key, raising=False)
    cfg = Config(repo_root=tmp_path)
    assert cfg.db_path == (tmp_path / "data" / "db" / "notes.sqlite").resolve()
    assert cfg.lock_dir == (tmp_path / "data" / "locks").resolve()


def test_path_overrides_feed_config(tmp_path, monkeypatch):
    # placeholders so monkeypatch restores the real environment afterwards
    for key in ("NOTESYNC_DB", "NOTESYNC_WORK_DIR", "NOTESYNC_LOCK_DIR", "NOTESYNC_LOGS_DIR"):
        monkeypatch.setenv(key, str(tmp_path / "unused"))
    apply_path_overrides(db_dir=str(tmp_path / "db"), lock_dir=str(tmp_path / "l"), create_dirs=True)

    cfg = Config(repo_root=Path("/nonexistent"))
    assert cfg.db_path == (tmp_path / "db" / "notes.sqlite").resolve()
    assert cfg.lock_dir == (tmp_path / "l").resolve()
    assert cfg.lock_dir.is_dir()


def test_override_must_be_directory(tmp_path):
    f = tmp_path / "file"
    f.write_text("x", encoding="utf-8")
    with pytest.raises(ValueError):
        apply_path_overrides(work_dir=str(f))


def test_explicit_paths_win(tmp_path, monkeypatch):
    monkeypatch.setenv("NOTESYNC_DB", str(tmp_path / "env.sqlite"))
    cfg = Config(repo_root=tmp_path, db_path=tmp_path / "explicit.sqlite")
    assert cfg.db_path == tmp_path / "explicit.sqlite"


@pytest.mark.parametrize(
    "raw",
    ["2025-03-01 08:00:00 UTC", "2025-03-01T08:00:00Z", "2025-03-01T09:00:00+01:00", "2025-03-01T08:00:00"],
)
def test_timestamp_formats(raw):
    assert parse_iso_utc(raw) == datetime(2025, 3, 1, 8, 0, tzinfo=timezone.utc)


def test_iso_rendering():
    assert iso_utc(datetime(2025, 3, 1, 8, 0, 0, 123456, tzinfo=timezone.utc)) == "2025-03-01T08:00:00Z"
    with pytest.raises(ValueError):
        parse_iso_utc("")
