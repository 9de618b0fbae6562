# notesync:config.py

# MIT License
#
# Copyright (c) 2025 Jonas Waldeck
#
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in all
# copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND.

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os


def default_max_workers(cpu_count: int | None = None) -> int:
    """Leave headroom on bigger hosts, never exceed 16 workers."""
    cores = cpu_count if cpu_count is not None else (os.cpu_count() or 1)
    if cores > 4:
        n = cores - 2
    elif cores > 2:
        n = cores - 1
    else:
        n = 1
    return max(1, min(16, n))


def _flag(env_key: str, default: str) -> bool:
    return os.getenv(env_key, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Config:
    repo_root: Path

    api_url: str = os.getenv("NOTESYNC_API_URL", "https://api.openstreetmap.org/api/0.6").strip()
    planet_url: str = os.getenv(
        "NOTESYNC_PLANET_URL",
        "https://planet.openstreetmap.org/notes/planet-notes-latest.osn.bz2",
    ).strip()
    user_agent: str = os.getenv("NOTESYNC_USER_AGENT", "notesync/0.3 (+https://github.com/waldeck-lab)").strip()

    # Incremental ceiling; a delta at or above this escalates to a full load.
    max_notes: int = int(os.getenv("NOTESYNC_MAX_NOTES", "10000"))
    parallel_threshold: int = int(os.getenv("NOTESYNC_PARALLEL_THRESHOLD", "10"))
    max_workers: int = int(os.getenv("NOTESYNC_MAX_WORKERS", str(default_max_workers())))
    max_batch_notes: int = int(os.getenv("NOTESYNC_MAX_BATCH_NOTES", "1000"))
    full_chunk_notes: int = int(os.getenv("NOTESYNC_FULL_CHUNK_NOTES", "50000"))

    fetch_retries: int = int(os.getenv("NOTESYNC_FETCH_RETRIES", "3"))
    backoff_base_s: float = float(os.getenv("NOTESYNC_BACKOFF_BASE_S", "2"))
    backoff_max_s: float = float(os.getenv("NOTESYNC_BACKOFF_MAX_S", "60"))
    http_timeout_s: int = int(os.getenv("NOTESYNC_HTTP_TIMEOUT_S", "120"))
    commit_timeout_s: float = float(os.getenv("NOTESYNC_COMMIT_TIMEOUT_S", "30"))

    daemon_sleep_s: float = float(os.getenv("NOTESYNC_DAEMON_SLEEP_S", "60"))
    daemon_max_consecutive_errors: int = int(os.getenv("NOTESYNC_DAEMON_MAX_ERRORS", "5"))

    max_backfill_depth: int = int(os.getenv("NOTESYNC_MAX_BACKFILL_DEPTH", "2"))
    orphan_window_days: int = int(os.getenv("NOTESYNC_ORPHAN_WINDOW_DAYS", "7"))
    integrity_gap_ratio: float = float(os.getenv("NOTESYNC_INTEGRITY_GAP_RATIO", "0.05"))
    integrity_min_notes: int = int(os.getenv("NOTESYNC_INTEGRITY_MIN_NOTES", "10"))
    country_tolerance_km: float = float(os.getenv("NOTESYNC_COUNTRY_TOLERANCE_KM", "2.0"))

    log_level: str = os.getenv("NOTESYNC_LOG_LEVEL", "INFO").strip().upper()
    log_to_console: bool = _flag("NOTESYNC_LOG_CONSOLE", "1")

    db_path: Path = None    # type: ignore[assignment]
    work_dir: Path = None   # type: ignore[assignment]
    lock_dir: Path = None   # type: ignore[assignment]
    logs_dir: Path = None   # type: ignore[assignment]

    def __post_init__(self) -> None:
        def _p(env_key: str, default_rel: Path) -> Path:
            raw = os.getenv(env_key, str(default_rel))
            return Path(raw).expanduser().resolve()

        # Explicit constructor arguments win over the environment.
        if self.db_path is None:
            object.__setattr__(self, "db_path", _p("NOTESYNC_DB", self.repo_root / "data" / "db" / "notes.sqlite"))
        if self.work_dir is None:
            object.__setattr__(self, "work_dir", _p("NOTESYNC_WORK_DIR", self.repo_root / "data" / "work"))
        if self.lock_dir is None:
            object.__setattr__(self, "lock_dir", _p("NOTESYNC_LOCK_DIR", self.repo_root / "data" / "locks"))
        if self.logs_dir is None:
            object.__setattr__(self, "logs_dir", _p("NOTESYNC_LOGS_DIR", self.repo_root / "logs"))
