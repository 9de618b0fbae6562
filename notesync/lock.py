# notesync:lock.py

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

"""
Per-job lock files and failure markers.

<lock_dir>/<job>.lock is hard-linked into place fully written and holds one
"Key: value" line per field, so operators can `cat` it while a run is stuck:

    PID: 4711
    Process: sync_notes.py
    Started: 2025-03-01T10:00:00Z
    Temporary directory: /srv/notesync/data/work/notesync_abc123
    Main script: /srv/notesync/scripts/sync_notes.py

A lock whose owner process is gone, or whose temporary directory no longer
exists, is stale and gets reclaimed. A live owner is never pre-empted.

<lock_dir>/<job>_failed_execution is a JSON failure marker left by a run
that ended badly; the next run reads it to decide how careful to be.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import time
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

import psutil

from notesync.errors import MARKER_CRASH, MARKER_INTEGRITY, MARKER_TRANSIENT, AlreadyRunning
from notesync.timestamps import iso_utc, parse_iso_utc, utc_now

logger = logging.getLogger(__name__)

MARKER_KINDS = (MARKER_TRANSIENT, MARKER_CRASH, MARKER_INTEGRITY)

_FIELDS = (
    ("PID", "owner_pid"),
    ("Process", "process"),
    ("Started", "acquired_at"),
    ("Temporary directory", "work_dir"),
    ("Main script", "main_script"),
)

# A lock file that cannot be parsed is only treated as stale once it is older than this.
UNREADABLE_GRACE_S = 300.0


def pid_alive(pid: int) -> bool:
    if pid <= 0 or not psutil.pid_exists(pid):
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # Exists, owned by someone else.
        return True


@dataclass(frozen=True)
class LockRecord:
    owner_pid: int
    acquired_at: datetime
    work_dir: str
    process: str = ""
    main_script: str = ""

    def render(self) -> str:
        values = {
            "owner_pid": str(self.owner_pid),
            "process": self.process,
            "acquired_at": iso_utc(self.acquired_at),
            "work_dir": self.work_dir,
            "main_script": self.main_script,
        }
        return "".join(f"{label}: {values[attr]}\n" for label, attr in _FIELDS)

    @classmethod
    def parse(cls, text: str) -> "LockRecord":
        labels = dict(_FIELDS)
        values = {}
        for line in text.splitlines():
            if ":" not in line:
                continue
            label, value = line.split(":", 1)
            attr = labels.get(label.strip())
            if attr:
                values[attr] = value.strip()
        if "owner_pid" not in values or "work_dir" not in values:
            raise ValueError("lock file lacks PID or Temporary directory")
        return cls(
            owner_pid=int(values["owner_pid"]),
            acquired_at=parse_iso_utc(values.get("acquired_at") or iso_utc(utc_now())),
            work_dir=values["work_dir"],
            process=values.get("process", ""),
            main_script=values.get("main_script", ""),
        )


@dataclass
class Lock:
    job: str
    path: Path
    record: LockRecord
    # True when a stale lock from a dead run was taken over.
    reclaimed: bool = False
    released: bool = False


class LockManager:
    def __init__(
        self,
        lock_dir: Path,
        *,
        is_alive: Callable[[int], bool] = pid_alive,
        unreadable_grace_s: float = UNREADABLE_GRACE_S,
    ):
        self.lock_dir = Path(lock_dir)
        self._is_alive = is_alive
        self.unreadable_grace_s = unreadable_grace_s

    def lock_path(self, job: str) -> Path:
        return self.lock_dir / f"{job}.lock"

    def read(self, job: str) -> Optional[LockRecord]:
        p = self.lock_path(job)
        try:
            return LockRecord.parse(p.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None

    def is_stale(self, record: LockRecord) -> bool:
        if not self._is_alive(record.owner_pid):
            return True
        return not Path(record.work_dir).is_dir()

    def _create(self, path: Path, record: LockRecord) -> bool:
        # The record is written to a private file first and hard-linked into
        # place, so <job>.lock never exists half-written.
        tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        tmp.write_text(record.render(), encoding="utf-8")
        try:
            os.link(tmp, path)
        except FileExistsError:
            return False
        finally:
            tmp.unlink(missing_ok=True)
        return True

    def _unreadable_is_fresh(self, path: Path) -> bool:
        try:
            age = time.time() - path.stat().st_mtime
        except FileNotFoundError:
            return False
        return age < self.unreadable_grace_s

    def acquire(self, job: str, work_dir: Path) -> Lock:
        """
        Take the job lock or raise AlreadyRunning if a live owner holds it.
        A stale lock is removed and taken over; Lock.reclaimed tells the
        caller the previous run did not shut down cleanly.
        """
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        path = self.lock_path(job)
        record = LockRecord(
            owner_pid=os.getpid(),
            acquired_at=utc_now(),
            work_dir=str(work_dir),
            process=Path(sys.argv[0]).name if sys.argv and sys.argv[0] else "python",
            main_script=str(Path(sys.argv[0]).resolve()) if sys.argv and sys.argv[0] else "",
        )

        reclaimed = False
        for _ in range(2):
            if self._create(path, record):
                logger.info("Lock acquired: %s (pid=%d)", path, record.owner_pid)
                return Lock(job=job, path=path, record=record, reclaimed=reclaimed)

            try:
                holder = self.read(job)
            except ValueError as e:
                if self._unreadable_is_fresh(path):
                    logger.warning("Unreadable lock file %s (%s); assuming it is held", path, e)
                    raise AlreadyRunning(job) from e
                logger.warning("Unreadable lock file %s (%s); treating as stale", path, e)
                holder = None

            if holder is not None and not self.is_stale(holder):
                raise AlreadyRunning(job, holder.owner_pid, holder.work_dir)

            logger.warning(
                "Removing stale lock %s (pid=%s, work_dir=%s)",
                path,
                holder.owner_pid if holder else "?",
                holder.work_dir if holder else "?",
            )
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            reclaimed = True

        # Another process won the race for the freed lock.
        holder = self.read(job)
        raise AlreadyRunning(job, holder.owner_pid if holder else None, holder.work_dir if holder else None)

    def release(self, lock: Optional[Lock]) -> None:
        """Idempotent; only removes the file if it still belongs to this lock."""
        if lock is None or lock.released:
            return
        lock.released = True
        try:
            current = self.read(lock.job)
        except ValueError:
            current = None
        if current is not None and current.owner_pid != lock.record.owner_pid:
            logger.warning("Lock %s now owned by pid %d; leaving it", lock.path, current.owner_pid)
            return
        try:
            lock.path.unlink()
        except FileNotFoundError:
            return
        logger.info("Lock released: %s", lock.path)


@dataclass(frozen=True)
class FailureMarker:
    job: str
    kind: str
    message: str
    pid: int
    created_at: str
    work_dir: str = ""

    @property
    def blocking(self) -> bool:
        return self.kind == MARKER_INTEGRITY


def marker_path(lock_dir: Path, job: str) -> Path:
    return Path(lock_dir) / f"{job}_failed_execution"


def write_failure_marker(lock_dir: Path, job: str, kind: str, message: str, work_dir: str = "") -> FailureMarker:
    if kind not in MARKER_KINDS:
        raise ValueError(f"unknown failure marker kind: {kind!r}")
    marker = FailureMarker(
        job=job, kind=kind, message=message[:2000], pid=os.getpid(),
        created_at=iso_utc(utc_now()), work_dir=str(work_dir),
    )
    p = marker_path(lock_dir, job)
    p.parent.mkdir(parents=True, exist_ok=True)
    tmp = p.with_suffix(".tmp")
    tmp.write_text(json.dumps(asdict(marker), indent=2), encoding="utf-8")
    os.replace(tmp, p)
    logger.error("Failure marker written (%s): %s", kind, p)
    return marker


def read_failure_marker(lock_dir: Path, job: str) -> Optional[FailureMarker]:
    p = marker_path(lock_dir, job)
    try:
        raw = json.loads(p.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (json.JSONDecodeError, UnicodeDecodeError):
        # A marker nobody can read still means "something went wrong".
        return FailureMarker(job=job, kind=MARKER_CRASH, message="unreadable failure marker", pid=0, created_at="")
    return FailureMarker(
        job=job,
        kind=raw.get("kind") if raw.get("kind") in MARKER_KINDS else MARKER_CRASH,
        message=str(raw.get("message", "")),
        pid=int(raw.get("pid") or 0),
        created_at=str(raw.get("created_at", "")),
        work_dir=str(raw.get("work_dir", "")),
    )


def clear_failure_marker(lock_dir: Path, job: str) -> bool:
    p = marker_path(lock_dir, job)
    try:
        p.unlink()
    except FileNotFoundError:
        return False
    logger.info("Failure marker cleared: %s", p)
    return True
