# notesync:errors.py

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
Error taxonomy for the sync engine.

Every error carries the exit code a wrapper script should return and the
kind of failure marker (if any) the coordinator leaves behind for the next
run. Transient errors are retried inside the fetcher first; what reaches
the coordinator ends the current run without moving the watermark.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Any, Optional, Sequence


class ExitCode(IntEnum):
    OK = 0
    CONFIG_ERROR = 2
    NOTHING_TO_DO = 3
    ALREADY_RUNNING = 4
    INTEGRITY_FAILURE = 70
    TRANSIENT_FAILURE = 75


MARKER_TRANSIENT = "transient"
MARKER_CRASH = "crash"
MARKER_INTEGRITY = "integrity"


class SyncError(Exception):
    exit_code: ExitCode = ExitCode.TRANSIENT_FAILURE
    marker_kind: Optional[str] = MARKER_CRASH


class AlreadyRunning(SyncError):
    """A live process holds the job lock. Skip this tick."""

    exit_code = ExitCode.ALREADY_RUNNING
    marker_kind = None

    def __init__(self, job: str, owner_pid: Optional[int] = None, work_dir: Optional[str] = None):
        self.job = job
        self.owner_pid = owner_pid
        self.work_dir = work_dir
        super().__init__(f"job {job!r} already running (pid={owner_pid}, work_dir={work_dir})")


class TransientNetworkError(SyncError):
    marker_kind = MARKER_TRANSIENT

    def __init__(self, message: str, *, url: str = "", status: Optional[int] = None, retryable: bool = True):
        self.url = url
        self.status = status
        self.retryable = retryable
        super().__init__(message)


class ChecksumMismatch(SyncError):
    marker_kind = MARKER_CRASH

    def __init__(self, path: Any, expected: str, actual: str):
        self.path = path
        self.expected = expected
        self.actual = actual
        super().__init__(f"checksum mismatch for {path}: expected {expected}, got {actual}")


class MalformedPayload(SyncError):
    marker_kind = MARKER_CRASH


class GapDetected(SyncError):
    marker_kind = MARKER_TRANSIENT

    def __init__(self, gaps: Sequence[Any]):
        self.gaps = list(gaps)
        super().__init__(f"{len(self.gaps)} unresolved gap(s) after backfill")


class BatchCommitError(SyncError):
    marker_kind = MARKER_CRASH

    def __init__(self, failures: Sequence[Any]):
        self.failures = list(failures)
        super().__init__(f"{len(self.failures)} batch(es) failed to commit")


class IntegrityViolation(SyncError):
    """Data and integrity flag disagree. The watermark stays frozen until an operator looks."""

    exit_code = ExitCode.INTEGRITY_FAILURE
    marker_kind = MARKER_INTEGRITY


class PreviousRunFailed(SyncError):
    exit_code = ExitCode.INTEGRITY_FAILURE
    # The blocking marker is already on disk; leave it untouched.
    marker_kind = None
