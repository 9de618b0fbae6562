#!/usr/bin/env python3

# script:clear_failure.py

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

# -*- coding: utf-8 -*-

from __future__ import annotations

import argparse
import sys
from pathlib import Path

# --- make repo root importable ---
REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))
# --------------------------------

from notesync.cli_paths import apply_path_overrides
from notesync.config import Config
from notesync.coordinator import DEFAULT_JOB
from notesync.lock import LockManager, clear_failure_marker, read_failure_marker
from notesync.logging_utils import setup_logger


def main() -> int:
    ap = argparse.ArgumentParser(description="Show or clear the failure marker left by a failed sync run.")
    ap.add_argument("--job", default=DEFAULT_JOB)
    ap.add_argument("--lock-dir", default=None, help="Override lock/failure-marker dir.")
    ap.add_argument("--logs-dir", default=None, help="Override logs dir.")
    ap.add_argument("--yes", action="store_true", help="Actually clear the marker (default: only show it).")
    args = ap.parse_args()

    apply_path_overrides(lock_dir=args.lock_dir, logs_dir=args.logs_dir)
    cfg = Config(repo_root=REPO_ROOT)
    logger = setup_logger("clear_failure", cfg.logs_dir, level=cfg.log_level, to_console=True)

    holder = LockManager(cfg.lock_dir).read(args.job)
    if holder is not None:
        logger.info("Lock held by pid=%d since %s (work dir %s)", holder.owner_pid, holder.acquired_at, holder.work_dir)

    marker = read_failure_marker(cfg.lock_dir, args.job)
    if marker is None:
        logger.info("No failure marker for job %s", args.job)
        return 0

    logger.info("Failure marker: kind=%s at=%s pid=%d", marker.kind, marker.created_at, marker.pid)
    logger.info("Message: %s", marker.message)
    if marker.work_dir:
        logger.info("Scratch dir of failed run: %s", marker.work_dir)

    if not args.yes:
        logger.info("Re-run with --yes to clear it")
        return 0

    clear_failure_marker(cfg.lock_dir, args.job)
    logger.info("Marker cleared; the next run will proceed")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
