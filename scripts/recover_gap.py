#!/usr/bin/env python3

# script:recover_gap.py

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

"""
Operator gap recovery.

Lists unresolved gaps, or moves the watermark back (the only way it ever
moves backwards) so the next run re-fetches the window. Holds the job lock
while rewinding, so it refuses to run next to a live sync.
"""

from __future__ import annotations

import argparse
import sys
import tempfile
from pathlib import Path

# --- make repo root importable ---
REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))
# --------------------------------

from notesync import storage
from notesync.cli_paths import apply_path_overrides
from notesync.config import Config
from notesync.coordinator import DEFAULT_JOB, SyncCoordinator
from notesync.errors import AlreadyRunning, ExitCode
from notesync.gaps import GapLedger
from notesync.lock import LockManager
from notesync.logging_utils import attach_engine_logging, setup_logger
from notesync.timestamps import iso_or_none, parse_iso_utc
from notesync.watermark import WatermarkStore


def main() -> int:
    ap = argparse.ArgumentParser(description="List gaps or rewind the sync watermark.")
    ap.add_argument("--job", default=DEFAULT_JOB)
    ap.add_argument("--list", action="store_true", help="List unresolved gaps and exit.")
    ap.add_argument("--rewind-to", default=None, help="ISO-8601 UTC timestamp to move the watermark back to.")
    ap.add_argument("--to-gap", type=int, default=None, help="Rewind to the start of this data_gaps id.")
    ap.add_argument("--run", action="store_true", help="Run one sync right after rewinding.")
    ap.add_argument("--db-dir", default=None)
    ap.add_argument("--lock-dir", default=None)
    ap.add_argument("--logs-dir", default=None)
    args = ap.parse_args()

    apply_path_overrides(db_dir=args.db_dir, lock_dir=args.lock_dir, logs_dir=args.logs_dir)
    cfg = Config(repo_root=REPO_ROOT)
    logger = setup_logger("recover_gap", cfg.logs_dir, level=cfg.log_level, to_console=True)
    attach_engine_logging(logger)

    conn = storage.connect(cfg.db_path, timeout_s=cfg.commit_timeout_s)
    try:
        storage.ensure_schema(conn)
        ledger = GapLedger(conn)
        gaps = ledger.unresolved()

        if args.list or (args.rewind_to is None and args.to_gap is None):
            if not gaps:
                logger.info("No unresolved gaps")
            for g in gaps:
                logger.info(
                    "gap id=%s type=%s range=%s..%s expected=%d fetched=%d notes=%d detected=%s",
                    g.gap_id, g.gap_type, iso_or_none(g.range_start), iso_or_none(g.range_end),
                    g.expected_count, g.fetched_count, len(g.note_ids), iso_or_none(g.detected_at),
                )
            return 0

        if args.to_gap is not None:
            match = [g for g in gaps if g.gap_id == args.to_gap]
            if not match or match[0].range_start is None:
                logger.error("No unresolved gap with id=%d and a start time", args.to_gap)
                return int(ExitCode.CONFIG_ERROR)
            target = match[0].range_start
        else:
            try:
                target = parse_iso_utc(args.rewind_to)
            except ValueError as e:
                logger.error("Bad --rewind-to: %s", e)
                return int(ExitCode.CONFIG_ERROR)

        locks = LockManager(cfg.lock_dir)
        with tempfile.TemporaryDirectory(prefix="recover_gap_") as tmp:
            try:
                lock = locks.acquire(args.job, Path(tmp))
            except AlreadyRunning as e:
                logger.error("%s", e)
                return int(e.exit_code)
            try:
                WatermarkStore().rewind(conn, target, reason="recover_gap.py")
            except ValueError as e:
                logger.error("%s", e)
                return int(ExitCode.CONFIG_ERROR)
            finally:
                locks.release(lock)
    finally:
        conn.close()

    if args.run:
        outcome = SyncCoordinator(cfg, job=args.job).run_once()
        return int(outcome.exit_code)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
