#!/usr/bin/env python3

# script:reassign_countries.py

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
import tempfile
from pathlib import Path

# --- make repo root importable ---
REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))
# --------------------------------

from notesync import storage
from notesync.cli_paths import apply_path_overrides
from notesync.config import Config
from notesync.coordinator import DEFAULT_JOB
from notesync.countries import CountryAssigner
from notesync.errors import AlreadyRunning, ExitCode
from notesync.lock import LockManager
from notesync.logging_utils import attach_engine_logging, setup_logger
from notesync.persistence import reassign_countries


def main() -> int:
    ap = argparse.ArgumentParser(description="Re-assign note countries after boundary data changed.")
    ap.add_argument("--job", default=DEFAULT_JOB)
    ap.add_argument("--db-dir", default=None)
    ap.add_argument("--lock-dir", default=None)
    ap.add_argument("--logs-dir", default=None)
    args = ap.parse_args()

    apply_path_overrides(db_dir=args.db_dir, lock_dir=args.lock_dir, logs_dir=args.logs_dir)
    cfg = Config(repo_root=REPO_ROOT)
    logger = setup_logger("reassign_countries", cfg.logs_dir, level=cfg.log_level, to_console=cfg.log_to_console)
    attach_engine_logging(logger)

    locks = LockManager(cfg.lock_dir)
    with tempfile.TemporaryDirectory(prefix="reassign_") as tmp:
        try:
            lock = locks.acquire(args.job, Path(tmp))
        except AlreadyRunning as e:
            logger.error("%s", e)
            return int(e.exit_code)

        conn = storage.connect(cfg.db_path, timeout_s=cfg.commit_timeout_s)
        try:
            storage.ensure_schema(conn)
            assigner = CountryAssigner.from_connection(conn, tolerance_km=cfg.country_tolerance_km)
            if not len(assigner):
                logger.error("No country polygons loaded; nothing to assign against")
                return int(ExitCode.CONFIG_ERROR)
            changed = reassign_countries(conn, assigner)
            logger.info("Done: %d notes changed, lookup paths %s", changed, assigner.stats())
        finally:
            conn.close()
            locks.release(lock)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
