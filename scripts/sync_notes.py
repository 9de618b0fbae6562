#!/usr/bin/env python3

# script:sync_notes.py

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
import signal
import sys
from pathlib import Path

# --- make repo root importable ---
REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))
# --------------------------------

from notesync.cli_paths import apply_path_overrides
from notesync.config import Config
from notesync.coordinator import DEFAULT_JOB, SyncCoordinator
from notesync.daemon import SyncDaemon
from notesync.errors import ExitCode
from notesync.logging_utils import attach_engine_logging, setup_logger


def _terminate(signum, _frame):
    # SIGTERM during a single run unwinds like Ctrl-C so the run records a crash marker.
    raise SystemExit(int(ExitCode.TRANSIENT_FAILURE))


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Synchronize map notes into the local SQLite store.")
    ap.add_argument("--daemon", action="store_true", help="Run continuously with a sleep between cycles.")
    ap.add_argument("--force-full-rebuild", action="store_true", help="Reload from the bulk dump even if base data exists.")
    ap.add_argument("--probe", action="store_true", help="Run-once: skip the fetch when a limit=1 probe shows no updates.")
    ap.add_argument("--interval", type=float, default=None, help="Daemon sleep interval in seconds (else config).")
    ap.add_argument("--max-cycles", type=int, default=None, help="Daemon: stop after N cycles.")
    ap.add_argument("--job", default=DEFAULT_JOB, help="Job name (lock and failure marker file names).")
    ap.add_argument("--db-dir", default=None, help="Override DB dir (expects notes.sqlite there).")
    ap.add_argument("--work-dir", default=None, help="Override scratch dir for downloaded payloads.")
    ap.add_argument("--lock-dir", default=None, help="Override lock/failure-marker dir.")
    ap.add_argument("--logs-dir", default=None, help="Override logs dir.")
    return ap


def main() -> int:
    args = build_parser().parse_args()

    try:
        apply_path_overrides(
            db_dir=args.db_dir,
            work_dir=args.work_dir,
            lock_dir=args.lock_dir,
            logs_dir=args.logs_dir,
            create_dirs=True,
        )
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return int(ExitCode.CONFIG_ERROR)

    cfg = Config(repo_root=REPO_ROOT)
    logger = setup_logger("sync_notes", cfg.logs_dir, level=cfg.log_level, to_console=cfg.log_to_console)
    attach_engine_logging(logger)

    logger.info("DB: %s", cfg.db_path)
    logger.info("Work dir: %s  Lock dir: %s", cfg.work_dir, cfg.lock_dir)
    logger.info("Feed: %s (max_notes=%d, parallel_threshold=%d, max_workers=%d)",
                cfg.api_url, cfg.max_notes, cfg.parallel_threshold, cfg.max_workers)

    coordinator = SyncCoordinator(cfg, job=args.job)

    if args.daemon:
        if args.force_full_rebuild:
            logger.error("--force-full-rebuild cannot be combined with --daemon")
            return int(ExitCode.CONFIG_ERROR)
        daemon = SyncDaemon(
            coordinator,
            interval_s=args.interval if args.interval is not None else cfg.daemon_sleep_s,
            max_consecutive_errors=cfg.daemon_max_consecutive_errors,
            shutdown_flag=cfg.lock_dir / f"{args.job}_shutdown",
        )
        daemon.install_signal_handlers()
        return daemon.run(max_cycles=args.max_cycles)

    signal.signal(signal.SIGTERM, _terminate)
    outcome = coordinator.run_once(force_full=args.force_full_rebuild, probe=args.probe)
    return int(outcome.exit_code)


if __name__ == "__main__":
    raise SystemExit(main())
