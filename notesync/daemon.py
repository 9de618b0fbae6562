# notesync:daemon.py

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

import logging
import signal
import threading
import time
from pathlib import Path
from typing import Callable, Optional

from notesync.coordinator import RunOutcome, SyncCoordinator
from notesync.errors import ExitCode

logger = logging.getLogger(__name__)

# Exit codes that do not count as a failed cycle.
_QUIET_CODES = (ExitCode.OK, ExitCode.NOTHING_TO_DO, ExitCode.ALREADY_RUNNING)


class SyncDaemon:
    """
    Repeats coordinator runs with a sleep between cycles.

    After a productive cycle the sleep is shortened by the time the cycle
    took; otherwise the full interval is used. The loop stops on SIGTERM or
    SIGINT, when the shutdown flag file appears, on an integrity failure, or
    after too many consecutive failed cycles.
    """

    def __init__(
        self,
        coordinator: SyncCoordinator,
        *,
        interval_s: float,
        max_consecutive_errors: int = 5,
        shutdown_flag: Optional[Path] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.coordinator = coordinator
        self.interval_s = float(interval_s)
        self.max_consecutive_errors = max(1, int(max_consecutive_errors))
        self.shutdown_flag = shutdown_flag
        self._clock = clock
        self._stop = threading.Event()
        self.cycles = 0

    def request_stop(self, signum: Optional[int] = None, _frame=None) -> None:
        if signum is not None:
            logger.info("Received signal %d; stopping after the current cycle", signum)
        self._stop.set()

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGTERM, self.request_stop)
        signal.signal(signal.SIGINT, self.request_stop)

    def _shutdown_requested(self) -> bool:
        if self._stop.is_set():
            return True
        if self.shutdown_flag is not None and self.shutdown_flag.exists():
            logger.info("Shutdown flag %s found", self.shutdown_flag)
            try:
                self.shutdown_flag.unlink()
            except FileNotFoundError:
                pass
            self._stop.set()
            return True
        return False

    def next_sleep(self, outcome: RunOutcome, elapsed_s: float) -> float:
        if outcome.exit_code == ExitCode.OK:
            return max(0.0, self.interval_s - elapsed_s)
        return self.interval_s

    def run(self, max_cycles: Optional[int] = None) -> int:
        consecutive_errors = 0
        last_code = ExitCode.OK
        logger.info("Daemon started: interval=%.0fs max_consecutive_errors=%d", self.interval_s, self.max_consecutive_errors)

        while not self._shutdown_requested():
            t0 = self._clock()
            outcome = self.coordinator.run_once(probe=True)
            elapsed = self._clock() - t0
            self.cycles += 1
            last_code = outcome.exit_code

            if outcome.exit_code == ExitCode.INTEGRITY_FAILURE:
                logger.error("Integrity failure; daemon stops until an operator intervenes")
                return int(outcome.exit_code)

            if outcome.exit_code in _QUIET_CODES:
                consecutive_errors = 0
            else:
                consecutive_errors += 1
                logger.warning("Cycle failed (%d/%d consecutive)", consecutive_errors, self.max_consecutive_errors)
                if consecutive_errors >= self.max_consecutive_errors:
                    logger.error("Too many consecutive failures; daemon exits")
                    return int(outcome.exit_code)

            if max_cycles is not None and self.cycles >= max_cycles:
                break

            delay = self.next_sleep(outcome, elapsed)
            logger.info("Cycle %d done (exit=%d) in %.1fs; sleeping %.1fs", self.cycles, int(outcome.exit_code), elapsed, delay)
            if self._stop.wait(delay):
                break

        logger.info("Daemon stopped after %d cycle(s)", self.cycles)
        return int(ExitCode.OK) if last_code in _QUIET_CODES else int(last_code)
