# notesync:coordinator.py

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
Run-once orchestration of a sync job.

    Idle -> CheckBaseData -> {RunFull | RunIncremental} -> Persisting -> GapCheck -> Done
                                                                       (Failed from anywhere)

The watermark is read from the store whenever it is needed and only moves
in GapCheck, after every batch of the run committed and every detected
gap was backfilled. The job lock is released on every exit path.
"""

from __future__ import annotations

import itertools
import logging
import shutil
import sqlite3
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional, Sequence, Tuple

from notesync import storage
from notesync.config import Config
from notesync.countries import CountryAssigner
from notesync.dispatcher import CommitFn, DispatchResult, select_strategy
from notesync.errors import (
    MARKER_CRASH,
    MARKER_TRANSIENT,
    AlreadyRunning,
    BatchCommitError,
    ExitCode,
    GapDetected,
    IntegrityViolation,
    PreviousRunFailed,
    SyncError,
    TransientNetworkError,
)
from notesync.feed_client import NotesFeedClient
from notesync.gaps import GAP_COUNT, GAP_ORPHANS, GAP_WATERMARK, GapDetector, GapLedger
from notesync.lock import Lock, LockManager, clear_failure_marker, read_failure_marker, write_failure_marker
from notesync.models import GapRecord, NoteBundle
from notesync.parser import iter_planet_notes, parse_payload, scan_planet
from notesync.persistence import BatchCommitter, notes_without_comments
from notesync.timestamps import iso_or_none
from notesync.watermark import CommitToken, WatermarkStore

logger = logging.getLogger(__name__)

DEFAULT_JOB = "notes_sync"

MODE_FULL = "full"
MODE_INCREMENTAL = "incremental"


class SyncState(str, Enum):
    IDLE = "Idle"
    CHECK_BASE_DATA = "CheckBaseData"
    RUN_FULL = "RunFull"
    RUN_INCREMENTAL = "RunIncremental"
    PERSISTING = "Persisting"
    GAP_CHECK = "GapCheck"
    DONE = "Done"
    FAILED = "Failed"


@dataclass
class RunOutcome:
    state: SyncState = SyncState.IDLE
    exit_code: ExitCode = ExitCode.OK
    mode: Optional[str] = None
    escalated: bool = False
    reported_total: int = 0
    fetched_notes: int = 0
    strategy: Optional[str] = None
    watermark_before: Optional[datetime] = None
    watermark_after: Optional[datetime] = None
    gaps: List[GapRecord] = field(default_factory=list)
    transitions: List[SyncState] = field(default_factory=list)
    error: Optional[BaseException] = None
    seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.state == SyncState.DONE


def _chunks(items: Iterable[NoteBundle], size: int) -> Iterator[List[NoteBundle]]:
    it = iter(items)
    while True:
        chunk = list(itertools.islice(it, max(1, size)))
        if not chunk:
            return
        yield chunk


class SyncCoordinator:
    def __init__(
        self,
        cfg: Config,
        *,
        feed=None,
        locks: Optional[LockManager] = None,
        watermarks: Optional[WatermarkStore] = None,
        detector: Optional[GapDetector] = None,
        committer_factory: Optional[Callable[[CountryAssigner], CommitFn]] = None,
        job: str = DEFAULT_JOB,
        memory_percent: Optional[float] = None,
    ):
        self.cfg = cfg
        self.feed = feed if feed is not None else NotesFeedClient(cfg)
        self.locks = locks or LockManager(cfg.lock_dir)
        self.watermarks = watermarks or WatermarkStore()
        self.detector = detector or GapDetector()
        self.committer_factory = committer_factory or self._default_committer
        self.job = job
        # Fixed value for tests; None means ask psutil each dispatch.
        self.memory_percent = memory_percent

    def _default_committer(self, assigner: CountryAssigner) -> CommitFn:
        return BatchCommitter(
            self.cfg.db_path,
            assigner,
            timeout_s=self.cfg.commit_timeout_s,
            gap_ratio=self.cfg.integrity_gap_ratio,
            min_notes=self.cfg.integrity_min_notes,
        )

    # --- state bookkeeping -------------------------------------------------

    def _enter(self, outcome: RunOutcome, state: SyncState) -> None:
        outcome.state = state
        outcome.transitions.append(state)
        logger.info("State -> %s", state.value)

    def _fail(self, outcome: RunOutcome, err: BaseException, run_dir: Path) -> None:
        failed_in = outcome.state
        self._enter(outcome, SyncState.FAILED)
        outcome.error = err

        if isinstance(err, SyncError):
            outcome.exit_code = err.exit_code
            kind = err.marker_kind
        else:
            outcome.exit_code = ExitCode.TRANSIENT_FAILURE
            kind = MARKER_CRASH

        logger.error("Run failed in %s: %s: %s", failed_in.value, type(err).__name__, err)
        if kind:
            write_failure_marker(self.cfg.lock_dir, self.job, kind, f"{type(err).__name__}: {err}", str(run_dir))

    # --- entry point -------------------------------------------------------

    def run_once(self, *, force_full: bool = False, probe: bool = False) -> RunOutcome:
        """
        One complete sync run. probe=True first asks the feed (limit=1)
        whether anything changed and ends early with NOTHING_TO_DO if not.
        """
        outcome = RunOutcome()
        t0 = time.monotonic()
        self._enter(outcome, SyncState.IDLE)

        self.cfg.work_dir.mkdir(parents=True, exist_ok=True)
        run_dir = Path(tempfile.mkdtemp(prefix=f"{self.job}_", dir=str(self.cfg.work_dir)))

        try:
            lock = self.locks.acquire(self.job, run_dir)
        except AlreadyRunning as e:
            shutil.rmtree(run_dir, ignore_errors=True)
            logger.warning("Skipping run: %s", e)
            outcome.error = e
            outcome.exit_code = e.exit_code
            return outcome

        conn: Optional[sqlite3.Connection] = None
        keep_run_dir = False
        try:
            crash_recovery = self._check_failure_marker(lock)
            conn = storage.connect(self.cfg.db_path, timeout_s=self.cfg.commit_timeout_s)
            self._run(conn, run_dir, outcome, force_full=force_full, crash_recovery=crash_recovery, probe=probe)
        except SyncError as e:
            keep_run_dir = not isinstance(e, PreviousRunFailed)
            self._fail(outcome, e, run_dir)
        except Exception as e:
            keep_run_dir = True
            logger.exception("Unexpected failure: %s", e)
            self._fail(outcome, e, run_dir)
        except (KeyboardInterrupt, SystemExit) as e:
            # Interrupted mid-run: the next run must treat this one as crashed.
            keep_run_dir = True
            self._fail(outcome, e, run_dir)
            raise
        finally:
            if conn is not None:
                conn.close()
            self.locks.release(lock)
            if keep_run_dir:
                logger.info("Keeping scratch dir %s for inspection", run_dir)
            else:
                shutil.rmtree(run_dir, ignore_errors=True)

        outcome.seconds = time.monotonic() - t0
        logger.info(
            "Run finished: state=%s exit=%d mode=%s fetched=%d watermark %s -> %s (%.1fs)",
            outcome.state.value, int(outcome.exit_code), outcome.mode, outcome.fetched_notes,
            iso_or_none(outcome.watermark_before), iso_or_none(outcome.watermark_after), outcome.seconds,
        )
        return outcome

    def _check_failure_marker(self, lock: Lock) -> bool:
        """
        Decide how the previous run ended. Returns True when crash-recovery
        safety checks should run; raises when this run must not proceed.
        """
        marker = read_failure_marker(self.cfg.lock_dir, self.job)
        if marker is None:
            if lock.reclaimed:
                logger.warning("Previous run left a stale lock without a failure marker; running safety checks")
            return lock.reclaimed

        if marker.blocking:
            raise PreviousRunFailed(
                f"previous run hit an integrity failure at {marker.created_at}: {marker.message}. "
                "Inspect the store, then clear the marker with scripts/clear_failure.py"
            )

        if marker.kind == MARKER_TRANSIENT:
            if not self.feed.check_connectivity():
                raise TransientNetworkError("feed still unreachable; previous transient failure not cleared")
            logger.info("Connectivity restored; clearing transient failure marker (%s)", marker.message)
            clear_failure_marker(self.cfg.lock_dir, self.job)
            return lock.reclaimed

        logger.warning("Previous run crashed at %s (%s); running safety checks", marker.created_at, marker.message)
        clear_failure_marker(self.cfg.lock_dir, self.job)
        return True

    def _run(
        self,
        conn: sqlite3.Connection,
        run_dir: Path,
        outcome: RunOutcome,
        *,
        force_full: bool,
        crash_recovery: bool,
        probe: bool,
    ) -> None:
        self._enter(outcome, SyncState.CHECK_BASE_DATA)
        base = storage.check_base_data(conn)
        storage.ensure_schema(conn)
        storage.log_db_status(conn, logger)

        assigner = CountryAssigner.from_connection(conn, tolerance_km=self.cfg.country_tolerance_km)
        outcome.watermark_before = self.watermarks.read(conn)

        if force_full or base != storage.BaseDataState.READY:
            logger.info("Full rebuild: %s", "forced" if force_full else f"base data {base.value}")
            self._run_full(conn, assigner, run_dir, outcome)
        else:
            if crash_recovery:
                self._recover_orphans(conn, assigner, run_dir)
            self._run_incremental(conn, assigner, run_dir, outcome, probe=probe)

        outcome.watermark_after = self.watermarks.read(conn)
        self._enter(outcome, SyncState.DONE)

    # --- modes -------------------------------------------------------------

    def _run_incremental(
        self,
        conn: sqlite3.Connection,
        assigner: CountryAssigner,
        run_dir: Path,
        outcome: RunOutcome,
        *,
        probe: bool,
    ) -> None:
        self._enter(outcome, SyncState.RUN_INCREMENTAL)
        outcome.mode = MODE_INCREMENTAL
        since = self.watermarks.read(conn)

        if probe and not self.feed.has_updates(since):
            logger.info("No updates since %s", iso_or_none(since))
            outcome.exit_code = ExitCode.NOTHING_TO_DO
            return

        payload = self.feed.fetch_incremental(since, run_dir)
        outcome.reported_total = payload.reported_total

        if payload.reported_total >= self.cfg.max_notes:
            logger.warning(
                "Delta of %d notes reaches the incremental ceiling (%d); escalating to full rebuild",
                payload.reported_total, self.cfg.max_notes,
            )
            outcome.escalated = True
            self._run_full(conn, assigner, run_dir, outcome)
            return

        parsed = parse_payload(payload.path)
        outcome.fetched_notes = len(parsed)
        if not parsed.bundles and payload.reported_total <= 0:
            logger.info("Empty delta since %s", iso_or_none(since))
            outcome.exit_code = ExitCode.NOTHING_TO_DO
            return

        self._enter(outcome, SyncState.PERSISTING)
        result = self._dispatch(parsed.bundles, assigner, outcome)

        self._enter(outcome, SyncState.GAP_CHECK)
        tokens = self._settle(
            conn, assigner, run_dir, outcome, result.tokens,
            reported_total=payload.reported_total,
            fetched=parsed.delivered,
            since=since,
            window_end=payload.window_end,
        )
        if not any(t.recorded for t in tokens):
            logger.info("Delta since %s re-delivered stored events only", iso_or_none(since))
            outcome.exit_code = ExitCode.NOTHING_TO_DO

    def _run_full(self, conn: sqlite3.Connection, assigner: CountryAssigner, run_dir: Path, outcome: RunOutcome) -> None:
        self._enter(outcome, SyncState.RUN_FULL)
        outcome.mode = MODE_FULL
        since = self.watermarks.read(conn)

        payload = self.feed.fetch_full(run_dir)
        expected = scan_planet(payload.path)
        outcome.reported_total = expected

        self._enter(outcome, SyncState.PERSISTING)
        tokens: List[CommitToken] = []
        processed = 0
        for chunk in _chunks(iter_planet_notes(payload.path), self.cfg.full_chunk_notes):
            result = self._dispatch(chunk, assigner, outcome)
            tokens.extend(result.tokens)
            processed += len(chunk)
            logger.info("Full load progress: %d/%d notes", processed, expected)
        outcome.fetched_notes = processed

        self._enter(outcome, SyncState.GAP_CHECK)
        self._settle(
            conn, assigner, run_dir, outcome, tokens,
            reported_total=expected,
            fetched=processed,
            since=since,
            window_end=payload.window_end,
        )

    # --- persisting --------------------------------------------------------

    def _dispatch(self, bundles: Sequence[NoteBundle], assigner: CountryAssigner, outcome: Optional[RunOutcome] = None) -> DispatchResult:
        strategy = select_strategy(
            len(bundles),
            self.cfg.parallel_threshold,
            self.committer_factory(assigner),
            max_workers=self.cfg.max_workers,
            max_batch_notes=self.cfg.max_batch_notes,
            memory_percent=self.memory_percent,
        )
        if outcome is not None:
            outcome.strategy = strategy.name
        logger.info("Dispatching %d notes via %s strategy", len(bundles), strategy.name)
        result = strategy.dispatch(bundles)

        if not result.ok:
            for b in result.failed:
                if isinstance(b.error, IntegrityViolation):
                    raise b.error
            raise BatchCommitError(result.failed + result.skipped)
        return result

    # --- gap check and watermark -------------------------------------------

    def _settle(
        self,
        conn: sqlite3.Connection,
        assigner: CountryAssigner,
        run_dir: Path,
        outcome: RunOutcome,
        tokens: List[CommitToken],
        *,
        reported_total: int,
        fetched: int,
        since: Optional[datetime],
        window_end: Optional[datetime],
    ) -> List[CommitToken]:
        """
        Backfill detected gaps, then advance the watermark and confirm it
        moved. Returns every token the watermark was advanced over.
        """
        ledger = GapLedger(conn)
        gaps = self.detector.detect(reported_total, fetched, since, None, window_end=window_end)
        gaps = [ledger.record(g) for g in gaps]

        unresolved, extra = self._backfill(conn, assigner, run_dir, gaps, depth=1)
        tokens = tokens + extra
        if unresolved:
            outcome.gaps = unresolved
            raise GapDetected(unresolved)

        events = [t.max_event_utc for t in tokens if t.max_event_utc is not None]
        expected = max(events) if events else None

        after = self.watermarks.advance(conn, tokens)
        stalled = self.detector.detect(0, 0, since, after, expected_after=expected)
        if stalled:
            stalled = [ledger.record(g) for g in stalled]
            unresolved, _ = self._backfill(conn, assigner, run_dir, stalled, depth=1, tokens=tokens)
            if unresolved:
                outcome.gaps = unresolved
                raise GapDetected(unresolved)
        return tokens

    def _backfill(
        self,
        conn: sqlite3.Connection,
        assigner: CountryAssigner,
        run_dir: Path,
        gaps: Sequence[GapRecord],
        *,
        depth: int,
        tokens: Sequence[CommitToken] = (),
    ) -> Tuple[List[GapRecord], List[CommitToken]]:
        unresolved: List[GapRecord] = []
        gained: List[CommitToken] = []
        for gap in gaps:
            resolved, new_tokens = self.recover_gap(conn, assigner, gap, run_dir, tokens=tokens)
            gained.extend(new_tokens)
            if resolved:
                continue
            if depth < self.cfg.max_backfill_depth:
                logger.info("Gap %s still open after backfill depth %d; retrying", gap.gap_type, depth)
                still, more = self._backfill(conn, assigner, run_dir, [gap], depth=depth + 1, tokens=tokens)
                gained.extend(more)
                unresolved.extend(still)
            else:
                unresolved.append(gap)
        return unresolved, gained

    def recover_gap(
        self,
        conn: sqlite3.Connection,
        assigner: CountryAssigner,
        gap: GapRecord,
        run_dir: Path,
        *,
        tokens: Sequence[CommitToken] = (),
    ) -> Tuple[bool, List[CommitToken]]:
        """
        Targeted re-fetch for one gap. Re-entrant: a gap already resolved
        (in memory or in data_gaps) is a no-op, and re-delivered comments
        are deduplicated by the persistence layer anyway.
        """
        ledger = GapLedger(conn)
        if ledger.is_resolved(gap):
            logger.info("Gap %s (id=%s) already resolved", gap.gap_type, gap.gap_id)
            return True, []

        new_tokens: List[CommitToken] = []
        if gap.gap_type == GAP_COUNT:
            payload = self.feed.fetch_incremental(gap.range_start, run_dir, until=gap.range_end)
            parsed = parse_payload(payload.path)
            if parsed.bundles:
                new_tokens = self._dispatch(parsed.bundles, assigner).tokens
            resolved = parsed.delivered >= gap.expected_count
        elif gap.gap_type == GAP_ORPHANS:
            bundles: List[NoteBundle] = []
            for note_id in gap.note_ids:
                try:
                    payload = self.feed.fetch_note(note_id, run_dir)
                except TransientNetworkError as e:
                    if e.retryable:
                        raise
                    logger.warning("Note %d not retrievable (%s); leaving it in the gap", note_id, e)
                    continue
                bundles.extend(parse_payload(payload.path).bundles)
            if bundles:
                new_tokens = self._dispatch(bundles, assigner).tokens
            resolved = not notes_without_comments(conn, gap.note_ids)
        elif gap.gap_type == GAP_WATERMARK:
            after = self.watermarks.advance(conn, tokens, target=gap.range_end)
            resolved = after is not None and gap.range_end is not None and after >= gap.range_end
        else:
            logger.warning("Unknown gap type %r", gap.gap_type)
            resolved = False

        if resolved:
            ledger.mark_resolved(gap)
            logger.info("Gap %s (id=%s) resolved", gap.gap_type, gap.gap_id)
        return resolved, new_tokens

    def _recover_orphans(self, conn: sqlite3.Connection, assigner: CountryAssigner, run_dir: Path) -> None:
        """Crash-recovery check; unresolved orphans stay in data_gaps but do not fail the run."""
        gap = self.detector.detect_orphan_notes(
            conn, self.watermarks.read(conn), window_days=self.cfg.orphan_window_days
        )
        if gap is None:
            logger.info("Safety check: no notes without comments")
            return
        gap = GapLedger(conn).record(gap, details="crash recovery")
        resolved, _ = self.recover_gap(conn, assigner, gap, run_dir)
        if not resolved:
            logger.warning("Safety check: %d notes still without comments (gap id=%s)", len(gap.note_ids), gap.gap_id)
