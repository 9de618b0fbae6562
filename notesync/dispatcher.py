# notesync:dispatcher.py

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
Sequential vs pooled batch dispatch.

The strategy is picked once per run by select_strategy(), a pure function
of the note count and the threshold. Both strategies take note bundles
(a note plus all of its comments) and never split a bundle across batches,
so per-note comment order is preserved whichever worker commits it.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

import psutil

from notesync.errors import IntegrityViolation
from notesync.models import NoteBundle
from notesync.watermark import CommitToken

logger = logging.getLogger(__name__)

CommitFn = Callable[[Sequence[NoteBundle]], CommitToken]

# System memory usage (%) above which the pool shrinks.
MEMORY_HALVE_PCT = 65.0
MEMORY_SINGLE_PCT = 75.0


@dataclass
class BatchResult:
    index: int
    notes: int
    token: Optional[CommitToken] = None
    error: Optional[BaseException] = None
    skipped: bool = False
    seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.token is not None and self.error is None and not self.skipped


@dataclass
class DispatchResult:
    strategy: str
    workers: int
    batches: List[BatchResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(b.ok for b in self.batches)

    @property
    def failed(self) -> List[BatchResult]:
        return [b for b in self.batches if b.error is not None]

    @property
    def skipped(self) -> List[BatchResult]:
        return [b for b in self.batches if b.skipped]

    @property
    def tokens(self) -> List[CommitToken]:
        return [b.token for b in self.batches if b.token is not None]


def effective_workers(requested: int, memory_percent: Optional[float] = None) -> int:
    if memory_percent is None:
        memory_percent = psutil.virtual_memory().percent
    n = max(1, int(requested))
    if memory_percent > MEMORY_SINGLE_PCT:
        logger.warning("Memory usage %.0f%%: running a single worker", memory_percent)
        return 1
    if memory_percent > MEMORY_HALVE_PCT:
        logger.warning("Memory usage %.0f%%: halving workers %d -> %d", memory_percent, n, max(1, n // 2))
        return max(1, n // 2)
    return n


def partition(bundles: Sequence[NoteBundle], workers: int, max_batch_notes: int) -> List[List[NoteBundle]]:
    """Contiguous slices in feed order: at least `workers` batches, none above max_batch_notes."""
    if not bundles:
        return []
    n_batches = max(int(workers), math.ceil(len(bundles) / max(1, int(max_batch_notes))))
    n_batches = min(n_batches, len(bundles))
    size = math.ceil(len(bundles) / n_batches)
    return [list(bundles[i:i + size]) for i in range(0, len(bundles), size)]


def _run_batch(index: int, batch: Sequence[NoteBundle], commit: CommitFn, cancel: threading.Event) -> BatchResult:
    if cancel.is_set():
        return BatchResult(index=index, notes=len(batch), skipped=True)
    t0 = time.monotonic()
    try:
        token = commit(batch)
    except IntegrityViolation as e:
        # Fatal: queued batches are drained, in-flight ones finish.
        cancel.set()
        logger.error("Batch %d (%d notes) integrity violation: %s", index, len(batch), e)
        return BatchResult(index=index, notes=len(batch), error=e, seconds=time.monotonic() - t0)
    except Exception as e:
        logger.exception("Batch %d (%d notes) failed: %s", index, len(batch), e)
        return BatchResult(index=index, notes=len(batch), error=e, seconds=time.monotonic() - t0)
    return BatchResult(index=index, notes=len(batch), token=token, seconds=time.monotonic() - t0)


class SequentialStrategy:
    name = "sequential"

    def __init__(self, commit: CommitFn, max_batch_notes: int = 1000):
        self.commit = commit
        self.max_batch_notes = max_batch_notes

    def dispatch(self, bundles: Sequence[NoteBundle]) -> DispatchResult:
        result = DispatchResult(strategy=self.name, workers=1)
        cancel = threading.Event()
        for i, batch in enumerate(partition(bundles, 1, self.max_batch_notes)):
            result.batches.append(_run_batch(i, batch, self.commit, cancel))
        return result


class PooledStrategy:
    name = "pooled"

    def __init__(self, commit: CommitFn, workers: int, max_batch_notes: int = 1000):
        self.commit = commit
        self.workers = max(1, int(workers))
        self.max_batch_notes = max_batch_notes

    def dispatch(self, bundles: Sequence[NoteBundle]) -> DispatchResult:
        batches = partition(bundles, self.workers, self.max_batch_notes)
        result = DispatchResult(strategy=self.name, workers=self.workers)
        cancel = threading.Event()
        t0 = time.monotonic()

        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="notesync-batch") as pool:
            futures = [pool.submit(_run_batch, i, b, self.commit, cancel) for i, b in enumerate(batches)]
            for fut in as_completed(futures):
                result.batches.append(fut.result())

        result.batches.sort(key=lambda b: b.index)
        logger.info(
            "Pooled dispatch: %d notes in %d batches over %d workers, %.2fs (failed=%d skipped=%d)",
            len(bundles), len(batches), self.workers, time.monotonic() - t0,
            len(result.failed), len(result.skipped),
        )
        return result


def select_strategy(
    note_count: int,
    threshold: int,
    commit: CommitFn,
    *,
    max_workers: int = 1,
    max_batch_notes: int = 1000,
    memory_percent: Optional[float] = None,
):
    """Below the threshold: sequential in feed order. At or above it: a bounded worker pool."""
    if note_count < threshold:
        return SequentialStrategy(commit, max_batch_notes=max_batch_notes)
    workers = effective_workers(max_workers, memory_percent)
    return PooledStrategy(commit, workers=workers, max_batch_notes=max_batch_notes)
