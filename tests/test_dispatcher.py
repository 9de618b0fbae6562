from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from conftest import T0, bundle
from notesync.dispatcher import (
    PooledStrategy,
    SequentialStrategy,
    effective_workers,
    partition,
    select_strategy,
)
from notesync.errors import IntegrityViolation
from notesync.watermark import CommitToken


def _bundles(n):
    return [bundle(i, T0 + timedelta(minutes=i)) for i in range(1, n + 1)]


class _RecordingCommit:
    def __init__(self, fail_on=None, exc=RuntimeError):
        self.fail_on = set(fail_on or ())
        self.exc = exc
        self.seen = []
        self._lock = threading.Lock()

    def __call__(self, batch):
        ids = [b.note.id for b in batch]
        with self._lock:
            self.seen.append(ids)
        if self.fail_on & set(ids):
            raise self.exc("boom")
        return CommitToken(
            batch_id=f"b{ids[0]}",
            max_event_utc=max(b.max_event for b in batch),
            notes_count=len(batch),
        )


def test_threshold_picks_strategy():
    commit = _RecordingCommit()
    assert isinstance(select_strategy(9, 10, commit, max_workers=4, memory_percent=10.0), SequentialStrategy)
    assert isinstance(select_strategy(10, 10, commit, max_workers=4, memory_percent=10.0), PooledStrategy)

    pooled = select_strategy(20, 10, commit, max_workers=4, memory_percent=10.0)
    assert pooled.name == "pooled"
    assert pooled.workers == 4


def test_memory_pressure_shrinks_pool():
    assert effective_workers(8, 10.0) == 8
    assert effective_workers(8, 70.0) == 4
    assert effective_workers(8, 90.0) == 1
    assert effective_workers(0, 10.0) == 1


def test_partition_is_contiguous_and_complete():
    items = _bundles(25)
    batches = partition(items, 4, 1000)
    assert len(batches) == 4
    assert [b.note.id for batch in batches for b in batch] == list(range(1, 26))

    assert len(partition(items, 1, 5)) == 5
    assert len(partition(items[:2], 8, 1000)) == 2
    assert partition([], 4, 10) == []


def test_sequential_preserves_feed_order():
    commit = _RecordingCommit()
    result = SequentialStrategy(commit, max_batch_notes=3).dispatch(_bundles(7))
    assert result.ok
    assert commit.seen == [[1, 2, 3], [4, 5, 6], [7]]
    assert max(t.max_event_utc for t in result.tokens) == T0 + timedelta(minutes=7)


def test_pooled_commits_every_note_once():
    commit = _RecordingCommit()
    result = PooledStrategy(commit, workers=4, max_batch_notes=5).dispatch(_bundles(20))
    assert result.ok
    assert sorted(i for ids in commit.seen for i in ids) == list(range(1, 21))
    assert [b.index for b in result.batches] == list(range(len(result.batches)))
    assert max(t.max_event_utc for t in result.tokens) == T0 + timedelta(minutes=20)


def test_failed_batch_marks_result_not_ok():
    commit = _RecordingCommit(fail_on={3})
    result = PooledStrategy(commit, workers=2, max_batch_notes=5).dispatch(_bundles(20))
    assert not result.ok
    assert len(result.failed) == 1
    # the other batches still committed
    assert len(result.tokens) == len(result.batches) - 1


def test_integrity_violation_cancels_queued_batches():
    commit = _RecordingCommit(fail_on={1}, exc=IntegrityViolation)
    result = PooledStrategy(commit, workers=1, max_batch_notes=5).dispatch(_bundles(20))

    assert isinstance(result.batches[0].error, IntegrityViolation)
    assert [b.skipped for b in result.batches[1:]] == [True, True, True]
    assert commit.seen == [[1, 2, 3, 4, 5]]
    assert not result.ok
    assert result.tokens == []


@pytest.mark.parametrize("strategy", ["sequential", "pooled"])
def test_empty_input(strategy):
    commit = _RecordingCommit()
    s = SequentialStrategy(commit) if strategy == "sequential" else PooledStrategy(commit, workers=2)
    result = s.dispatch([])
    assert result.ok
    assert result.tokens == []
