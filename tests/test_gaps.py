from __future__ import annotations

from datetime import timedelta

from conftest import T0, bundle
from notesync.gaps import GAP_COUNT, GAP_ORPHANS, GAP_WATERMARK, GapDetector, GapLedger
from notesync.persistence import commit_batch

NOW = T0 + timedelta(days=10)


def _detector():
    return GapDetector(clock=lambda: NOW)


def test_count_mismatch():
    gaps = _detector().detect(20, 18, T0, None, window_end=T0 + timedelta(days=1))
    assert len(gaps) == 1
    g = gaps[0]
    assert g.gap_type == GAP_COUNT
    assert (g.expected_count, g.fetched_count) == (20, 18)
    assert g.range_start == T0
    assert g.range_end == T0 + timedelta(days=1)


def test_unknown_total_is_not_a_gap():
    assert _detector().detect(-1, 5, T0, None) == []
    assert _detector().detect(5, 5, T0, None) == []


def test_stalled_watermark():
    expected = T0 + timedelta(hours=5)
    gaps = _detector().detect(0, 0, T0, T0, expected_after=expected)
    assert [g.gap_type for g in gaps] == [GAP_WATERMARK]
    assert gaps[0].range_end == expected

    assert _detector().detect(0, 0, T0, expected, expected_after=expected) == []
    # nothing newer than the watermark was committed
    assert _detector().detect(0, 0, T0, T0, expected_after=T0) == []


def test_orphan_notes_near_watermark(conn):
    commit_batch(conn, [bundle(1, T0)], None)
    commit_batch(conn, [bundle(2, T0 + timedelta(days=1), comments=0)], None)
    commit_batch(conn, [bundle(3, T0 - timedelta(days=30), comments=0)], None)

    gap = _detector().detect_orphan_notes(conn, T0 + timedelta(days=2), window_days=7)
    assert gap is not None
    assert gap.gap_type == GAP_ORPHANS
    assert gap.note_ids == (2,)

    assert _detector().detect_orphan_notes(conn, None) is None


def test_ledger_round_trip(conn):
    ledger = GapLedger(conn)
    g = ledger.record(_detector().detect(3, 1, T0, None, window_end=NOW)[0], details="test")
    assert g.gap_id is not None
    assert ledger.record(g) is g

    open_gaps = ledger.unresolved()
    assert [x.gap_id for x in open_gaps] == [g.gap_id]
    assert open_gaps[0].expected_count == 3
    assert not ledger.is_resolved(g)

    done = ledger.mark_resolved(g)
    assert done.resolved
    assert ledger.is_resolved(g)
    assert ledger.unresolved() == []
