from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import pytest

from conftest import T0, bundle
from notesync.errors import IntegrityViolation
from notesync.persistence import commit_batch
from notesync.watermark import CommitToken, WatermarkStore, get_watermark, set_watermark

store = WatermarkStore()


def test_fresh_store_has_no_watermark(conn):
    assert store.read(conn) is None


def test_advance_to_newest_committed_event(conn):
    t1 = commit_batch(conn, [bundle(1, T0)], None)
    t2 = commit_batch(conn, [bundle(2, T0 + timedelta(hours=2), comments=3)], None)

    after = store.advance(conn, [t1, t2])
    assert after == T0 + timedelta(hours=2, minutes=2)
    assert get_watermark(conn) == after


def test_unverified_batch_blocks_advance(conn):
    good = commit_batch(conn, [bundle(1, T0)], None)
    ghost = CommitToken(batch_id="never-committed", max_event_utc=T0 + timedelta(days=1), comments_inserted=1)

    with pytest.raises(IntegrityViolation):
        store.advance(conn, [good, ghost])
    assert store.read(conn) is None


def test_comment_count_mismatch_blocks_advance(conn):
    token = commit_batch(conn, [bundle(1, T0, comments=2)], None)
    with pytest.raises(IntegrityViolation):
        store.advance(conn, [replace(token, comments_inserted=5)])
    assert store.read(conn) is None


def test_flag_cleared_blocks_advance(conn):
    token = commit_batch(conn, [bundle(1, T0)], None)
    conn.execute("UPDATE batch_integrity SET verified=0 WHERE batch_id=?;", (token.batch_id,))
    with pytest.raises(IntegrityViolation):
        store.advance(conn, [token])


def test_never_moves_backwards(conn):
    set_watermark(conn, T0 + timedelta(days=3))
    token = commit_batch(conn, [bundle(1, T0)], None)

    assert store.advance(conn, [token]) == T0 + timedelta(days=3)
    assert store.advance(conn, [], target=T0) == T0 + timedelta(days=3)
    assert store.read(conn) == T0 + timedelta(days=3)


def test_no_tokens_no_target_is_a_no_op(conn):
    set_watermark(conn, T0)
    assert store.advance(conn, []) == T0


def test_rewind(conn):
    set_watermark(conn, T0 + timedelta(days=2))
    previous = store.rewind(conn, T0, reason="test")
    assert previous == T0 + timedelta(days=2)
    assert store.read(conn) == T0

    with pytest.raises(ValueError):
        store.rewind(conn, T0 + timedelta(days=10))
    assert store.read(conn) == T0


def test_redelivered_batch_advances_without_integrity_row(conn):
    commit_batch(conn, [bundle(1, T0)], None)
    again = commit_batch(conn, [bundle(1, T0)], None)

    assert not again.recorded
    assert store.advance(conn, [again]) == again.max_event_utc
    assert conn.execute("SELECT COUNT(*) FROM batch_integrity;").fetchone()[0] == 1


def test_unrecorded_token_that_claims_writes_blocks_advance(conn):
    ghost = CommitToken(batch_id="no-row", max_event_utc=T0, comments_inserted=1, recorded=False)
    with pytest.raises(IntegrityViolation):
        store.advance(conn, [ghost])
    assert store.read(conn) is None
