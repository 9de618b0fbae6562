# notesync:persistence.py

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
Batch persistence: idempotent upsert of notes, comments and comment text.

Each batch runs in one BEGIN IMMEDIATE transaction that also writes the
batch_integrity row. Data and flag commit together or not at all, and the
CommitToken returned to the caller is what WatermarkStore.advance checks.
"""

from __future__ import annotations

import logging
import sqlite3
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

from notesync import storage
from notesync.countries import CountryAssigner
from notesync.errors import IntegrityViolation
from notesync.models import NO_COUNTRY, Comment, Note, NoteBundle
from notesync.timestamps import iso_or_none, iso_utc, utc_now
from notesync.watermark import CommitToken

logger = logging.getLogger(__name__)

# SQLite host parameter limit is far higher, this keeps statements small.
_IN_CHUNK = 500


@dataclass
class _BatchStats:
    notes_inserted: int = 0
    notes_updated: int = 0
    notes_unchanged: int = 0
    comments_inserted: int = 0
    comments_skipped: int = 0
    texts_inserted: int = 0


def _upsert_user(conn: sqlite3.Connection, c: Comment) -> None:
    if c.user_id is None:
        return
    conn.execute(
        """
        INSERT INTO users(user_id, username) VALUES (?, ?)
        ON CONFLICT(user_id) DO UPDATE SET username=excluded.username
        WHERE excluded.username <> users.username;
        """,
        (int(c.user_id), c.username or str(c.user_id)),
    )


def _upsert_note(conn: sqlite3.Connection, note: Note, assigner: Optional[CountryAssigner], stats: _BatchStats) -> None:
    row = conn.execute(
        "SELECT status, closed_at, id_country FROM notes WHERE note_id=?;",
        (note.id,),
    ).fetchone()

    if row is None:
        country = assigner.assign(note.lat, note.lon) if assigner is not None and len(assigner) else None
        conn.execute(
            """
            INSERT INTO notes(note_id, latitude, longitude, created_at, closed_at, status, id_country, insert_time)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                note.id,
                note.lat,
                note.lon,
                iso_utc(note.created_at),
                iso_or_none(note.closed_at),
                note.status,
                country,
                iso_utc(utc_now()),
            ),
        )
        stats.notes_inserted += 1
        return

    changed = row["status"] != note.status
    if changed:
        conn.execute(
            "UPDATE notes SET status=?, closed_at=? WHERE note_id=?;",
            (note.status, iso_or_none(note.closed_at), note.id),
        )
        stats.notes_updated += 1
    else:
        stats.notes_unchanged += 1

    # Stored before any boundaries were loaded; the only case an existing note gets a country.
    if row["id_country"] is None and assigner is not None and len(assigner):
        conn.execute(
            "UPDATE notes SET id_country=? WHERE note_id=? AND id_country IS NULL;",
            (assigner.assign(note.lat, note.lon), note.id),
        )


def _insert_comment(conn: sqlite3.Connection, c: Comment, batch_id: str, stats: _BatchStats) -> None:
    created = iso_utc(c.created_at)
    dup = conn.execute(
        """
        SELECT 1 FROM note_comments
        WHERE note_id=? AND event=? AND created_at=? AND id_user IS ?
        LIMIT 1;
        """,
        (c.note_id, c.action, created, c.user_id),
    ).fetchone()
    if dup is not None:
        stats.comments_skipped += 1
        return

    _upsert_user(conn, c)

    # Assigned inside the inserting transaction; never taken from the feed.
    seq = int(
        conn.execute(
            "SELECT COALESCE(MAX(sequence_action), 0) + 1 FROM note_comments WHERE note_id=?;",
            (c.note_id,),
        ).fetchone()[0]
    )
    cur = conn.execute(
        """
        INSERT INTO note_comments(note_id, sequence_action, event, created_at, id_user, batch_id)
        VALUES (?, ?, ?, ?, ?, ?);
        """,
        (c.note_id, seq, c.action, created, c.user_id, batch_id),
    )
    stats.comments_inserted += 1

    if c.text:
        conn.execute(
            "INSERT INTO note_comments_text(comment_id, note_id, body) VALUES (?, ?, ?);",
            (cur.lastrowid, c.note_id, c.text),
        )
        stats.texts_inserted += 1


def notes_without_comments(conn: sqlite3.Connection, note_ids: Sequence[int]) -> List[int]:
    out: List[int] = []
    ids = list(note_ids)
    for i in range(0, len(ids), _IN_CHUNK):
        chunk = ids[i:i + _IN_CHUNK]
        placeholders = ",".join(["?"] * len(chunk))
        rows = conn.execute(
            f"""
            SELECT n.note_id FROM notes n
            WHERE n.note_id IN ({placeholders})
              AND NOT EXISTS (SELECT 1 FROM note_comments c WHERE c.note_id = n.note_id);
            """,
            chunk,
        ).fetchall()
        out.extend(int(r[0]) for r in rows)
    return out


def verify_batch(conn: sqlite3.Connection, note_ids: Sequence[int], *, gap_ratio: float, min_notes: int) -> int:
    """
    Count batch notes that ended up without any comment.

    Small batches are permissive (warning only); otherwise more than
    gap_ratio of notes lacking comments raises IntegrityViolation.
    """
    missing = notes_without_comments(conn, note_ids)
    total = len(note_ids)
    if not missing:
        return 0

    if total < min_notes:
        logger.warning("Integrity: %d/%d notes without comments (small batch, accepted)", len(missing), total)
        return len(missing)

    ratio = len(missing) / float(total)
    if ratio > gap_ratio:
        raise IntegrityViolation(
            f"{len(missing)}/{total} notes without comments ({ratio:.1%} > {gap_ratio:.1%}), e.g. {missing[:5]}"
        )
    logger.warning("Integrity: %d/%d notes without comments (%.1f%%, within limit)", len(missing), total, ratio * 100)
    return len(missing)


def commit_batch(
    conn: sqlite3.Connection,
    bundles: Sequence[NoteBundle],
    assigner: Optional[CountryAssigner],
    *,
    batch_id: Optional[str] = None,
    gap_ratio: float = 0.05,
    min_notes: int = 10,
) -> CommitToken:
    batch_id = batch_id or uuid.uuid4().hex
    stats = _BatchStats()
    t0 = time.monotonic()

    conn.execute("BEGIN IMMEDIATE;")
    try:
        for b in bundles:
            _upsert_note(conn, b.note, assigner, stats)
            for c in b.comments:
                _insert_comment(conn, c, batch_id, stats)

        verify_batch(conn, [b.note.id for b in bundles], gap_ratio=gap_ratio, min_notes=min_notes)

        max_event = max((b.max_event for b in bundles), default=None)
        # A pure re-delivery leaves no trace; the token says so and advance() checks it.
        recorded = bool(stats.notes_inserted or stats.notes_updated or stats.comments_inserted)
        if recorded:
            conn.execute(
                """
                INSERT INTO batch_integrity(batch_id, verified, notes_count, comments_inserted, max_event_utc, committed_at)
                VALUES (?, 1, ?, ?, ?, ?);
                """,
                (batch_id, len(bundles), stats.comments_inserted, iso_or_none(max_event), iso_utc(utc_now())),
            )
        conn.commit()
    except Exception:
        conn.rollback()
        raise

    logger.info(
        "Batch %s committed in %.2fs: notes=%d inserted=%d updated=%d comments=%d skipped=%d texts=%d%s",
        batch_id[:8],
        time.monotonic() - t0,
        len(bundles),
        stats.notes_inserted,
        stats.notes_updated,
        stats.comments_inserted,
        stats.comments_skipped,
        stats.texts_inserted,
        "" if recorded else " (nothing new)",
    )
    return CommitToken(
        batch_id=batch_id,
        max_event_utc=max_event,
        notes_count=len(bundles),
        notes_inserted=stats.notes_inserted,
        notes_updated=stats.notes_updated,
        comments_inserted=stats.comments_inserted,
        comments_skipped=stats.comments_skipped,
        recorded=recorded,
    )


class BatchCommitter:
    """
    Callable used by the dispatcher: one short-lived connection per batch,
    so pool workers never share a connection.
    """

    def __init__(
        self,
        db_path: Path,
        assigner: Optional[CountryAssigner],
        *,
        timeout_s: float = 30.0,
        gap_ratio: float = 0.05,
        min_notes: int = 10,
    ):
        self.db_path = db_path
        self.assigner = assigner
        self.timeout_s = timeout_s
        self.gap_ratio = gap_ratio
        self.min_notes = min_notes

    def __call__(self, bundles: Sequence[NoteBundle]) -> CommitToken:
        conn = storage.connect(self.db_path, timeout_s=self.timeout_s)
        try:
            return commit_batch(
                conn,
                bundles,
                self.assigner,
                gap_ratio=self.gap_ratio,
                min_notes=self.min_notes,
            )
        finally:
            conn.close()


def reassign_countries(conn: sqlite3.Connection, assigner: CountryAssigner) -> int:
    """
    Re-run assignment for every note after boundary data changed.
    The current country is kept whenever it still contains the point.
    """
    rows = conn.execute("SELECT note_id, latitude, longitude, id_country FROM notes;").fetchall()
    changes = []
    for r in rows:
        current = r["id_country"]
        result = assigner.locate(float(r["latitude"]), float(r["longitude"]), current=current)
        if result.country_id != current:
            changes.append((result.country_id, int(r["note_id"])))

    conn.execute("BEGIN IMMEDIATE;")
    try:
        conn.executemany("UPDATE notes SET id_country=? WHERE note_id=?;", changes)
        conn.commit()
    except Exception:
        conn.rollback()
        raise

    no_country = sum(1 for cid, _ in changes if cid == NO_COUNTRY)
    logger.info("Reassigned countries: %d notes changed (%d now without country)", len(changes), no_country)
    return len(changes)
