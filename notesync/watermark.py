# notesync:watermark.py

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
The watermark: the newest event timestamp known to be fully persisted.

The value lives in the single sync_state row and is read fresh on every
access. It only moves forward, and only through advance(), which requires
a CommitToken per batch and re-checks each batch's integrity row in the
same transaction that writes the new value.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from notesync.errors import IntegrityViolation
from notesync.timestamps import iso_utc, parse_or_none

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommitToken:
    """Proof that one batch committed together with its integrity flag."""

    batch_id: str
    max_event_utc: Optional[datetime]
    notes_count: int = 0
    notes_inserted: int = 0
    notes_updated: int = 0
    comments_inserted: int = 0
    comments_skipped: int = 0
    # False for a batch that re-delivered only stored data; it wrote no integrity row.
    recorded: bool = True


def get_watermark(conn: sqlite3.Connection) -> Optional[datetime]:
    row = conn.execute("SELECT watermark_utc FROM sync_state WHERE id=1;").fetchone()
    if row is None:
        return None
    return parse_or_none(row[0])


def set_watermark(conn: sqlite3.Connection, wm: datetime) -> None:
    """Persist watermark (no commit here; caller controls transaction)."""
    conn.execute(
        "INSERT INTO sync_state (id, watermark_utc) VALUES (1, ?) "
        "ON CONFLICT(id) DO UPDATE SET watermark_utc=excluded.watermark_utc;",
        (iso_utc(wm),),
    )


class WatermarkStore:
    def read(self, conn: sqlite3.Connection) -> Optional[datetime]:
        return get_watermark(conn)

    def _verify_token(self, conn: sqlite3.Connection, token: CommitToken) -> None:
        if not token.recorded:
            self._verify_unchanged(conn, token)
            return
        row = conn.execute(
            "SELECT verified, comments_inserted FROM batch_integrity WHERE batch_id=?;",
            (token.batch_id,),
        ).fetchone()
        if row is None:
            raise IntegrityViolation(f"batch {token.batch_id} has no integrity record")
        if not int(row["verified"]):
            raise IntegrityViolation(f"batch {token.batch_id} is not marked verified")

        stored = int(
            conn.execute("SELECT COUNT(*) FROM note_comments WHERE batch_id=?;", (token.batch_id,)).fetchone()[0]
        )
        if stored != int(row["comments_inserted"]) or stored != token.comments_inserted:
            raise IntegrityViolation(
                f"batch {token.batch_id}: {stored} comments stored, "
                f"integrity row says {row['comments_inserted']}, token says {token.comments_inserted}"
            )

    def _verify_unchanged(self, conn: sqlite3.Connection, token: CommitToken) -> None:
        if token.notes_inserted or token.notes_updated or token.comments_inserted:
            raise IntegrityViolation(f"batch {token.batch_id} wrote data but has no integrity record")
        stored = int(
            conn.execute("SELECT COUNT(*) FROM note_comments WHERE batch_id=?;", (token.batch_id,)).fetchone()[0]
        )
        if stored:
            raise IntegrityViolation(f"batch {token.batch_id}: {stored} comments stored without an integrity record")

    def advance(
        self,
        conn: sqlite3.Connection,
        tokens: Iterable[CommitToken],
        *,
        target: Optional[datetime] = None,
    ) -> Optional[datetime]:
        """
        Move the watermark to target (default: newest event across tokens).

        Raises IntegrityViolation, leaving the watermark untouched, if any
        token's batch is not verifiably committed. Never moves backwards.
        Returns the watermark after the call.
        """
        tokens = list(tokens)
        conn.execute("BEGIN IMMEDIATE;")
        try:
            for t in tokens:
                self._verify_token(conn, t)

            current = get_watermark(conn)
            if target is None:
                events = [t.max_event_utc for t in tokens if t.max_event_utc is not None]
                target = max(events) if events else None

            if target is None or (current is not None and target <= current):
                conn.rollback()
                logger.info("Watermark unchanged at %s (%d batch token(s))", iso_utc(current) if current else None, len(tokens))
                return current

            set_watermark(conn, target)
            conn.commit()
        except Exception:
            conn.rollback()
            raise

        logger.info(
            "Watermark advanced %s -> %s over %d batch(es)",
            iso_utc(current) if current else None,
            iso_utc(target),
            len(tokens),
        )
        return target

    def rewind(self, conn: sqlite3.Connection, to: datetime, *, reason: str = "") -> Optional[datetime]:
        """Operator-triggered gap recovery: move the watermark back to `to`."""
        conn.execute("BEGIN IMMEDIATE;")
        try:
            current = get_watermark(conn)
            if current is not None and to > current:
                raise ValueError(f"rewind target {iso_utc(to)} is after current watermark {iso_utc(current)}")
            set_watermark(conn, to)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        logger.warning(
            "Watermark rewound %s -> %s (%s)", iso_utc(current) if current else None, iso_utc(to), reason or "operator"
        )
        return current
