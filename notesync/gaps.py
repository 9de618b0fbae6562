# notesync:gaps.py

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

import json
import logging
import sqlite3
from dataclasses import replace
from datetime import datetime, timedelta
from typing import List, Optional

from notesync.models import GapRecord
from notesync.timestamps import iso_or_none, iso_utc, parse_or_none, utc_now

logger = logging.getLogger(__name__)

GAP_COUNT = "count_mismatch"
GAP_WATERMARK = "watermark_stalled"
GAP_ORPHANS = "notes_without_comments"


class GapDetector:
    """
    Continuity checks around a fetch/commit cycle. Pure: nothing is fetched
    or written here, callers decide what to do with the records.
    """

    def __init__(self, clock=utc_now):
        self._clock = clock

    def detect(
        self,
        reported_total: int,
        fetched_count: int,
        watermark_before: Optional[datetime],
        watermark_after: Optional[datetime],
        *,
        expected_after: Optional[datetime] = None,
        window_end: Optional[datetime] = None,
    ) -> List[GapRecord]:
        now = self._clock()
        gaps: List[GapRecord] = []

        if reported_total >= 0 and fetched_count < reported_total:
            gaps.append(
                GapRecord(
                    gap_type=GAP_COUNT,
                    range_start=watermark_before,
                    range_end=window_end or now,
                    detected_at=now,
                    expected_count=int(reported_total),
                    fetched_count=int(fetched_count),
                )
            )
            logger.warning(
                "Gap: feed reported %d notes since %s, only %d fetched",
                reported_total, iso_or_none(watermark_before), fetched_count,
            )

        # A committed batch that should have moved the watermark but did not.
        if expected_after is not None and (watermark_before is None or expected_after > watermark_before):
            if watermark_after is None or watermark_after < expected_after:
                gaps.append(
                    GapRecord(
                        gap_type=GAP_WATERMARK,
                        range_start=watermark_after or watermark_before,
                        range_end=expected_after,
                        detected_at=now,
                    )
                )
                logger.warning(
                    "Gap: watermark at %s after commit, expected %s",
                    iso_or_none(watermark_after), iso_utc(expected_after),
                )

        return gaps

    def detect_orphan_notes(
        self,
        conn: sqlite3.Connection,
        watermark: Optional[datetime],
        *,
        window_days: int = 7,
    ) -> Optional[GapRecord]:
        """Notes created in the days before the watermark that have no comment rows."""
        if watermark is None:
            return None
        start = watermark - timedelta(days=window_days)
        rows = conn.execute(
            """
            SELECT n.note_id FROM notes n
            WHERE n.created_at >= ? AND n.created_at <= ?
              AND NOT EXISTS (SELECT 1 FROM note_comments c WHERE c.note_id = n.note_id)
            ORDER BY n.note_id;
            """,
            (iso_utc(start), iso_utc(watermark)),
        ).fetchall()
        if not rows:
            return None
        ids = tuple(int(r[0]) for r in rows)
        logger.warning("Gap: %d notes without comments since %s", len(ids), iso_utc(start))
        return GapRecord(
            gap_type=GAP_ORPHANS,
            range_start=start,
            range_end=watermark,
            detected_at=self._clock(),
            expected_count=len(ids),
            note_ids=ids,
        )


class GapLedger:
    """Audit trail of detected gaps in the data_gaps table."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def record(self, gap: GapRecord, details: str = "") -> GapRecord:
        if gap.gap_id is not None:
            return gap
        cur = self.conn.execute(
            """
            INSERT INTO data_gaps(gap_type, range_start, range_end, note_ids, expected_count,
                                  fetched_count, detected_at, resolved, details)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                gap.gap_type,
                iso_or_none(gap.range_start),
                iso_or_none(gap.range_end),
                json.dumps(list(gap.note_ids)) if gap.note_ids else None,
                gap.expected_count,
                gap.fetched_count,
                iso_utc(gap.detected_at),
                1 if gap.resolved else 0,
                details or None,
            ),
        )
        return replace(gap, gap_id=int(cur.lastrowid))

    def is_resolved(self, gap: GapRecord) -> bool:
        if gap.resolved:
            return True
        if gap.gap_id is None:
            return False
        row = self.conn.execute("SELECT resolved FROM data_gaps WHERE id=?;", (gap.gap_id,)).fetchone()
        return bool(row and row[0])

    def mark_resolved(self, gap: GapRecord) -> GapRecord:
        if gap.gap_id is not None:
            self.conn.execute(
                "UPDATE data_gaps SET resolved=1, resolved_at=? WHERE id=? AND resolved=0;",
                (iso_utc(utc_now()), gap.gap_id),
            )
        return gap.mark_resolved()

    def unresolved(self, limit: int = 100) -> List[GapRecord]:
        rows = self.conn.execute(
            """
            SELECT id, gap_type, range_start, range_end, note_ids, expected_count, fetched_count, detected_at
            FROM data_gaps WHERE resolved=0 ORDER BY id DESC LIMIT ?;
            """,
            (int(limit),),
        ).fetchall()
        out = []
        for r in rows:
            out.append(
                GapRecord(
                    gap_type=r["gap_type"],
                    range_start=parse_or_none(r["range_start"]),
                    range_end=parse_or_none(r["range_end"]),
                    detected_at=parse_or_none(r["detected_at"]) or utc_now(),
                    expected_count=int(r["expected_count"]),
                    fetched_count=int(r["fetched_count"]),
                    note_ids=tuple(json.loads(r["note_ids"])) if r["note_ids"] else (),
                    gap_id=int(r["id"]),
                )
            )
        return out
