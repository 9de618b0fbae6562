# notesync:storage.py

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
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple

DDL = """
CREATE TABLE IF NOT EXISTS notes (
  note_id INTEGER PRIMARY KEY,
  latitude REAL NOT NULL,
  longitude REAL NOT NULL,
  created_at TEXT NOT NULL,
  closed_at TEXT,
  status TEXT NOT NULL CHECK (status IN ('open', 'closed')),
  id_country INTEGER,
  insert_time TEXT NOT NULL,
  CHECK ((status = 'closed') = (closed_at IS NOT NULL))
);

CREATE TABLE IF NOT EXISTS users (
  user_id INTEGER PRIMARY KEY,
  username TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS note_comments (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  note_id INTEGER NOT NULL REFERENCES notes(note_id),
  sequence_action INTEGER NOT NULL,
  event TEXT NOT NULL CHECK (event IN ('opened', 'closed', 'reopened', 'commented', 'hidden')),
  created_at TEXT NOT NULL,
  id_user INTEGER,
  batch_id TEXT NOT NULL,
  UNIQUE (note_id, sequence_action)
);

CREATE TABLE IF NOT EXISTS note_comments_text (
  comment_id INTEGER PRIMARY KEY REFERENCES note_comments(id),
  note_id INTEGER NOT NULL,
  body TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_state (
  id INTEGER PRIMARY KEY CHECK (id = 1),
  watermark_utc TEXT
);

CREATE TABLE IF NOT EXISTS batch_integrity (
  batch_id TEXT PRIMARY KEY,
  verified INTEGER NOT NULL,
  notes_count INTEGER NOT NULL,
  comments_inserted INTEGER NOT NULL,
  max_event_utc TEXT,
  committed_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS countries (
  country_id INTEGER PRIMARY KEY,
  name TEXT NOT NULL,
  is_maritime INTEGER NOT NULL DEFAULT 0,
  zone TEXT,
  geom_geojson TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS international_waters (
  id INTEGER PRIMARY KEY,
  name TEXT,
  geom_geojson TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS data_gaps (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  gap_type TEXT NOT NULL,
  range_start TEXT,
  range_end TEXT,
  note_ids TEXT,
  expected_count INTEGER NOT NULL DEFAULT 0,
  fetched_count INTEGER NOT NULL DEFAULT 0,
  detected_at TEXT NOT NULL,
  resolved INTEGER NOT NULL DEFAULT 0,
  resolved_at TEXT,
  details TEXT
);
"""

# Tables a store must have before an incremental run makes sense.
BASE_TABLES = ("notes", "note_comments", "note_comments_text", "users", "sync_state")

logger = logging.getLogger(__name__)


class BaseDataState(str, Enum):
    READY = "ready"
    MISSING_TABLES = "missing_tables"
    NO_NOTES = "no_notes"
    NO_WATERMARK = "no_watermark"


def ensure_parent_dir(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def connect(db_path: Path, timeout_s: float = 30.0) -> sqlite3.Connection:
    """
    Open a store connection.

    Transactions are explicit (BEGIN IMMEDIATE ... commit/rollback), so the
    driver's implicit transaction handling is switched off. timeout_s bounds
    how long a writer waits for the database lock.
    """
    ensure_parent_dir(db_path)
    conn = sqlite3.connect(str(db_path), timeout=timeout_s, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


def ensure_schema(conn: sqlite3.Connection) -> None:
    cur = conn.cursor()

    cur.executescript(DDL)

    # Duplicate feed deliveries are detected on this composite.
    cur.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_note_comments_event "
        "ON note_comments(note_id, event, created_at, COALESCE(id_user, -1));"
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_note_comments_batch ON note_comments(batch_id);")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_note_comments_created ON note_comments(created_at);")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_notes_created ON notes(created_at);")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_data_gaps_open ON data_gaps(resolved, gap_type);")

    cur.execute("INSERT OR IGNORE INTO sync_state (id, watermark_utc) VALUES (1, NULL);")


def existing_tables(conn: sqlite3.Connection) -> set[str]:
    rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table';").fetchall()
    return {r[0] for r in rows}


def check_base_data(conn: sqlite3.Connection) -> BaseDataState:
    """
    Classify the store before choosing a sync mode.

    sqlite3.DatabaseError propagates: a store that cannot be queried must not
    be mistaken for an empty one and rebuilt over.
    """
    tables = existing_tables(conn)
    missing = [t for t in BASE_TABLES if t not in tables]
    if missing:
        logger.info("Base tables missing: %s", ", ".join(missing))
        return BaseDataState.MISSING_TABLES

    if conn.execute("SELECT 1 FROM notes LIMIT 1;").fetchone() is None:
        return BaseDataState.NO_NOTES

    row = conn.execute("SELECT watermark_utc FROM sync_state WHERE id=1;").fetchone()
    if row is None or row[0] is None:
        return BaseDataState.NO_WATERMARK

    return BaseDataState.READY


def table_counts(conn: sqlite3.Connection) -> Dict[str, int]:
    tables = existing_tables(conn)
    out: Dict[str, int] = {}
    for name in ("notes", "note_comments", "note_comments_text", "users", "countries", "data_gaps"):
        if name in tables:
            # Table names come from the fixed tuple above, never from feed content.
            out[name] = int(conn.execute(f"SELECT COUNT(*) FROM {name};").fetchone()[0])
    return out


def log_db_status(conn: sqlite3.Connection, log: logging.Logger) -> None:
    tables = existing_tables(conn)
    wm = None
    if "sync_state" in tables:
        row = conn.execute("SELECT watermark_utc FROM sync_state WHERE id=1;").fetchone()
        wm = row[0] if row else None
    counts = table_counts(conn)
    log.info(
        "DB status: watermark=%s notes=%d comments=%d texts=%d users=%d",
        wm,
        counts.get("notes", 0),
        counts.get("note_comments", 0),
        counts.get("note_comments_text", 0),
        counts.get("users", 0),
    )


def upsert_countries(
    conn: sqlite3.Connection,
    countries: Iterable[Tuple[int, str, bool, Optional[str], Any]],
) -> None:
    """
    Load boundary rows: (country_id, name, is_maritime, zone, geometry).
    geometry may be a GeoJSON dict or its JSON text.
    """
    rows = []
    for cid, name, is_maritime, zone, geom in countries:
        text = geom if isinstance(geom, str) else json.dumps(geom, separators=(",", ":"))
        rows.append((int(cid), name, 1 if is_maritime else 0, zone, text))

    conn.executemany(
        """
        INSERT INTO countries(country_id, name, is_maritime, zone, geom_geojson)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(country_id) DO UPDATE SET
          name=excluded.name,
          is_maritime=excluded.is_maritime,
          zone=excluded.zone,
          geom_geojson=excluded.geom_geojson;
        """,
        rows,
    )


def upsert_international_waters(conn: sqlite3.Connection, areas: Iterable[Tuple[int, str, Any]]) -> None:
    rows = []
    for aid, name, geom in areas:
        text = geom if isinstance(geom, str) else json.dumps(geom, separators=(",", ":"))
        rows.append((int(aid), name, text))
    conn.executemany(
        """
        INSERT INTO international_waters(id, name, geom_geojson) VALUES (?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET name=excluded.name, geom_geojson=excluded.geom_geojson;
        """,
        rows,
    )
