# tests/conftest.py

from __future__ import annotations

import itertools
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from notesync import storage  # noqa: E402
from notesync.config import Config  # noqa: E402
from notesync.feed_client import KIND_FULL, KIND_INCREMENTAL, KIND_NOTE, FeedPayload, count_note_elements  # noqa: E402
from notesync.models import Comment, Note, NoteBundle  # noqa: E402

T0 = datetime(2025, 3, 1, 8, 0, 0, tzinfo=timezone.utc)

LAND_A = 1
SEA_A = 2
LAND_B = 3


def square(x0: float, y0: float, x1: float, y1: float) -> dict:
    return {
        "type": "Polygon",
        "coordinates": [[[x0, y0], [x1, y0], [x1, y1], [x0, y1], [x0, y0]]],
    }


# (country_id, name, is_maritime, zone, geometry). Land A and its maritime
# zone share the lon=12 edge; the maritime zone and land B share lon=13.
COUNTRIES = [
    (LAND_A, "Landia", False, "western_europe", square(10.0, 50.0, 12.0, 52.0)),
    (SEA_A, "Landia EEZ", True, "western_europe", square(12.0, 50.0, 13.0, 52.0)),
    (LAND_B, "Otherland", False, "western_europe", square(13.0, 50.0, 15.0, 52.0)),
]
WATERS = [(1, "High seas", square(-30.0, 0.0, -20.0, 10.0))]


def api_ts(dt: datetime) -> str:
    return dt.strftime("%Y-%m-%d %H:%M:%S UTC")


def api_note(
    note_id: int,
    lat: float,
    lon: float,
    created: datetime,
    comments: Sequence[Tuple[str, datetime, Optional[int], Optional[str], Optional[str]]],
    closed: Optional[datetime] = None,
) -> str:
    """One <note> element the way the notes API serializes it."""
    parts = [f'<note lon="{lon}" lat="{lat}">', f"<id>{note_id}</id>", f"<date_created>{api_ts(created)}</date_created>"]
    parts.append(f"<status>{'closed' if closed else 'open'}</status>")
    if closed is not None:
        parts.append(f"<date_closed>{api_ts(closed)}</date_closed>")
    parts.append("<comments>")
    for action, when, uid, user, text in comments:
        parts.append("<comment>")
        parts.append(f"<date>{api_ts(when)}</date>")
        if uid is not None:
            parts.append(f"<uid>{uid}</uid><user>{user}</user>")
        parts.append(f"<action>{action}</action>")
        if text:
            parts.append(f"<text>{text}</text>")
        parts.append("</comment>")
    parts.append("</comments></note>")
    return "".join(parts)


def api_doc(*notes: str) -> bytes:
    return ('<?xml version="1.0" encoding="UTF-8"?>\n<osm version="0.6" generator="test">'
            + "".join(notes) + "</osm>").encode("utf-8")


def simple_note(note_id: int, when: datetime, lat: float = 51.0, lon: float = 11.0) -> str:
    return api_note(note_id, lat, lon, when, [("opened", when, 100 + note_id, f"user{note_id}", f"note {note_id}")])


def planet_doc(notes: Iterable[Tuple[int, float, float, datetime]]) -> bytes:
    out = ['<?xml version="1.0" encoding="UTF-8"?>\n<osm-notes>']
    for note_id, lat, lon, when in notes:
        ts = when.strftime("%Y-%m-%dT%H:%M:%SZ")
        out.append(
            f'<note id="{note_id}" lat="{lat}" lon="{lon}" created_at="{ts}">'
            f'<comment action="opened" timestamp="{ts}" uid="{100 + note_id}" user="user{note_id}">dump {note_id}</comment>'
            "</note>"
        )
    out.append("</osm-notes>")
    return "".join(out).encode("utf-8")


def bundle(note_id: int, when: datetime, *, lat: float = 51.0, lon: float = 11.0, comments: Optional[int] = 1) -> NoteBundle:
    note = Note(id=note_id, lat=lat, lon=lon, created_at=when)
    cs = tuple(
        Comment(note_id=note_id, action="opened" if i == 0 else "commented",
                created_at=when + timedelta(minutes=i), user_id=7, username="mapper")
        for i in range(comments or 0)
    )
    return NoteBundle(note=note, comments=cs)


class FakeFeed:
    """In-memory stand-in for NotesFeedClient; payloads are written like the real one."""

    def __init__(
        self,
        incremental: Sequence[bytes] = (),
        *,
        full: Optional[bytes] = None,
        totals: Sequence[Optional[int]] = (),
        notes: Optional[Dict[int, bytes]] = None,
        updates: bool = True,
        connectivity: bool = True,
    ):
        self.incremental = list(incremental)
        self.full = full
        self.totals = list(totals)
        self.notes = dict(notes or {})
        self.updates = updates
        self.connectivity = connectivity
        self.calls: List[Tuple] = []
        self._seq = itertools.count(1)

    def _write(self, dest_dir: Path, name: str, body: bytes) -> Path:
        dest_dir.mkdir(parents=True, exist_ok=True)
        p = dest_dir / f"{next(self._seq):03d}_{name}"
        p.write_bytes(body)
        return p

    def fetch_incremental(self, since, dest_dir, *, until=None, limit=None) -> FeedPayload:
        self.calls.append(("incremental", since, until))
        body = self.incremental.pop(0) if len(self.incremental) > 1 else (self.incremental[0] if self.incremental else api_doc())
        total = self.totals.pop(0) if self.totals else None
        reported = total if total is not None else count_note_elements(body)
        return FeedPayload(
            path=self._write(dest_dir, "delta.xml", body), kind=KIND_INCREMENTAL,
            reported_total=reported, window_start=since, window_end=until or T0 + timedelta(days=30),
        )

    def fetch_full(self, dest_dir) -> FeedPayload:
        self.calls.append(("full",))
        assert self.full is not None, "full dump requested but none configured"
        return FeedPayload(path=self._write(dest_dir, "planet.xml", self.full), kind=KIND_FULL, reported_total=-1)

    def fetch_note(self, note_id, dest_dir) -> FeedPayload:
        self.calls.append(("note", note_id))
        return FeedPayload(path=self._write(dest_dir, f"note_{note_id}.xml", self.notes[note_id]), kind=KIND_NOTE, reported_total=1)

    def has_updates(self, since) -> bool:
        self.calls.append(("probe", since))
        return self.updates

    def check_connectivity(self) -> bool:
        self.calls.append(("connectivity",))
        return self.connectivity


@pytest.fixture()
def cfg(tmp_path: Path) -> Config:
    return Config(
        repo_root=tmp_path,
        db_path=tmp_path / "db" / "notes.sqlite",
        work_dir=tmp_path / "work",
        lock_dir=tmp_path / "locks",
        logs_dir=tmp_path / "logs",
        max_notes=1000,
        parallel_threshold=10,
        max_workers=2,
        max_batch_notes=50,
        full_chunk_notes=100,
        fetch_retries=3,
        backoff_base_s=1.0,
        backoff_max_s=4.0,
        commit_timeout_s=5.0,
        max_backfill_depth=2,
    )


@pytest.fixture()
def conn(cfg: Config):
    c = storage.connect(cfg.db_path, timeout_s=5.0)
    storage.ensure_schema(c)
    yield c
    c.close()


@pytest.fixture()
def seeded(conn):
    """Store with boundary polygons loaded and nothing else."""
    storage.upsert_countries(conn, COUNTRIES)
    storage.upsert_international_waters(conn, WATERS)
    return conn
