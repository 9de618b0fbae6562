# notesync:parser.py

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
Feed payload parsing and validation.

Two formats arrive on disk:

  API delta   <osm><note lon= lat=><id/><date_created/><date_closed/>
              <comments><comment><date/><uid/><user/><action/><text/>
              </comment></comments></note></osm>
  Planet dump <osm-notes><note id= lat= lon= created_at= closed_at=>
              <comment action= timestamp= uid= user=>text</comment>
              </note></osm-notes>

Everything is validated before anything is returned; a payload with zero
notes is a valid empty delta. Comments keep their arrival order: repeated
close/reopen actions and same-timestamp open+close pairs pass through
untouched and are ordered by sequence_action at persist time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple, Union

from lxml import etree

from notesync.errors import MalformedPayload
from notesync.models import ACTIONS, Comment, Note, NoteBundle
from notesync.timestamps import parse_iso_utc

logger = logging.getLogger(__name__)

FORMAT_API = "api"
FORMAT_PLANET = "planet"


@dataclass(frozen=True)
class ParsedPayload:
    bundles: Tuple[NoteBundle, ...]
    fmt: str = FORMAT_API
    # <note> elements in the document before repeated deliveries were folded.
    # Feed totals count elements, so gap checks compare against this.
    delivered: int = 0

    @property
    def notes(self) -> List[Note]:
        return [b.note for b in self.bundles]

    @property
    def comments(self) -> List[Comment]:
        return [c for b in self.bundles for c in b.comments]

    def __len__(self) -> int:
        return len(self.bundles)


def _xml_parser() -> etree.XMLParser:
    return etree.XMLParser(resolve_entities=False, no_network=True, huge_tree=True, remove_blank_text=True)


def _req_int(raw: Optional[str], what: str) -> int:
    try:
        return int(str(raw).strip())
    except (TypeError, ValueError):
        raise MalformedPayload(f"missing or invalid {what}: {raw!r}") from None


def _opt_int(raw: Optional[str], what: str) -> Optional[int]:
    if raw is None or not str(raw).strip():
        return None
    return _req_int(raw, what)


def _req_coord(raw: Optional[str], what: str, limit: float) -> float:
    try:
        v = float(str(raw).strip())
    except (TypeError, ValueError):
        raise MalformedPayload(f"missing or invalid {what}: {raw!r}") from None
    if not -limit <= v <= limit:
        raise MalformedPayload(f"{what} out of range: {v}")
    return v


def _req_ts(raw: Optional[str], what: str):
    try:
        return parse_iso_utc(raw or "")
    except ValueError:
        raise MalformedPayload(f"missing or invalid {what}: {raw!r}") from None


def _opt_ts(raw: Optional[str], what: str):
    if raw is None or not raw.strip():
        return None
    return _req_ts(raw, what)


def _action(raw: Optional[str], note_id: int) -> str:
    action = (raw or "").strip().lower()
    if action not in ACTIONS:
        raise MalformedPayload(f"note {note_id}: unknown comment action {raw!r}")
    return action


def _bundle(note: Note, comments: List[Comment]) -> NoteBundle:
    if not comments:
        raise MalformedPayload(f"note {note.id} has no comments")
    return NoteBundle(note=note, comments=tuple(comments))


def _api_note(elem) -> NoteBundle:
    note_id = _req_int(elem.findtext("id"), "note id")
    lat = _req_coord(elem.get("lat"), f"note {note_id} lat", 90.0)
    lon = _req_coord(elem.get("lon"), f"note {note_id} lon", 180.0)
    created = _req_ts(elem.findtext("date_created"), f"note {note_id} date_created")
    closed = _opt_ts(elem.findtext("date_closed"), f"note {note_id} date_closed")

    status = (elem.findtext("status") or "").strip().lower()
    if status == "closed" and closed is None:
        raise MalformedPayload(f"note {note_id} is closed without date_closed")

    comments: List[Comment] = []
    for c in elem.iterfind("comments/comment"):
        comments.append(
            Comment(
                note_id=note_id,
                action=_action(c.findtext("action"), note_id),
                created_at=_req_ts(c.findtext("date"), f"note {note_id} comment date"),
                user_id=_opt_int(c.findtext("uid"), f"note {note_id} comment uid"),
                username=(c.findtext("user") or None),
                text=(c.findtext("text") or None),
            )
        )
    return _bundle(Note(id=note_id, lat=lat, lon=lon, created_at=created, closed_at=closed), comments)


def _planet_note(elem) -> NoteBundle:
    note_id = _req_int(elem.get("id"), "note id")
    lat = _req_coord(elem.get("lat"), f"note {note_id} lat", 90.0)
    lon = _req_coord(elem.get("lon"), f"note {note_id} lon", 180.0)
    created = _req_ts(elem.get("created_at"), f"note {note_id} created_at")
    closed = _opt_ts(elem.get("closed_at"), f"note {note_id} closed_at")

    comments: List[Comment] = []
    for c in elem.iterfind("comment"):
        comments.append(
            Comment(
                note_id=note_id,
                action=_action(c.get("action"), note_id),
                created_at=_req_ts(c.get("timestamp"), f"note {note_id} comment timestamp"),
                user_id=_opt_int(c.get("uid"), f"note {note_id} comment uid"),
                username=c.get("user") or None,
                text=(c.text or "").strip() or None,
            )
        )
    return _bundle(Note(id=note_id, lat=lat, lon=lon, created_at=created, closed_at=closed), comments)


def _merge(bundles: List[NoteBundle]) -> Tuple[NoteBundle, ...]:
    """
    Fold repeated deliveries of the same note into one bundle: comments are
    concatenated in arrival order, the last delivery's note state wins.
    """
    order: List[int] = []
    merged: Dict[int, NoteBundle] = {}
    for b in bundles:
        prev = merged.get(b.note.id)
        if prev is None:
            order.append(b.note.id)
            merged[b.note.id] = b
        else:
            merged[b.note.id] = NoteBundle(note=b.note, comments=prev.comments + b.comments)
    return tuple(merged[i] for i in order)


def sniff_format(path: Path) -> str:
    try:
        for _event, elem in etree.iterparse(str(path), events=("start",), resolve_entities=False, no_network=True):
            return FORMAT_PLANET if elem.tag == "osm-notes" else FORMAT_API
    except etree.XMLSyntaxError as e:
        raise MalformedPayload(f"{path.name}: not well-formed XML: {e}") from e
    raise MalformedPayload(f"{path.name}: empty document")


def parse_api_xml(source: Union[Path, bytes]) -> ParsedPayload:
    try:
        if isinstance(source, (bytes, bytearray)):
            root = etree.fromstring(bytes(source), parser=_xml_parser())
        else:
            root = etree.parse(str(source), parser=_xml_parser()).getroot()
    except etree.XMLSyntaxError as e:
        raise MalformedPayload(f"not well-formed XML: {e}") from e

    if root.tag != "osm":
        raise MalformedPayload(f"unexpected root element <{root.tag}>")

    bundles = [_api_note(n) for n in root.iterfind("note")]
    return ParsedPayload(bundles=_merge(bundles), fmt=FORMAT_API, delivered=len(bundles))


def iter_planet_notes(path: Path) -> Iterator[NoteBundle]:
    """Stream a decompressed planet dump note by note, releasing parsed elements."""
    try:
        context = etree.iterparse(
            str(path),
            events=("end",),
            tag="note",
            resolve_entities=False,
            no_network=True,
            huge_tree=True,
        )
        for _event, elem in context:
            bundle = _planet_note(elem)
            elem.clear()
            while elem.getprevious() is not None:
                del elem.getparent()[0]
            yield bundle
    except etree.XMLSyntaxError as e:
        raise MalformedPayload(f"{path.name}: not well-formed XML: {e}") from e


def scan_planet(path: Path) -> int:
    """Validate a whole planet dump before any of it is persisted. Returns the note count."""
    n = 0
    for _ in iter_planet_notes(path):
        n += 1
    logger.info("Planet dump %s validated: %d notes", path.name, n)
    return n


def parse_planet(path: Path) -> ParsedPayload:
    bundles = list(iter_planet_notes(path))
    return ParsedPayload(bundles=_merge(bundles), fmt=FORMAT_PLANET, delivered=len(bundles))


def parse_payload(path: Path) -> ParsedPayload:
    """Parse a payload file of either format into validated note bundles."""
    fmt = sniff_format(path)
    parsed = parse_planet(path) if fmt == FORMAT_PLANET else parse_api_xml(path)
    logger.info(
        "Parsed %s payload %s: notes=%d (delivered=%d) comments=%d",
        fmt, path.name, len(parsed.bundles), parsed.delivered, len(parsed.comments),
    )
    return parsed
