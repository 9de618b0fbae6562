from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import T0, api_doc, api_note, planet_doc, simple_note
from notesync.errors import MalformedPayload
from notesync.parser import FORMAT_API, FORMAT_PLANET, parse_api_xml, parse_payload, scan_planet, sniff_format


def test_parse_api_delta_keeps_comment_order_and_state():
    t1 = T0 + timedelta(hours=1)
    t2 = T0 + timedelta(hours=2)
    body = api_doc(
        api_note(
            10, 51.5, 11.25, T0,
            [
                ("opened", T0, 5, "alice", "pothole"),
                ("commented", t1, None, None, "still there"),
                ("closed", t2, 6, "bob", None),
            ],
            closed=t2,
        ),
        simple_note(11, T0),
    )
    parsed = parse_api_xml(body)

    assert len(parsed) == 2
    first = parsed.bundles[0]
    assert first.note.id == 10
    assert first.note.status == "closed"
    assert first.note.closed_at == t2
    assert [c.action for c in first.comments] == ["opened", "commented", "closed"]
    assert first.comments[1].user_id is None
    assert first.comments[0].text == "pothole"
    assert first.max_event == t2
    assert len(parsed.comments) == 4


def test_empty_delta_is_valid():
    parsed = parse_api_xml(api_doc())
    assert len(parsed) == 0
    assert parsed.comments == []


def test_same_timestamp_open_close_both_kept():
    body = api_doc(api_note(1, 10.0, 10.0, T0, [("opened", T0, 1, "a", None), ("closed", T0, 1, "a", None)], closed=T0))
    parsed = parse_api_xml(body)
    assert [c.action for c in parsed.bundles[0].comments] == ["opened", "closed"]


def test_repeated_note_is_merged_last_state_wins():
    t1 = T0 + timedelta(minutes=5)
    body = api_doc(
        api_note(3, 1.0, 1.0, T0, [("opened", T0, 1, "a", None)]),
        api_note(3, 1.0, 1.0, T0, [("closed", t1, 2, "b", None)], closed=t1),
    )
    parsed = parse_api_xml(body)
    assert len(parsed) == 1
    assert parsed.delivered == 2
    b = parsed.bundles[0]
    assert b.note.status == "closed"
    assert [c.action for c in b.comments] == ["opened", "closed"]


@pytest.mark.parametrize(
    "body",
    [
        api_doc(api_note(1, 91.0, 0.0, T0, [("opened", T0, 1, "a", None)])),
        api_doc(api_note(1, 0.0, 181.0, T0, [("opened", T0, 1, "a", None)])),
        api_doc(api_note(1, 0.0, 0.0, T0, [("teleported", T0, 1, "a", None)])),
        api_doc(api_note(1, 0.0, 0.0, T0, [])),
        api_doc('<note lon="1" lat="1"><id>7</id><date_created>yesterday</date_created>'
                "<comments><comment><date>2025-01-01 00:00:00 UTC</date><action>opened</action></comment></comments></note>"),
        api_doc('<note lon="1" lat="1"><id>7</id><date_created>2025-01-01 00:00:00 UTC</date_created><status>closed</status>'
                "<comments><comment><date>2025-01-01 00:00:00 UTC</date><action>opened</action></comment></comments></note>"),
        b"<osm><note>",
        b"<gpx></gpx>",
    ],
    ids=["lat", "lon", "action", "no-comments", "bad-date", "closed-no-date", "truncated", "wrong-root"],
)
def test_malformed_payload_rejected(body: bytes):
    with pytest.raises(MalformedPayload):
        parse_api_xml(body)


def test_planet_dump_streaming(tmp_path):
    p = tmp_path / "planet.xml"
    p.write_bytes(planet_doc([(1, 51.0, 11.0, T0), (2, 51.0, 14.0, T0 + timedelta(days=1))]))

    assert sniff_format(p) == FORMAT_PLANET
    assert scan_planet(p) == 2

    parsed = parse_payload(p)
    assert parsed.fmt == FORMAT_PLANET
    assert [b.note.id for b in parsed.bundles] == [1, 2]
    assert parsed.bundles[1].comments[0].text == "dump 2"


def test_parse_payload_detects_api_format(tmp_path):
    p = tmp_path / "delta.xml"
    p.write_bytes(api_doc(simple_note(5, T0)))
    assert sniff_format(p) == FORMAT_API
    assert parse_payload(p).notes[0].id == 5


def test_sniff_empty_file(tmp_path):
    p = tmp_path / "empty.xml"
    p.write_bytes(b"")
    with pytest.raises(MalformedPayload):
        sniff_format(p)
