# notesync:models.py

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

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional, Tuple

from notesync.timestamps import iso_utc

ACTION_OPENED = "opened"
ACTION_CLOSED = "closed"
ACTION_REOPENED = "reopened"
ACTION_COMMENTED = "commented"
ACTION_HIDDEN = "hidden"

ACTIONS = (ACTION_OPENED, ACTION_CLOSED, ACTION_REOPENED, ACTION_COMMENTED, ACTION_HIDDEN)

STATUS_OPEN = "open"
STATUS_CLOSED = "closed"

# Stored for notes that fall in international waters or match no polygon.
NO_COUNTRY = -1


@dataclass(frozen=True)
class Comment:
    note_id: int
    action: str
    created_at: datetime
    user_id: Optional[int] = None
    username: Optional[str] = None
    # Optional free-text body, persisted 1:1 in note_comments_text.
    text: Optional[str] = None

    @property
    def dedupe_key(self) -> Tuple[int, str, str, Optional[int]]:
        return (self.note_id, self.action, iso_utc(self.created_at), self.user_id)


@dataclass(frozen=True)
class Note:
    id: int
    lat: float
    lon: float
    created_at: datetime
    closed_at: Optional[datetime] = None
    country_id: Optional[int] = None

    @property
    def status(self) -> str:
        return STATUS_CLOSED if self.closed_at is not None else STATUS_OPEN


@dataclass(frozen=True)
class NoteBundle:
    """A note together with its comments in arrival order; the unit a batch never splits."""

    note: Note
    comments: Tuple[Comment, ...] = ()

    @property
    def max_event(self) -> datetime:
        events = [self.note.created_at]
        if self.note.closed_at is not None:
            events.append(self.note.closed_at)
        events.extend(c.created_at for c in self.comments)
        return max(events)


@dataclass(frozen=True)
class GapRecord:
    gap_type: str
    range_start: Optional[datetime]
    range_end: Optional[datetime]
    detected_at: datetime
    resolved: bool = False
    expected_count: int = 0
    fetched_count: int = 0
    note_ids: Tuple[int, ...] = field(default_factory=tuple)
    gap_id: Optional[int] = None

    def mark_resolved(self) -> "GapRecord":
        return replace(self, resolved=True)
