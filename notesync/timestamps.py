# notesync:timestamps.py

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

from datetime import datetime, timezone
from typing import Optional


def parse_iso_utc(s: str) -> datetime:
    """
    Parse feed and store timestamps and normalize to UTC.

    Supports:
      - YYYY-MM-DD
      - YYYY-MM-DDTHH:MM:SS[.sss][Z|+HH:MM]
      - YYYY-MM-DD HH:MM:SS UTC   (notes API format)
      - If no timezone present, assume UTC.
    """
    s = (s or "").strip()
    if not s:
        raise ValueError("empty timestamp")

    if len(s) == 10 and s[4] == "-" and s[7] == "-":
        dt = datetime.fromisoformat(s)
        return dt.replace(tzinfo=timezone.utc)

    if s.endswith(" UTC"):
        s = s[:-4].strip()

    if s.endswith("Z"):
        s = s[:-1] + "+00:00"

    dt = datetime.fromisoformat(s)

    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)

    return dt.astimezone(timezone.utc)


def iso_utc(dt: datetime) -> str:
    """Render datetime as ISO-8601 UTC string with Z suffix."""
    return dt.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def iso_or_none(dt: Optional[datetime]) -> Optional[str]:
    return iso_utc(dt) if dt is not None else None


def parse_or_none(s: Optional[str]) -> Optional[datetime]:
    if s is None or not str(s).strip():
        return None
    return parse_iso_utc(str(s))


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)
