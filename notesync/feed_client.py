# notesync:feed_client.py

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

import bz2
import hashlib
import logging
import re
import shutil
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, Optional

import requests

from notesync.config import Config
from notesync.errors import ChecksumMismatch, MalformedPayload, TransientNetworkError
from notesync.timestamps import iso_utc, utc_now

logger = logging.getLogger(__name__)

KIND_INCREMENTAL = "incremental"
KIND_FULL = "full"
KIND_NOTE = "note"

_NOTE_TAG_RE = re.compile(rb"<note[\s>]")
_CHUNK = 1024 * 1024


@dataclass(frozen=True)
class FeedPayload:
    path: Path
    kind: str
    reported_total: int
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None


def parse_retry_after_seconds(resp: requests.Response) -> Optional[int]:
    """
    Try to obtain retry delay from Retry-After header or the known message format:
    'Try again in 49 seconds.'
    """
    ra = resp.headers.get("Retry-After")
    if ra:
        try:
            return int(ra)
        except ValueError:
            pass

    m = re.search(r"Try again in\s+(\d+)\s+seconds", resp.text or "", flags=re.IGNORECASE)
    if m:
        return int(m.group(1))

    return None


def backoff_delay(attempt: int, base_s: float, max_s: float) -> float:
    return min(max_s, base_s * (2 ** (attempt - 1)))


def count_note_elements(body: bytes) -> int:
    return len(_NOTE_TAG_RE.findall(body))


def read_md5_file(text: str) -> str:
    """Checksum files look like '<hex>  <filename>'; only the digest matters."""
    token = (text or "").strip().split()
    if not token or not re.fullmatch(r"[0-9a-fA-F]{32}", token[0]):
        raise ValueError(f"unexpected md5 file content: {text[:80]!r}")
    return token[0].lower()


class NotesFeedClient:
    """
    HTTP access to the notes feed.

    Transient failures (connection errors, timeouts, HTTP 429 and 5xx) are
    retried with bounded exponential backoff; Retry-After wins when the
    server sends it. Payloads are written into a caller-owned scratch dir.
    """

    def __init__(
        self,
        cfg: Config,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.cfg = cfg
        self.session = session or requests.Session()
        self.session.headers.setdefault("User-Agent", cfg.user_agent)
        self._sleep = sleep

    def _url(self, path: str) -> str:
        return self.cfg.api_url.rstrip("/") + path

    def _get(self, url: str, *, params: Optional[Dict[str, str]] = None, stream: bool = False) -> requests.Response:
        max_retries = max(1, int(self.cfg.fetch_retries))
        last_error = ""

        for attempt in range(1, max_retries + 1):
            try:
                resp = self.session.get(url, params=params, timeout=self.cfg.http_timeout_s, stream=stream)
            except (requests.ConnectionError, requests.Timeout) as e:
                last_error = f"{type(e).__name__}: {e}"
                delay = backoff_delay(attempt, self.cfg.backoff_base_s, self.cfg.backoff_max_s)
            else:
                if resp.status_code == 200:
                    return resp

                if resp.status_code == 429 or resp.status_code >= 500:
                    last_error = f"HTTP {resp.status_code}"
                    delay = parse_retry_after_seconds(resp) or backoff_delay(
                        attempt, self.cfg.backoff_base_s, self.cfg.backoff_max_s
                    )
                    resp.close()
                else:
                    body = (resp.text or "")[:300]
                    resp.close()
                    raise TransientNetworkError(
                        f"GET {url} failed: HTTP {resp.status_code} {body}",
                        url=url,
                        status=resp.status_code,
                        retryable=False,
                    )

            if attempt < max_retries:
                logger.warning("GET %s: %s. Retry in %.1f s (attempt %d/%d).", url, last_error, delay, attempt, max_retries)
                self._sleep(delay)

        raise TransientNetworkError(f"GET {url} failed after {max_retries} attempts: {last_error}", url=url)

    def _search_params(self, since: Optional[datetime], until: Optional[datetime], limit: int) -> Dict[str, str]:
        params = {"limit": str(int(limit)), "closed": "-1", "sort": "updated_at", "order": "oldest"}
        if since is not None:
            params["from"] = iso_utc(since)
        if until is not None:
            params["to"] = iso_utc(until)
        return params

    def fetch_incremental(
        self,
        since: Optional[datetime],
        dest_dir: Path,
        *,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> FeedPayload:
        """Fetch notes changed since the watermark; reported_total feeds the gap check."""
        limit = int(limit or self.cfg.max_notes)
        url = self._url("/notes/search.xml")
        window_end = until or utc_now()
        resp = self._get(url, params=self._search_params(since, until, limit))
        body = resp.content

        header_total = resp.headers.get("X-Total-Count")
        if header_total and header_total.strip().isdigit():
            reported = int(header_total)
        else:
            reported = count_note_elements(body)

        dest_dir.mkdir(parents=True, exist_ok=True)
        path = dest_dir / f"notes_incremental_{window_end.strftime('%Y%m%dT%H%M%SZ')}.xml"
        path.write_bytes(body)
        logger.info(
            "Incremental fetch from=%s: %d bytes, reported_total=%d -> %s",
            iso_utc(since) if since else None, len(body), reported, path.name,
        )
        return FeedPayload(path=path, kind=KIND_INCREMENTAL, reported_total=reported,
                           window_start=since, window_end=window_end)

    def has_updates(self, since: Optional[datetime]) -> bool:
        """
        Cheap probe (limit=1) used by the daemon between cycles. Feed times
        have one-second resolution, so asking from the next second skips the
        note that set the watermark.
        """
        after = since + timedelta(seconds=1) if since is not None else None
        resp = self._get(self._url("/notes/search.xml"), params=self._search_params(after, None, 1))
        return count_note_elements(resp.content) > 0

    def check_connectivity(self) -> bool:
        try:
            self._get(self._url("/capabilities"))
        except TransientNetworkError as e:
            logger.warning("Connectivity check failed: %s", e)
            return False
        return True

    def fetch_note(self, note_id: int, dest_dir: Path) -> FeedPayload:
        resp = self._get(self._url(f"/notes/{int(note_id)}.xml"))
        dest_dir.mkdir(parents=True, exist_ok=True)
        path = dest_dir / f"note_{int(note_id)}.xml"
        path.write_bytes(resp.content)
        return FeedPayload(path=path, kind=KIND_NOTE, reported_total=1)

    def _download(self, url: str, dest: Path) -> str:
        """Stream url into dest, returning the md5 of the bytes written."""
        md5 = hashlib.md5()
        resp = self._get(url, stream=True)
        try:
            with dest.open("wb") as f:
                for chunk in resp.iter_content(chunk_size=_CHUNK):
                    if chunk:
                        md5.update(chunk)
                        f.write(chunk)
        except requests.RequestException as e:
            raise TransientNetworkError(f"download of {url} interrupted: {e}", url=url) from e
        finally:
            resp.close()
        return md5.hexdigest()

    def fetch_full(self, dest_dir: Path) -> FeedPayload:
        """
        Download the bulk dump and its .md5, verify, then decompress.

        A checksum mismatch raises ChecksumMismatch without retrying: the
        published file itself may be bad, so the coordinator decides.
        """
        dest_dir.mkdir(parents=True, exist_ok=True)
        url = self.cfg.planet_url
        archive = dest_dir / Path(url.split("?", 1)[0]).name
        if archive.suffix != ".bz2":
            archive = archive.with_name(archive.name + ".bz2")

        t0 = time.monotonic()
        expected = read_md5_file(self._get(url + ".md5").text)
        actual = self._download(url, archive)
        if actual != expected:
            raise ChecksumMismatch(archive, expected, actual)
        logger.info("Downloaded %s (%d bytes) in %.1fs, md5 ok", archive.name, archive.stat().st_size, time.monotonic() - t0)

        xml_path = archive.with_suffix("")
        if xml_path.suffix != ".xml":
            xml_path = xml_path.with_name(xml_path.name + ".xml")
        try:
            with bz2.open(archive, "rb") as src, xml_path.open("wb") as dst:
                shutil.copyfileobj(src, dst, _CHUNK)
        except (OSError, EOFError) as e:
            raise MalformedPayload(f"{archive.name}: bz2 decompression failed: {e}") from e
        archive.unlink()
        logger.info("Decompressed dump -> %s (%d bytes)", xml_path.name, xml_path.stat().st_size)

        return FeedPayload(path=xml_path, kind=KIND_FULL, reported_total=-1, window_end=utc_now())
