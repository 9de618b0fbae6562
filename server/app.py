#!/usr/bin/env python3

# server/app.py

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

# -*- coding: utf-8 -*-
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional

from flask import Flask, request, jsonify
from flask_cors import CORS


# repo root resolution
REPO_ROOT = Path(__file__).resolve().parents[1]
import sys
import argparse

import sqlite3

sys.path.insert(0, str(REPO_ROOT))

from notesync.config import Config
from notesync import storage
from notesync.coordinator import DEFAULT_JOB
from notesync.gaps import GapLedger
from notesync.lock import LockManager, read_failure_marker
from notesync.timestamps import iso_or_none, iso_utc

import logging
logger = logging.getLogger("notesync-server")

from werkzeug.exceptions import BadRequest, HTTPException, NotFound


def parse_limit(value: Any, *, name: str = "limit", default: int = 50, maximum: int = 500) -> int:
    if value is None:
        return default
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise BadRequest(description=f"{name} must be an integer")
    if n < 1 or n > maximum:
        raise BadRequest(description=f"{name} out of range: {n} (valid: 1..{maximum})")
    return n


def _lock_info(locks: LockManager, job: str) -> Optional[Dict[str, Any]]:
    try:
        rec = locks.read(job)
    except ValueError as e:
        return {"unreadable": True, "error": str(e)}
    if rec is None:
        return None
    return {
        "owner_pid": rec.owner_pid,
        "acquired_at": iso_utc(rec.acquired_at),
        "work_dir": rec.work_dir,
        "process": rec.process,
        "main_script": rec.main_script,
        "stale": locks.is_stale(rec),
    }


def _gap_json(g) -> Dict[str, Any]:
    return {
        "id": g.gap_id,
        "type": g.gap_type,
        "range_start": iso_or_none(g.range_start),
        "range_end": iso_or_none(g.range_end),
        "expected_count": g.expected_count,
        "fetched_count": g.fetched_count,
        "note_ids": list(g.note_ids),
        "detected_at": iso_or_none(g.detected_at),
    }


def make_app(cfg: Optional[Config] = None, job: str = DEFAULT_JOB) -> Flask:
    app = Flask(__name__)
    CORS(app)  # keep it simple for local dev

    cfg = cfg or Config(repo_root=REPO_ROOT)
    locks = LockManager(cfg.lock_dir)

    logger.info("Resolved db_path=%s (%s)", cfg.db_path, "exists" if cfg.db_path.exists() else "missing")
    logger.info("Resolved lock_dir=%s", cfg.lock_dir)

    def _open() -> sqlite3.Connection:
        if not cfg.db_path.exists():
            raise NotFound(description=f"store not created yet: {cfg.db_path}")
        return storage.connect(cfg.db_path, timeout_s=5.0)

    @app.before_request
    def log_request():
        logger.info(
            "REQUEST %s %s from %s",
            request.method,
            request.path,
            request.remote_addr,
        )

    @app.get("/api/health")
    def health():
        return jsonify({"ok": True})

    @app.get("/api/status")
    def status():
        marker = read_failure_marker(cfg.lock_dir, job)
        out: Dict[str, Any] = {
            "ok": True,
            "job": job,
            "lock": _lock_info(locks, job),
            "failure_marker": None if marker is None else {
                "kind": marker.kind,
                "message": marker.message,
                "created_at": marker.created_at,
                "pid": marker.pid,
                "work_dir": marker.work_dir,
                "blocking": marker.blocking,
            },
            "db_path": str(cfg.db_path),
        }

        if not cfg.db_path.exists():
            out.update({"base_data": storage.BaseDataState.MISSING_TABLES.value, "watermark": None, "counts": {}})
            return jsonify(out)

        conn = _open()
        try:
            base = storage.check_base_data(conn)
            tables = storage.existing_tables(conn)
            wm = None
            if "sync_state" in tables:
                row = conn.execute("SELECT watermark_utc FROM sync_state WHERE id=1;").fetchone()
                wm = row[0] if row else None
            out["base_data"] = base.value
            out["watermark"] = wm
            out["counts"] = storage.table_counts(conn)
            out["unresolved_gaps"] = len(GapLedger(conn).unresolved(limit=500)) if "data_gaps" in tables else 0
        finally:
            conn.close()
        return jsonify(out)

    @app.get("/api/gaps")
    def gaps():
        limit = parse_limit(request.args.get("limit"))
        conn = _open()
        try:
            if "data_gaps" not in storage.existing_tables(conn):
                return jsonify({"ok": True, "gaps": []})
            rows = GapLedger(conn).unresolved(limit=limit)
        finally:
            conn.close()
        return jsonify({"ok": True, "gaps": [_gap_json(g) for g in rows]})

    @app.get("/api/notes/<int:note_id>")
    def note_detail(note_id: int):
        conn = _open()
        try:
            n = conn.execute(
                "SELECT note_id, latitude, longitude, created_at, closed_at, status, id_country FROM notes WHERE note_id=?;",
                (note_id,),
            ).fetchone()
            if n is None:
                raise NotFound(description=f"note {note_id} not found")
            comments = conn.execute(
                """
                SELECT c.sequence_action, c.event, c.created_at, c.id_user, u.username, t.body
                FROM note_comments c
                LEFT JOIN users u ON u.user_id = c.id_user
                LEFT JOIN note_comments_text t ON t.comment_id = c.id
                WHERE c.note_id=?
                ORDER BY c.sequence_action;
                """,
                (note_id,),
            ).fetchall()
        finally:
            conn.close()

        return jsonify({
            "ok": True,
            "note": {
                "id": n["note_id"],
                "lat": n["latitude"],
                "lon": n["longitude"],
                "created_at": n["created_at"],
                "closed_at": n["closed_at"],
                "status": n["status"],
                "country_id": n["id_country"],
                "comments": [
                    {
                        "sequence_action": c["sequence_action"],
                        "action": c["event"],
                        "created_at": c["created_at"],
                        "user_id": c["id_user"],
                        "username": c["username"],
                        "text": c["body"],
                    }
                    for c in comments
                ],
            },
        })

    @app.errorhandler(Exception)
    def handle_any_exception(e: Exception):
        logger.exception("Unhandled exception: %s", e)
        return jsonify({"ok": False, "code": "internal_error", "error": str(e), "status": 500}), 500

    @app.errorhandler(HTTPException)
    def handle_http_exception(e: HTTPException):
        code = {400: "bad_request", 404: "not_found"}.get(e.code, "http_error")
        return jsonify({
            "ok": False,
            "code": code,
            "error": e.description,
            "status": e.code,
        }), e.code

    @app.errorhandler(sqlite3.OperationalError)
    def handle_sqlite_operational(e):
        msg = str(e).lower()
        if "database is locked" in msg:
            return jsonify({"ok": False, "code": "db_locked", "error": str(e), "status": 503}), 503
        return jsonify({"ok": False, "code": "db_error", "error": str(e), "status": 500}), 500

    return app



if __name__ == "__main__":
    ap = argparse.ArgumentParser(description="Notesync status API server.")
    ap.add_argument("--host", default=os.environ.get("HOST", "127.0.0.1"))
    ap.add_argument("--port", type=int, default=int(os.environ.get("PORT", "8089")))
    ap.add_argument("--db-dir", default=None, help="Override DB directory (expects notes.sqlite).")
    ap.add_argument("--lock-dir", default=None, help="Override lock/failure-marker directory.")
    ap.add_argument("--logs-dir", default=None, help="Override logs directory.")
    ap.add_argument("--job", default=DEFAULT_JOB)
    args = ap.parse_args()

    # Map CLI dirs into NOTESYNC_* env vars so Config sees them
    from notesync.cli_paths import apply_path_overrides
    apply_path_overrides(
        db_dir=args.db_dir,
        lock_dir=args.lock_dir,
        logs_dir=args.logs_dir,
    )

    from server.logging_utils import setup_server_logger
    log_dir = Path(args.logs_dir).expanduser().resolve() if args.logs_dir else None
    logger = setup_server_logger(name="notesync-server", log_dir=log_dir)

    logger.info("Starting server with host=%s port=%d", args.host, args.port)
    logger.info("NOTESYNC_DB=%s", os.getenv("NOTESYNC_DB"))
    logger.info("NOTESYNC_LOCK_DIR=%s", os.getenv("NOTESYNC_LOCK_DIR"))

    app = make_app(job=args.job)

    debug = bool(os.environ.get("NOTESYNC_SERVER_DEBUG", "0") == "1")
    use_reloader = bool(os.environ.get("NOTESYNC_SERVER_RELOAD", "0") == "1")

    app.run(
        host=args.host,
        port=args.port,
        debug=debug,
        use_reloader=use_reloader,
    )
