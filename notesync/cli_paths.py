# notesync:cli_paths.py

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

import os
from pathlib import Path
from typing import Optional


def _as_dir(p: str, *, create: bool = False, name: str = "path") -> Path:
    pp = Path(p).expanduser().resolve()
    if create:
        pp.mkdir(parents=True, exist_ok=True)
    if pp.exists() and not pp.is_dir():
        raise ValueError(f"{name} exists but is not a directory: {pp}")
    return pp


def apply_path_overrides(
    *,
    db_dir: Optional[str] = None,
    work_dir: Optional[str] = None,
    lock_dir: Optional[str] = None,
    logs_dir: Optional[str] = None,
    create_dirs: bool = False,
) -> None:
    """
    Map directory overrides into NOTESYNC_* env vars that Config reads.

    create_dirs=False by default; the sync wrappers pass True so the scratch
    and lock areas exist before the first run.
    """
    if db_dir:
        p = _as_dir(db_dir, create=create_dirs, name="db_dir")
        os.environ["NOTESYNC_DB"] = str(p / "notes.sqlite")

    if work_dir:
        p = _as_dir(work_dir, create=create_dirs, name="work_dir")
        os.environ["NOTESYNC_WORK_DIR"] = str(p)

    if lock_dir:
        p = _as_dir(lock_dir, create=create_dirs, name="lock_dir")
        os.environ["NOTESYNC_LOCK_DIR"] = str(p)

    if logs_dir:
        p = _as_dir(logs_dir, create=create_dirs, name="logs_dir")
        os.environ["NOTESYNC_LOGS_DIR"] = str(p)
