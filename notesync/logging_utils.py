# notesync:logging_utils.py

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

import logging
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path


LOG_FORMAT = "%(asctime)s.%(msecs)03dZ %(levelname)s %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%dT%H:%M:%S"


def setup_logger(name: str, logs_dir: Path, level: str = "INFO", to_console: bool = True) -> logging.Logger:
    """
    Configure the named logger with a daily rotating file (UTC, 14 days kept)
    and an optional stdout handler. Library modules log through children of
    the "notesync" logger, so configuring that one name covers the engine.
    """
    logs_dir.mkdir(parents=True, exist_ok=True)
    log_path = logs_dir / f"{name}.log"

    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.propagate = False

    if logger.handlers:
        logger.handlers.clear()

    fmt = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)

    fh = TimedRotatingFileHandler(
        str(log_path),
        when="D",
        interval=1,
        backupCount=14,
        encoding="utf-8",
        utc=True,
    )
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    if to_console:
        ch = logging.StreamHandler(sys.stdout)
        ch.setFormatter(fmt)
        logger.addHandler(ch)

    return logger


def attach_engine_logging(logger: logging.Logger) -> None:
    """Route the library loggers (notesync.*) into the handlers of a script logger."""
    engine = logging.getLogger("notesync")
    if engine is logger:
        return
    engine.setLevel(logger.level)
    engine.propagate = False
    engine.handlers.clear()
    for h in logger.handlers:
        engine.addHandler(h)
