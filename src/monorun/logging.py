from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
import os


_configured = False

ROOT_LOGGER = "monorun"
LOG_FORMAT = "%(asctime)s | %(threadName)s | %(name)s | %(levelname)s | %(message)s"


def _ensure_base_logger() -> None:
    global _configured
    if _configured:
        return
    # Task output owns stdout; engine logs go to stderr and stay quiet unless asked for.
    level = os.getenv("MONORUN_LOG_LEVEL", "WARNING").upper()
    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(getattr(logging, level, logging.WARNING))
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.propagate = False
    _configured = True


def get_logger(name: str, log_file: Path | None = None) -> logging.Logger:
    """Logger under the `monorun` hierarchy; `log_file` adds a rotating file."""
    _ensure_base_logger()
    logger = logging.getLogger(name)
    if log_file and not any(
        isinstance(h, RotatingFileHandler) for h in logger.handlers
    ):
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(log_file, maxBytes=1_000_000, backupCount=3)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler.setLevel(logging.DEBUG)
        logger.addHandler(handler)
    return logger
