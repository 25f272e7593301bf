"""Logging setup shared by the server entry points."""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_FILENAME = "conversation.log"


def setup_logging(log_dir: Optional[str] = None, level: int = logging.INFO) -> logging.Logger:
    """Configure console logging, plus a file handler when ``log_dir`` is given.

    Safe to call more than once; handlers are only added the first time.
    """
    root = logging.getLogger()
    root.setLevel(level)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    if not any(getattr(handler, "_conversation_console", False) for handler in root.handlers):
        console = logging.StreamHandler(sys.stdout)
        console.setFormatter(formatter)
        console._conversation_console = True  # type: ignore[attr-defined]
        root.addHandler(console)

    if log_dir:
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)
        log_file = str((path / LOG_FILENAME).resolve())
        if not any(getattr(handler, "baseFilename", None) == log_file for handler in root.handlers):
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)

    for handler in root.handlers:
        handler.setLevel(level)
    return root
