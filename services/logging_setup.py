"""Root logger configuration: console handler plus an optional file handler."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

from services.config import Settings

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

NOISY_LOGGERS = ("httpcore", "httpx", "urllib3", "asyncio", "docker", "github")


def configure_logging(settings: Settings) -> None:
    """Set up the root logger from *settings*.  Safe to call repeatedly."""
    log_level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    fmt = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(log_level)
    console.setFormatter(fmt)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG if settings.LOG_FILE else log_level)
    # Avoid duplicate handlers when called twice
    root.handlers.clear()
    root.addHandler(console)

    if settings.LOG_FILE:
        log_path = Path(settings.LOG_FILE)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        # Append mode so logs persist across runs
        file_handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)  # always capture DEBUG to file
        file_handler.setFormatter(fmt)
        root.addHandler(file_handler)

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)
