"""Process-wide logging setup for applications embedding voicestream."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import load_dotenv

_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _resolve_level(value: str | None) -> int:
    level = getattr(logging, (value or "INFO").strip().upper(), None)
    return level if isinstance(level, int) else logging.INFO


def configure_logging(level: str | None = None) -> int:
    """Configure logging from ``LOG_LEVEL`` and ``LOG_FILE``.

    An explicit ``level`` overrides the environment. Returns the numeric level
    that was applied.
    """
    # Load .env file first to ensure LOG_FILE is available
    load_dotenv()

    log_level = _resolve_level(level or os.getenv("LOG_LEVEL"))

    handlers: list[logging.Handler] = []

    log_file = os.getenv("LOG_FILE")
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(_FORMAT, datefmt=_DATE_FORMAT))
        handlers.append(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(_FORMAT, datefmt=_DATE_FORMAT))
    handlers.append(console_handler)

    logging.basicConfig(
        level=log_level,
        handlers=handlers,
        force=True,  # Override any existing configuration
    )

    logging.getLogger("voicestream").setLevel(log_level)

    # httpx logs every request line at INFO
    if log_level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
    else:
        logging.getLogger("httpx").setLevel(log_level)
        logging.getLogger("httpcore").setLevel(log_level)

    return log_level


__all__ = ["configure_logging"]
