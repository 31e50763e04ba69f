"""
Logging configuration — one setup call per process.

``main.py`` calls ``setup_logging`` before any subcommand runs; every
module logs through ``logging.getLogger(__name__)``.

Level precedence:
    CLI flag  >  IFG_LOG_LEVEL  >  WARNING

A log file is added when IFG_LOG_FILE is set (level IFG_LOG_FILE_LEVEL,
defaulting to the console level).  Build worker threads are long-lived,
so console and file records name the thread at INFO and below.
"""

from __future__ import annotations

import logging
import os
import sys

ENV_LEVEL = "IFG_LOG_LEVEL"
ENV_FILE = "IFG_LOG_FILE"
ENV_FILE_LEVEL = "IFG_LOG_FILE_LEVEL"

_FORMATS: dict[int, tuple[str, str | None]] = {
    logging.DEBUG: (
        "%(asctime)s %(levelname)-5s [%(threadName)s] %(name)s:%(lineno)d — %(message)s",
        "%H:%M:%S",
    ),
    logging.INFO: ("%(asctime)s [%(threadName)s] %(name)s: %(message)s", "%H:%M:%S"),
    logging.WARNING: ("%(levelname)s: %(message)s", None),
}

_FILE_FORMAT = "%(asctime)s %(levelname)-5s [%(threadName)s] %(name)s:%(lineno)d — %(message)s"
_FILE_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Libraries that log per request at INFO
_NOISY_LOGGERS = ("werkzeug", "urllib3")


def resolve_level(cli_level: str | None = None) -> str:
    """Pick the console level name: explicit flag, then env, then WARNING."""
    return cli_level or os.environ.get(ENV_LEVEL) or "WARNING"


def setup_logging(
    level: str | None = None,
    log_file: str | None = None,
    log_file_level: str | None = None,
) -> None:
    """Configure the root logger.

    Args:
        level: Console level name; falls back to IFG_LOG_LEVEL, then WARNING.
        log_file: Optional log file path; falls back to IFG_LOG_FILE.
        log_file_level: File level; falls back to IFG_LOG_FILE_LEVEL, then
            the console level.
    """
    console_level = _parse_level(resolve_level(level))
    if console_level <= logging.DEBUG:
        fmt, datefmt = _FORMATS[logging.DEBUG]
    elif console_level <= logging.INFO:
        fmt, datefmt = _FORMATS[logging.INFO]
    else:
        fmt, datefmt = _FORMATS[logging.WARNING]

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(logging.Formatter(fmt, datefmt=datefmt))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)
    root_level = console_level

    log_file = log_file or os.environ.get(ENV_FILE)
    if log_file:
        file_level_name = log_file_level or os.environ.get(ENV_FILE_LEVEL)
        file_level = _parse_level(file_level_name) if file_level_name else console_level
        handler = logging.FileHandler(log_file, encoding="utf-8")
        handler.setLevel(file_level)
        handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt=_FILE_DATEFMT))
        root.addHandler(handler)
        root_level = min(root_level, file_level)

    root.setLevel(root_level)

    if console_level > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def _parse_level(level: str | None) -> int:
    """Level name → numeric level; unknown names mean WARNING."""
    numeric = getattr(logging, (level or "").upper(), None)
    return numeric if isinstance(numeric, int) else logging.WARNING
