"""Process-wide logging for the worker, the CLI and the root scripts.

Console output always goes to stdout. A dated file is added under ``logs/``
(or ``AUTOAPPLY_LOG_DIR``) unless ``AUTOAPPLY_LOG_FILE`` is false.
"""
from __future__ import annotations

import logging
import os
import sys
from datetime import date
from pathlib import Path

DEFAULT_LOG_DIR = Path(__file__).resolve().parent.parent / "logs"
_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s  %(message)s"
_DATE_FMT = "%Y-%m-%d %H:%M:%S"

# chatty below WARNING at our default level
_QUIET = ("httpx", "httpcore", "openai", "sqlalchemy.engine")

_installed: list[logging.Handler] = []


def get_logger(name: str) -> logging.Logger:
    if not _installed:
        configure_logging()
    return logging.getLogger(name)


def configure_logging(level: str | None = None, log_file: bool | None = None) -> None:
    """(Re)install the root handlers. Safe to call more than once."""
    level_name = (level or os.environ.get("LOG_LEVEL") or "INFO").upper()
    numeric = getattr(logging, level_name, logging.INFO)
    if log_file is None:
        log_file = os.environ.get("AUTOAPPLY_LOG_FILE", "true").lower() not in ("0", "false", "no")

    root = logging.getLogger()
    for handler in _installed:
        root.removeHandler(handler)
        handler.close()
    _installed.clear()
    root.setLevel(numeric)

    formatter = logging.Formatter(_FORMAT, datefmt=_DATE_FMT)
    console = logging.StreamHandler(sys.stdout)
    console.setLevel(numeric)
    console.setFormatter(formatter)
    _install(root, console)

    if log_file:
        log_dir = Path(os.environ.get("AUTOAPPLY_LOG_DIR") or DEFAULT_LOG_DIR)
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            fh = logging.FileHandler(log_dir / f"autoapply_{date.today():%Y-%m-%d}.log", encoding="utf-8")
        except OSError as exc:
            root.warning("File logging disabled, cannot write to %s: %s", log_dir, exc)
        else:
            fh.setLevel(logging.DEBUG)
            fh.setFormatter(formatter)
            _install(root, fh)

    for name in _QUIET:
        logging.getLogger(name).setLevel(max(numeric, logging.WARNING))


def _install(root: logging.Logger, handler: logging.Handler) -> None:
    root.addHandler(handler)
    _installed.append(handler)


def mask(identifier: str | None) -> str:
    """Owner identifiers are phone numbers; only the prefix goes to the logs."""
    if not identifier:
        return "?"
    return identifier[:6] + "***"
