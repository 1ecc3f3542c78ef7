"""Centralized logging configuration for the ``expense_sync`` package.

Two public helpers:

- ``configure_logging(...)``: attach a single ``StreamHandler`` to the package
  root logger (``"expense_sync"``). Entrypoints (the CLI, a host service) call
  it once at startup.
- ``get_logger(name)``: acquire a module logger. Until logging is configured,
  the package root carries a ``NullHandler`` so library use stays silent.

Library modules never attach handlers of their own; they call
``get_logger("expense_sync.<module>")`` and leave output decisions to the host.

Log lines read ``<area>:<event> key=value ...``. Most call sites write them with
%-style arguments; ``log_event`` renders the fields for lines that carry free
text such as merchant names or notification titles.
"""

from __future__ import annotations

import logging
import os
import sys
from datetime import datetime
from typing import IO

_PKG_LOGGER_NAME = "expense_sync"
_LEVEL_ENV = "EXPENSE_SYNC_LOG_LEVEL"
# Syncs run on the "expense-sync" worker thread; the thread name tells them apart.
_DEFAULT_FORMAT = "%(asctime)s %(threadName)s %(name)s %(levelname)s %(message)s"
_CONFIGURED = False


def _parse_level(level: int | str | None) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        level = level.strip().upper()
        if level.isdigit():
            return int(level)
        numeric = getattr(logging, level, None)
        if isinstance(numeric, int):
            return numeric
        return logging.INFO
    env_val = os.getenv(_LEVEL_ENV)
    if env_val:
        return _parse_level(env_val)
    return logging.INFO


def configure_logging(
    level: int | str | None = None,
    *,
    fmt: str | None = None,
    stream: IO[str] = sys.stderr,
) -> None:
    """Configure the package root logger exactly once.

    Parameters
    ----------
    level:
        ``int`` or level name (``"DEBUG"``, ``"INFO"``...). When ``None`` the
        ``EXPENSE_SYNC_LOG_LEVEL`` environment variable is consulted, falling
        back to ``logging.INFO``.
    fmt:
        Optional format string for the handler.
    stream:
        Destination stream, ``sys.stderr`` by default.
    """

    global _CONFIGURED
    if _CONFIGURED:
        return

    logger = logging.getLogger(_PKG_LOGGER_NAME)
    for h in list(logger.handlers):
        if isinstance(h, logging.NullHandler):
            logger.removeHandler(h)

    resolved = _parse_level(level)
    handler = logging.StreamHandler(stream)
    handler.setLevel(resolved)
    handler.setFormatter(logging.Formatter(fmt or _DEFAULT_FORMAT))

    logger.setLevel(resolved)
    logger.addHandler(handler)
    logger.propagate = False

    _CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    """Return a logger by name with a ``NullHandler`` fallback on the package root."""

    pkg_logger = logging.getLogger(_PKG_LOGGER_NAME)
    if not _CONFIGURED and not pkg_logger.handlers:
        pkg_logger.addHandler(logging.NullHandler())
    return logging.getLogger(name)


def _render(value: object) -> str:
    if value is None:
        return "none"
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, float):
        return f"{value:.2f}"
    if isinstance(value, datetime):
        return value.isoformat()
    text = str(value)
    if not text or any(ch.isspace() or ch in '"=' for ch in text):
        return '"' + text.replace('"', '\\"') + '"'
    return text


def log_event(logger: logging.Logger, level: int, event: str, /, **fields: object) -> None:
    """Log ``event`` followed by ``key=value`` pairs in call order.

    Values with whitespace, quotes or ``=`` are double-quoted; floats get two
    decimals and datetimes ISO 8601.
    """

    if not logger.isEnabledFor(level):
        return
    parts = [event, *(f"{key}={_render(value)}" for key, value in fields.items())]
    logger.log(level, " ".join(parts), stacklevel=2)


__all__ = ["configure_logging", "get_logger", "log_event"]
