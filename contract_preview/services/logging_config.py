"""Logging setup for the contract preview service."""

from __future__ import annotations

import logging
import sys

LOGGER_NAMESPACE = "contract_preview"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_configured = False


def get_logger(name: str) -> logging.Logger:
    """Return a logger nested under the service namespace."""
    if name.startswith(LOGGER_NAMESPACE):
        return logging.getLogger(name)
    return logging.getLogger(f"{LOGGER_NAMESPACE}.{name}")


def configure_logging(level: str | int = "INFO") -> None:
    """Attach a single stderr handler to the service logger.

    Safe to call more than once; later calls only adjust the level.
    """
    global _configured
    root = logging.getLogger(LOGGER_NAMESPACE)
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    root.setLevel(level)

    if _configured:
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.propagate = False
    _configured = True

