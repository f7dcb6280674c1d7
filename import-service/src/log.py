"""Service logging.

One shared ``import_service`` logger; modules call ``get_logger(__name__)``
for a child. Lines carry a UTC timestamp and ``key=value`` context.
"""

from __future__ import annotations

import logging
import time

_APP_LOGGER_NAME = "import_service"


class _UTCFormatter(logging.Formatter):
    converter = staticmethod(time.gmtime)


def configure_logging(level_name: str = "INFO") -> logging.Logger:
    """Configure the service logger. Safe to call more than once."""
    level = getattr(logging, (level_name or "INFO").upper(), logging.INFO)
    app_logger = logging.getLogger(_APP_LOGGER_NAME)
    app_logger.setLevel(level)

    if getattr(app_logger, "_configured", False):
        return app_logger

    handler = logging.StreamHandler()
    handler.setFormatter(
        _UTCFormatter(
            fmt="%(asctime)sZ %(levelname)s %(name)s: %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
    )
    app_logger.addHandler(handler)
    app_logger.propagate = False
    app_logger._configured = True  # type: ignore[attr-defined]
    return app_logger


def get_logger(module_name: str | None = None) -> logging.Logger:
    return logging.getLogger(f"{_APP_LOGGER_NAME}.{module_name or 'app'}")
