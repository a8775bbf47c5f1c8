"""
Logging setup for the import service.

Modules log through ``logging.getLogger(__name__)``. Stage work runs on the
``import-worker`` thread pool, so the thread name is part of every line.
"""
from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Optional


_is_configured = False

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(threadName)s | %(name)s | %(message)s"

# Third-party loggers that drown out batch progress at INFO.
QUIET_LOGGERS = ("sqlalchemy.engine", "multipart", "uvicorn.access")


def configure_logging(level: Optional[str] = None, *, debug: bool = False) -> None:
    """
    Install the console handler once per process.

    Args:
        level: Log level name such as "DEBUG" or "INFO". Unknown names fall back to INFO.
        debug: Let SQL and request logs through at the chosen level.
    """
    global _is_configured

    if _is_configured:
        return

    log_level = (level or "INFO").upper()
    if not isinstance(logging.getLevelName(log_level), int):
        log_level = "INFO"

    loggers = {}
    if not debug:
        loggers = {name: {"level": "WARNING"} for name in QUIET_LOGGERS}

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "standard": {"format": LOG_FORMAT, "datefmt": "%Y-%m-%d %H:%M:%S"},
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "standard",
                    "level": log_level,
                }
            },
            "root": {"handlers": ["console"], "level": log_level},
            "loggers": loggers,
        }
    )

    logging.getLogger("customer_import").setLevel(log_level)
    logging.getLogger(__name__).debug("Logging configured at %s", log_level)

    _is_configured = True
