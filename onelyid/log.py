"""
Onelyid — Logging Helpers
===========================

What:  The default logger injected into the middleware, and the root logging
       setup used by the demo host application.
How:   Standard library ``logging`` with the same line format everywhere:
       ``%(asctime)s [%(levelname)s] %(name)s: %(message)s``.

A host that passes its own ``logging.Logger`` through ``OnelyidConfig.logger``
bypasses ``get_console_logger`` entirely.
"""

import logging
import sys

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

LOGGER_NAME = "onelyid"


def get_console_logger(level: str = "INFO") -> logging.Logger:
    """
    Logger used when the host does not inject one.

    Attaches a single stdout handler the first time it is called; later calls
    reuse it, so building several middleware instances does not duplicate lines.
    """
    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        logger.addHandler(handler)
        logger.setLevel(getattr(logging, level, logging.INFO))
        # Avoid printing twice when the host also configured the root logger.
        logger.propagate = False
    return logger


def setup_logging(level: str = "INFO") -> None:
    """
    Configure root logging for a standalone host application.

    When:    Once at startup, before any other initialization.
    """
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("alembic").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
