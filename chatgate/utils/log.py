"""Shared *structlog* logger.

The rest of the codebase can ``from chatgate.utils.log import log`` and use
``log.info("msg", key=value)``.  Services that only emit plain messages keep
using ``logging.getLogger(__name__)``; structlog renders through the stdlib
``logging`` module so both end up on the same handlers.
"""

from __future__ import annotations

import logging
from typing import Any

import structlog

_CONFIGURED = False


def configure_logging(level: str = "INFO") -> None:  # noqa: D401 – bootstrap helper
    """Configure stdlib logging and the structlog processor chain once."""

    global _CONFIGURED

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=numeric_level, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    logging.getLogger().setLevel(numeric_level)

    if _CONFIGURED:
        return

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _CONFIGURED = True


# Keep the logger global so every import shares the same base instance.
log = structlog.get_logger("chatgate")


def get_logger(**bindings: Any):  # noqa: D401 – factory helper
    """Return a bound logger with optional key/value bindings."""

    return log.bind(**bindings)


__all__ = ["configure_logging", "get_logger", "log"]
