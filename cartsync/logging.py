"""
Logging for cartsync.

Only the ``cartsync`` logger tree is configured, so an embedding
application keeps control of the root logger. When the host already
has root handlers, records simply propagate to them.

Usage:
    from cartsync.logging import get_logger
    logger = get_logger(__name__)
"""

import logging
import os
import sys
from functools import cache

PACKAGE_LOGGER = "cartsync"

_DETAILED_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
_COMPACT_FORMAT = "%(levelname)s - %(name)s - %(message)s"


def _get_log_level() -> int:
    """CARTSYNC_LOG_LEVEL, then LOG_LEVEL, defaulting to INFO."""
    level_name = os.environ.get("CARTSYNC_LOG_LEVEL") or os.environ.get("LOG_LEVEL", "INFO")
    return getattr(logging, level_name.upper(), logging.INFO)


def _configure_package_logger() -> None:
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(_get_log_level())

    if package_logger.handlers or logging.getLogger().handlers:
        return

    handler = logging.StreamHandler(sys.stdout)
    # Production log collectors add their own timestamps
    is_production = os.environ.get("CARTSYNC_ENV") == "production"
    handler.setFormatter(logging.Formatter(_COMPACT_FORMAT if is_production else _DETAILED_FORMAT))
    package_logger.addHandler(handler)

    # Gateway requests would otherwise log one line per call
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


_configure_package_logger()


@cache
def get_logger(name: str) -> logging.Logger:
    """Logger for a cartsync module (typically ``__name__``)."""
    return logging.getLogger(name)


def _escape_log_injection(value: str) -> str:
    """Escape control characters that could forge log lines (CWE-117)."""
    return (
        value.replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
        .replace("\x00", "")
    )


def sanitize_id_for_logging(id_value: str | None) -> str:
    """
    Shorten a user or product id to 8 characters for logs.

    User ids and product ids arrive from callers and the backend, so they
    are escaped before being written. Empty values become "N/A".
    """
    if not id_value:
        return "N/A"
    safe_value = _escape_log_injection(str(id_value))
    return safe_value[:8]


def sanitize_string_for_logging(value: str | None, max_length: int = 50) -> str:
    """Escape and truncate free text such as backend error bodies."""
    if not value:
        return "N/A"
    safe_value = _escape_log_injection(str(value))
    if len(safe_value) <= max_length:
        return safe_value
    return safe_value[:max_length] + "..."
