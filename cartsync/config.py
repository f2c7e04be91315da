"""
Configuration - environment-driven settings.

All values have working defaults; constructors accept explicit
overrides so tests never depend on the process environment.
"""

import os
from dataclasses import dataclass

from cartsync.logging import get_logger
from cartsync.models import ConflictPolicy, ListKind

logger = get_logger(__name__)


def _get_int(name: str, default: int) -> int:
    value = os.environ.get(name, "").strip()
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Invalid integer for %s: %r, using %s", name, value, default)
        return default


def _get_float(name: str, default: float) -> float:
    value = os.environ.get(name, "").strip()
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning("Invalid number for %s: %r, using %s", name, value, default)
        return default


def _get_policy(name: str, default: ConflictPolicy) -> ConflictPolicy:
    value = os.environ.get(name, "").strip().upper()
    if not value:
        return default
    try:
        return ConflictPolicy(value)
    except ValueError:
        logger.warning("Unknown conflict policy %r in %s, using %s", value, name, default.value)
        return default


# Environment variables
API_URL = os.environ.get("CARTSYNC_API_URL", "http://localhost:8099/api").rstrip("/")
HTTP_TIMEOUT = _get_float("CARTSYNC_HTTP_TIMEOUT", 10.0)
MAX_RETRIES = _get_int("CARTSYNC_MAX_RETRIES", 3)
RETRY_WAIT_MAX = _get_float("CARTSYNC_RETRY_WAIT_MAX", 4.0)
CONFLICT_POLICY = _get_policy("CARTSYNC_CONFLICT_POLICY", ConflictPolicy.SUM_QUANTITIES)

# Upstash Redis - standard env var names per docs
UPSTASH_REDIS_REST_URL = os.environ.get("UPSTASH_REDIS_REST_URL", "")
UPSTASH_REDIS_REST_TOKEN = os.environ.get("UPSTASH_REDIS_REST_TOKEN", "")


@dataclass(frozen=True)
class ListSettings:
    """Per-instance settings for the cart or the saved-for-later list."""
    kind: ListKind
    ttl_days: int
    evict_keep: int
    max_retries: int
    # Path below /carts/{userId} ("" for the cart itself, "/saved" for the saved list)
    route_suffix: str


CART_SETTINGS = ListSettings(
    kind=ListKind.CART,
    ttl_days=_get_int("CARTSYNC_CART_TTL_DAYS", 7),
    evict_keep=_get_int("CARTSYNC_CART_EVICT_KEEP", 10),
    max_retries=MAX_RETRIES,
    route_suffix="",
)

SAVED_SETTINGS = ListSettings(
    kind=ListKind.SAVED,
    ttl_days=_get_int("CARTSYNC_SAVED_TTL_DAYS", 30),
    evict_keep=_get_int("CARTSYNC_SAVED_EVICT_KEEP", 20),
    max_retries=MAX_RETRIES,
    route_suffix="/saved",
)


def settings_for(kind: ListKind) -> ListSettings:
    """Get settings for one of the two instances."""
    return CART_SETTINGS if kind == ListKind.CART else SAVED_SETTINGS
