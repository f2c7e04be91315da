"""Shared enums, value objects and clock helpers."""
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are treated as UTC."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


class ListKind(str, Enum):
    """The two parallel instances kept in sync."""
    CART = "cart"
    SAVED = "saved"


class OperationKind(str, Enum):
    """Mutations that can be queued for later delivery."""
    ADD = "add"
    REMOVE = "remove"
    UPDATE_QUANTITY = "updateQuantity"


class ConflictPolicy(str, Enum):
    """
    Rule used to reconcile local and server lines for the same product.

    - SUM_QUANTITIES: quantities from both sides are added
    - KEEP_LATEST: the line with the more recent updatedAt wins
    - KEEP_SERVER / KEEP_LOCAL: one side wins unconditionally
    - ASK_USER: merge deferred until resolved out-of-band
    """
    SUM_QUANTITIES = "SUM_QUANTITIES"
    KEEP_LATEST = "KEEP_LATEST"
    KEEP_SERVER = "KEEP_SERVER"
    KEEP_LOCAL = "KEEP_LOCAL"
    ASK_USER = "ASK_USER"


class SyncState(str, Enum):
    """
    Sync lifecycle of one instance.

    Flow:
        guest -> authenticating -> merging -> draining -> synced
    """
    GUEST = "guest"
    AUTHENTICATING = "authenticating"
    MERGING = "merging"
    DRAINING = "draining"
    SYNCED = "synced"


class Mode(str, Enum):
    """(authenticated x online) classification of a single call."""
    GUEST = "guest"
    OFFLINE = "offline"
    ONLINE = "online"


@dataclass(frozen=True)
class ProductSnapshot:
    """Display fields captured with a line so the local view renders offline."""
    name: Optional[str] = None
    image: Optional[str] = None
    category: Optional[str] = None
