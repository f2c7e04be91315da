"""
Error taxonomy and common error messages.

Message strings are centralized to avoid duplication across the
replica, queue, gateway and sync layers.
"""
from enum import Enum
from typing import Any, Optional


# Local storage
ERROR_STORAGE_QUOTA = "Local storage quota exceeded"
ERROR_STORAGE_WRITE = "Local storage write failed"
ERROR_STORAGE_READ = "Local storage read failed"

# Authentication
ERROR_UNAUTHORIZED = "Authentication required. Please sign in."
ERROR_FORBIDDEN = "Access forbidden. Insufficient permissions."
ERROR_TOKEN_EXPIRED = "Session expired. Please sign in again."
ERROR_SIGN_IN_TO_SYNC = "Sign in to sync your cart"

# Network
ERROR_OFFLINE = "No network connection"
ERROR_MALFORMED_RESPONSE = "Malformed response from cart service"

# Validation
ERROR_INVALID_PRODUCT_ID = "product_id must be a non-empty string"
ERROR_INVALID_QUANTITY = "quantity must be a positive integer"
ERROR_INVALID_NEW_QUANTITY = "new_quantity must be an integer"
ERROR_INVALID_PRICE = "price must be a non-negative number"
ERROR_ITEM_NOT_SAVED = "Item not found in saved list"

# Sync
ERROR_MERGE_CONFLICT = "Local and server lists disagree; conflict resolution required"


class AuthErrorCode(str, Enum):
    """Authentication failure kinds reported by the gateway."""
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"


class CartSyncError(Exception):
    """Base class for all errors raised by cartsync."""


class LocalStorageError(CartSyncError):
    """
    Local persistence failed (quota or parse failure).

    ``replica`` carries the in-memory state the caller can keep showing
    when the failure happened during a replica mutation.
    """

    def __init__(self, message: str = ERROR_STORAGE_WRITE, *, quota_exceeded: bool = False, replica: Any = None):
        super().__init__(message)
        self.quota_exceeded = quota_exceeded
        self.replica = replica


class NetworkError(CartSyncError):
    """Transient remote failure, eligible for the queue/retry path."""

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404


class AuthError(CartSyncError):
    """Authentication failure. Never retried without re-authentication."""

    _MESSAGES = {
        AuthErrorCode.UNAUTHORIZED: ERROR_UNAUTHORIZED,
        AuthErrorCode.FORBIDDEN: ERROR_FORBIDDEN,
        AuthErrorCode.TOKEN_EXPIRED: ERROR_TOKEN_EXPIRED,
    }

    def __init__(self, code: AuthErrorCode = AuthErrorCode.UNAUTHORIZED, message: Optional[str] = None):
        super().__init__(message or self._MESSAGES[code])
        self.code = code


class ValidationError(CartSyncError, ValueError):
    """Malformed mutation. Rejected immediately and never queued."""


class SyncConflictError(CartSyncError):
    """
    Raised under the ASK_USER policy when local and server lists disagree.

    The merge is deferred; the caller resolves out-of-band and retries with
    a concrete policy.
    """

    def __init__(self, replica: Any, remote: Any, conflicting_ids: list[str]):
        super().__init__(ERROR_MERGE_CONFLICT)
        self.replica = replica
        self.remote = remote
        self.conflicting_ids = conflicting_ids
