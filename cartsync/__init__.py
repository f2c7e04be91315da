"""
Cartsync - hybrid local/remote replication for the storefront cart.

This package keeps a cart and a saved-for-later list usable for guests,
offline users and signed-in users:
- replica: durable local copy with TTL and quota eviction
- queue: FIFO log of mutations awaiting delivery
- gateway: backend cart API client (httpx + pydantic)
- dispatcher: per-call routing by (authenticated x online)
- sync: merge + drain state machine
- storefront: per-session composition of both lists
"""

from cartsync.db import KeyValueStore, MemoryKeyValueStore, RedisKeyValueStore
from cartsync.dispatcher import ModeDispatcher
from cartsync.errors import (
    AuthError,
    AuthErrorCode,
    CartSyncError,
    LocalStorageError,
    NetworkError,
    SyncConflictError,
    ValidationError,
)
from cartsync.events import Event, EventBus, SyncEvent
from cartsync.gateway import RemoteGateway, RemoteState
from cartsync.models import ConflictPolicy, ListKind, Mode, OperationKind, ProductSnapshot, SyncState
from cartsync.queue import OperationQueue, QueuedOperation
from cartsync.replica import Replica, ReplicaItem, ReplicaStore
from cartsync.session import BearerCredentials, Connectivity, SessionContext
from cartsync.storefront import Storefront
from cartsync.sync import MergePlan, SyncCoordinator, SyncResult, plan_merge
from cartsync.views import ListView, ViewItem, ViewSource

__all__ = [
    "AuthError",
    "AuthErrorCode",
    "BearerCredentials",
    "CartSyncError",
    "ConflictPolicy",
    "Connectivity",
    "Event",
    "EventBus",
    "KeyValueStore",
    "ListKind",
    "ListView",
    "LocalStorageError",
    "MemoryKeyValueStore",
    "MergePlan",
    "Mode",
    "ModeDispatcher",
    "NetworkError",
    "OperationKind",
    "OperationQueue",
    "ProductSnapshot",
    "QueuedOperation",
    "RedisKeyValueStore",
    "RemoteGateway",
    "RemoteState",
    "Replica",
    "ReplicaItem",
    "ReplicaStore",
    "SessionContext",
    "Storefront",
    "SyncConflictError",
    "SyncCoordinator",
    "SyncEvent",
    "SyncResult",
    "SyncState",
    "ValidationError",
    "ViewItem",
    "ViewSource",
    "plan_merge",
]
