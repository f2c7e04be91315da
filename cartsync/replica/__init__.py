"""Replica package: models, storage, and the replica store."""
from .models import Replica, ReplicaItem
from .service import ReplicaStore

__all__ = [
    "Replica",
    "ReplicaItem",
    "ReplicaStore",
]
