"""Storage access for replicas."""
from cartsync.db import KeyValueStore, MemoryKeyValueStore, RedisKeyValueStore, StorageKeys

__all__ = ["KeyValueStore", "MemoryKeyValueStore", "RedisKeyValueStore", "StorageKeys"]
