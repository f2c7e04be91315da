"""
Durable key-value storage for replicas and operation queues.

Provides:
- KeyValueStore protocol (get/set/delete of JSON-compatible records)
- RedisKeyValueStore backed by the async Upstash Redis client
- MemoryKeyValueStore for tests and embeddings without Redis
- StorageKeys naming and the per-install device id
"""

import json
import uuid
from typing import Any, Optional, Protocol

from upstash_redis.asyncio import Redis as AsyncRedis

from cartsync.config import UPSTASH_REDIS_REST_TOKEN, UPSTASH_REDIS_REST_URL
from cartsync.errors import ERROR_STORAGE_QUOTA, ERROR_STORAGE_READ, ERROR_STORAGE_WRITE, LocalStorageError
from cartsync.logging import get_logger
from cartsync.models import ListKind

logger = get_logger(__name__)

# Markers Redis/Upstash put in errors when a write is rejected for size or memory
_QUOTA_MARKERS = ("oom", "maxmemory", "max request size", "quota")


class KeyValueStore(Protocol):
    """Minimal durable record store used by ReplicaStore and OperationQueue."""

    async def get(self, key: str) -> Optional[Any]: ...

    async def set(self, key: str, record: Any) -> None: ...

    async def delete(self, key: str) -> None: ...


_redis_client: Optional[AsyncRedis] = None


def get_redis() -> AsyncRedis:
    """
    Get async Upstash Redis client (singleton).

    Uses standard Upstash env var names:
    - UPSTASH_REDIS_REST_URL
    - UPSTASH_REDIS_REST_TOKEN
    """
    global _redis_client

    if _redis_client is None:
        if not UPSTASH_REDIS_REST_URL or not UPSTASH_REDIS_REST_TOKEN:
            raise ValueError("UPSTASH_REDIS_REST_URL and UPSTASH_REDIS_REST_TOKEN must be set")
        _redis_client = AsyncRedis(url=UPSTASH_REDIS_REST_URL, token=UPSTASH_REDIS_REST_TOKEN)

    return _redis_client


def _is_quota_error(error: Exception) -> bool:
    text = str(error).lower()
    return any(marker in text for marker in _QUOTA_MARKERS)


class RedisKeyValueStore:
    """KeyValueStore on Upstash Redis. Records are stored as JSON strings."""

    def __init__(self, redis: Optional[AsyncRedis] = None):
        self._redis = redis  # Lazy initialization

    @property
    def redis(self) -> AsyncRedis:
        if self._redis is None:
            try:
                self._redis = get_redis()
            except ValueError as e:
                raise LocalStorageError(f"Redis not available: {e}") from e
        return self._redis

    async def get(self, key: str) -> Optional[Any]:
        try:
            data = await self.redis.get(key)
        except LocalStorageError:
            raise
        except Exception as e:
            logger.error("Failed to read %s from Redis: %s", key, e)
            raise LocalStorageError(f"{ERROR_STORAGE_READ}: {e}") from e

        if data is None:
            return None
        try:
            return json.loads(data)
        except (json.JSONDecodeError, TypeError) as e:
            raise LocalStorageError(f"{ERROR_STORAGE_READ}: corrupted record {key}") from e

    async def set(self, key: str, record: Any) -> None:
        try:
            await self.redis.set(key, json.dumps(record))
        except LocalStorageError:
            raise
        except Exception as e:
            quota = _is_quota_error(e)
            logger.error("Failed to write %s to Redis: %s", key, e)
            message = ERROR_STORAGE_QUOTA if quota else ERROR_STORAGE_WRITE
            raise LocalStorageError(f"{message}: {e}", quota_exceeded=quota) from e

    async def delete(self, key: str) -> None:
        try:
            await self.redis.delete(key)
        except LocalStorageError:
            raise
        except Exception as e:
            logger.error("Failed to delete %s from Redis: %s", key, e)
            raise LocalStorageError(f"{ERROR_STORAGE_WRITE}: {e}") from e


class MemoryKeyValueStore:
    """
    In-process KeyValueStore.

    Records are kept JSON-encoded so the quota applies to the same
    serialized size a durable backend would see.
    """

    def __init__(self, max_bytes: Optional[int] = None):
        self.max_bytes = max_bytes
        self._data: dict[str, str] = {}

    def _size_with(self, key: str, encoded: str) -> int:
        return sum(len(v) for k, v in self._data.items() if k != key) + len(encoded)

    async def get(self, key: str) -> Optional[Any]:
        encoded = self._data.get(key)
        if encoded is None:
            return None
        try:
            return json.loads(encoded)
        except json.JSONDecodeError as e:
            raise LocalStorageError(f"{ERROR_STORAGE_READ}: corrupted record {key}") from e

    async def set(self, key: str, record: Any) -> None:
        encoded = json.dumps(record)
        if self.max_bytes is not None and self._size_with(key, encoded) > self.max_bytes:
            raise LocalStorageError(ERROR_STORAGE_QUOTA, quota_exceeded=True)
        self._data[key] = encoded

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def raw(self, key: str) -> Optional[str]:
        """Serialized record as stored (for inspection)."""
        return self._data.get(key)

    def put_raw(self, key: str, encoded: str) -> None:
        """Store an already-serialized value, bypassing validation."""
        self._data[key] = encoded

    def keys(self) -> list[str]:
        return list(self._data)


class StorageKeys:
    """Key naming for persisted records."""

    PREFIX = "cartsync:"
    DEVICE_ID = "cartsync:device:id"

    @staticmethod
    def replica_key(kind: ListKind, namespace: str = "default") -> str:
        return f"{StorageKeys.PREFIX}{kind.value}:replica:{namespace}"

    @staticmethod
    def queue_key(kind: ListKind, namespace: str = "default") -> str:
        return f"{StorageKeys.PREFIX}{kind.value}:queue:{namespace}"


async def get_device_id(store: KeyValueStore) -> str:
    """
    Get the per-install device id, creating it on first use.

    Falls back to an unpersisted id when storage is unavailable so a
    sync request can still be attributed for this session.
    """
    try:
        existing = await store.get(StorageKeys.DEVICE_ID)
    except LocalStorageError as e:
        logger.warning("Device id unreadable, generating a new one: %s", e)
        existing = None
    if isinstance(existing, str) and existing:
        return existing

    device_id = f"device_{uuid.uuid4().hex}"
    try:
        await store.set(StorageKeys.DEVICE_ID, device_id)
    except LocalStorageError as e:
        logger.warning("Failed to persist device id: %s", e)
    return device_id
