"""
Operation Queue - Durable log of mutations awaiting delivery

Records add/remove/updateQuantity mutations that could not reach the
server. Operations are consumed strictly FIFO by the sync coordinator
and carry a bounded retry budget:
- retryCount only ever increases
- an operation is removed on success, or once retryCount >= maxRetries

Persistence is best-effort: a failed write is logged and the operation
stays in the in-memory log, so user intent is never lost for the
lifetime of the session.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from cartsync.config import ListSettings
from cartsync.db import KeyValueStore, StorageKeys
from cartsync.errors import LocalStorageError
from cartsync.logging import get_logger
from cartsync.models import Clock, OperationKind, format_timestamp, parse_timestamp, utcnow

logger = get_logger(__name__)


def _validate_payload(kind: OperationKind, payload: dict[str, Any]) -> None:
    product_id = payload.get("productId")
    if not isinstance(product_id, str) or not product_id:
        raise ValueError(f"{kind.value} entry without productId")
    if kind == OperationKind.REMOVE:
        return
    quantity = payload.get("quantity")
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValueError(f"{kind.value} entry without integer quantity")


@dataclass
class QueuedOperation:
    """A mutation recorded for later delivery to the server."""
    id: str
    kind: OperationKind
    payload: dict[str, Any]
    enqueued_at: datetime
    retry_count: int = 0
    max_retries: int = 3

    @property
    def product_id(self) -> Optional[str]:
        return self.payload.get("productId")

    @property
    def is_exhausted(self) -> bool:
        return self.retry_count >= self.max_retries

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "operation": self.kind.value,
            "data": self.payload,
            "timestamp": format_timestamp(self.enqueued_at),
            "retryCount": self.retry_count,
            "maxRetries": self.max_retries,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "QueuedOperation":
        """Create from a persisted entry. Raises ValueError when the payload cannot be replayed."""
        kind = OperationKind(data["operation"])
        payload = dict(data.get("data") or {})
        _validate_payload(kind, payload)
        return cls(
            id=data["id"],
            kind=kind,
            payload=payload,
            enqueued_at=parse_timestamp(data["timestamp"]),
            retry_count=int(data.get("retryCount", 0)),
            max_retries=int(data.get("maxRetries", 3)),
        )


class OperationQueue:
    """FIFO pending-operation log for one instance (cart or saved list)."""

    def __init__(
        self,
        store: KeyValueStore,
        settings: ListSettings,
        namespace: str = "default",
        clock: Clock = utcnow,
    ):
        self.store = store
        self.settings = settings
        self.key = StorageKeys.queue_key(settings.kind, namespace)
        self._clock = clock
        self._operations: Optional[list[QueuedOperation]] = None

    async def _ensure_loaded(self) -> list[QueuedOperation]:
        if self._operations is None:
            self._operations = await self._load()
        return self._operations

    async def _load(self) -> list[QueuedOperation]:
        try:
            data = await self.store.get(self.key)
        except LocalStorageError as e:
            logger.warning(f"Unreadable {self.settings.kind.value} operation queue: {e}")
            return []

        if not isinstance(data, list):
            return []

        operations = []
        for entry in data:
            try:
                operations.append(QueuedOperation.from_dict(entry))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping corrupted queued operation: {e}")
        return operations

    async def _persist(self) -> None:
        operations = self._operations or []
        try:
            await self.store.set(self.key, [op.to_dict() for op in operations])
        except LocalStorageError as e:
            # Keep the in-memory log; the intent is still delivered this session
            logger.error(f"Error saving {self.settings.kind.value} operation queue: {e}")

    async def enqueue(
        self,
        kind: OperationKind,
        payload: dict[str, Any],
        max_retries: Optional[int] = None,
    ) -> QueuedOperation:
        """Append an operation with retryCount=0."""
        operations = await self._ensure_loaded()
        operation = QueuedOperation(
            id=uuid.uuid4().hex,
            kind=kind,
            payload=dict(payload),
            enqueued_at=self._clock(),
            retry_count=0,
            max_retries=self.settings.max_retries if max_retries is None else max_retries,
        )
        operations.append(operation)
        await self._persist()
        logger.debug(f"Queued {kind.value} for {self.settings.kind.value} ({len(operations)} pending)")
        return operation

    async def list(self) -> list[QueuedOperation]:
        """Pending operations, oldest first."""
        return list(await self._ensure_loaded())

    async def size(self) -> int:
        return len(await self._ensure_loaded())

    async def get(self, operation_id: str) -> Optional[QueuedOperation]:
        operations = await self._ensure_loaded()
        return next((op for op in operations if op.id == operation_id), None)

    async def mark_retried(self, operation_id: str) -> Optional[QueuedOperation]:
        """Increment retryCount. Returns the operation, or None if unknown."""
        operation = await self.get(operation_id)
        if operation is None:
            return None
        operation.retry_count += 1
        await self._persist()
        return operation

    async def remove(self, operation_id: str) -> bool:
        """Delete by id. Returns False if the operation was already gone."""
        operations = await self._ensure_loaded()
        remaining = [op for op in operations if op.id != operation_id]
        if len(remaining) == len(operations):
            return False
        self._operations = remaining
        await self._persist()
        return True

    async def clear(self) -> None:
        """Drop the whole queue. Only after a confirmed full sync."""
        self._operations = []
        try:
            await self.store.delete(self.key)
        except LocalStorageError as e:
            logger.error(f"Error clearing {self.settings.kind.value} operation queue: {e}")
