"""Replica store: the durable local copy of a cart or saved list."""
import uuid
from datetime import timedelta
from typing import Iterable, Optional

from cartsync.config import ListSettings
from cartsync.errors import ERROR_STORAGE_WRITE, LocalStorageError
from cartsync.logging import get_logger, sanitize_id_for_logging
from cartsync.models import Clock, ProductSnapshot, utcnow
from cartsync.money import Number, to_decimal
from .models import Replica, ReplicaItem
from .storage import KeyValueStore, StorageKeys

logger = get_logger(__name__)


class ReplicaStore:
    """
    Manages one local replica in a KeyValueStore.

    Features:
    - Lazy expiry: an expired replica is dropped on read, no background timer
    - Quota handling: evicts all but the newest K lines and retries once
    - The in-memory copy keeps serving reads when persistence fails
    - At most one line per product (duplicate adds sum quantities)
    """

    def __init__(
        self,
        store: KeyValueStore,
        settings: ListSettings,
        namespace: str = "default",
        clock: Clock = utcnow,
    ):
        self.store = store
        self.settings = settings
        self.key = StorageKeys.replica_key(settings.kind, namespace)
        self._clock = clock
        self._replica: Optional[Replica] = None
        self._loaded = False

    def create_empty(self) -> Replica:
        """New replica expiring after the configured TTL."""
        now = self._clock()
        return Replica(
            items=[],
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(days=self.settings.ttl_days),
            session_id=f"session_{uuid.uuid4().hex}",
        )

    async def get(self) -> Optional[Replica]:
        """Current replica, or None when absent or expired."""
        if not self._loaded:
            self._replica = await self._load()
            self._loaded = True

        replica = self._replica
        if replica is not None and replica.is_expired(self._clock()):
            logger.info(f"{self.settings.kind.value} replica expired at {replica.expires_at.isoformat()}, clearing")
            try:
                await self.clear()
            except LocalStorageError as e:
                logger.warning(f"Failed to remove expired replica: {e}")
            return None
        return replica

    async def _load(self) -> Optional[Replica]:
        try:
            data = await self.store.get(self.key)
        except LocalStorageError as e:
            logger.warning(f"Unreadable {self.settings.kind.value} replica: {e}")
            await self._discard_corrupted()
            return None

        if not data:
            return None

        try:
            return Replica.from_dict(data)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            # Corrupted data - clear it and start over
            logger.warning(f"Corrupted {self.settings.kind.value} replica: {e}")
            await self._discard_corrupted()
            return None

    async def _discard_corrupted(self) -> None:
        try:
            await self.store.delete(self.key)
        except LocalStorageError as e:
            logger.warning(f"Failed to discard corrupted replica: {e}")

    def _evict(self, replica: Replica) -> int:
        """Keep only the newest K lines by addedAt. Returns the number evicted."""
        keep = self.settings.evict_keep
        if len(replica.items) <= keep:
            return 0
        newest = sorted(replica.items, key=lambda item: item.added_at)[-keep:] if keep > 0 else []
        kept_ids = {item.local_id for item in newest}
        evicted = len(replica.items) - len(kept_ids)
        replica.items = [item for item in replica.items if item.local_id in kept_ids]
        return evicted

    async def save(self, replica: Replica) -> Replica:
        """
        Persist the replica.

        On quota failure the oldest lines are evicted and the write is
        retried once. A failure that survives is raised with the in-memory
        replica attached; the session keeps working from memory.
        """
        replica.updated_at = self._clock()
        self._replica = replica
        self._loaded = True

        try:
            await self.store.set(self.key, replica.to_dict())
            return replica
        except LocalStorageError as e:
            if not e.quota_exceeded:
                logger.error(f"Failed to save {self.settings.kind.value} replica: {e}")
                raise LocalStorageError(str(e), replica=replica) from e

            evicted = self._evict(replica)
            logger.warning(
                f"Storage quota exceeded for {self.settings.kind.value} replica, "
                f"evicted {evicted} oldest items"
            )

        try:
            await self.store.set(self.key, replica.to_dict())
        except LocalStorageError as e:
            logger.error(f"Still unable to save {self.settings.kind.value} replica after eviction: {e}")
            raise LocalStorageError(
                f"{ERROR_STORAGE_WRITE}: {e}", quota_exceeded=e.quota_exceeded, replica=replica
            ) from e
        return replica

    async def add_item(
        self,
        product_id: str,
        quantity: int,
        price: Number,
        snapshot: Optional[ProductSnapshot] = None,
        *,
        queued: bool = False,
    ) -> Replica:
        """Add a line, or add ``quantity`` to the existing line for the product."""
        replica = await self.get() or self.create_empty()
        now = self._clock()

        existing = replica.find(product_id)
        if existing:
            existing.quantity += quantity
            existing.unit_price = to_decimal(price)
            existing.updated_at = now
            existing.queued = existing.queued or queued
            if snapshot:
                existing.name = snapshot.name or existing.name
                existing.image = snapshot.image or existing.image
                existing.category = snapshot.category or existing.category
            if existing.quantity <= 0:
                replica.items = [item for item in replica.items if item.product_id != product_id]
        else:
            snapshot = snapshot or ProductSnapshot()
            replica.items.append(
                ReplicaItem(
                    local_id=uuid.uuid4().hex,
                    product_id=product_id,
                    quantity=quantity,
                    unit_price=to_decimal(price),
                    added_at=now,
                    updated_at=now,
                    name=snapshot.name,
                    image=snapshot.image,
                    category=snapshot.category,
                    queued=queued,
                )
            )

        logger.debug(f"Added {quantity} x {sanitize_id_for_logging(product_id)} to local {self.settings.kind.value}")
        return await self.save(replica)

    async def remove_item(self, product_id: str) -> Replica:
        """Remove the line for a product. Absent products are a no-op."""
        replica = await self.get()
        if replica is None:
            return self.create_empty()

        remaining = [item for item in replica.items if item.product_id != product_id]
        if len(remaining) == len(replica.items):
            return replica

        replica.items = remaining
        return await self.save(replica)

    async def update_quantity(self, product_id: str, new_quantity: int, *, queued: bool = False) -> Replica:
        """Set a line's quantity; zero or less removes it."""
        if new_quantity <= 0:
            return await self.remove_item(product_id)

        replica = await self.get()
        if replica is None:
            return self.create_empty()

        item = replica.find(product_id)
        if item is None:
            return replica

        item.quantity = new_quantity
        item.updated_at = self._clock()
        item.queued = item.queued or queued
        return await self.save(replica)

    async def contains(self, product_id: str) -> bool:
        replica = await self.get()
        return replica is not None and replica.find(product_id) is not None

    async def clear(self) -> None:
        """Drop the persisted replica entirely."""
        self._replica = None
        self._loaded = True
        await self.store.delete(self.key)

    async def discard(self, items: Iterable[ReplicaItem]) -> Optional[Replica]:
        """
        Remove lines that are unchanged since they were captured.

        A line modified after the capture (different updatedAt) survives.
        The replica is cleared entirely once nothing remains.
        """
        captured = {(item.product_id, item.updated_at) for item in items}
        return await self._retain(lambda item: (item.product_id, item.updated_at) not in captured)

    async def discard_queued(self) -> Optional[Replica]:
        """Remove lines whose effect was delivered through the queue."""
        return await self._retain(lambda item: not item.queued)

    async def _retain(self, keep) -> Optional[Replica]:
        replica = await self.get()
        if replica is None:
            return None

        remaining = [item for item in replica.items if keep(item)]
        if not remaining:
            await self.clear()
            return None
        if len(remaining) != len(replica.items):
            replica.items = remaining
            return await self.save(replica)
        return replica
