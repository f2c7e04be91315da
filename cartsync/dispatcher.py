"""
Mode Dispatcher - per-call routing between replica, queue and server.

Each call is classified fresh from the session context and the
connectivity signal:

| authenticated | online | path                                             |
|---------------|--------|--------------------------------------------------|
| no            | -      | replica only                                     |
| yes           | no     | replica + enqueue                                |
| yes           | yes    | server; on failure replica + enqueue (fallback)  |

Mutations never fail the caller on remote or storage errors; the
returned view is always usable.
"""

from decimal import Decimal
from typing import Awaitable, Callable, Optional

from cartsync.errors import (
    ERROR_INVALID_NEW_QUANTITY,
    ERROR_INVALID_PRICE,
    ERROR_INVALID_PRODUCT_ID,
    ERROR_INVALID_QUANTITY,
    AuthError,
    LocalStorageError,
    NetworkError,
    ValidationError,
)
from cartsync.events import EventBus, SyncEvent
from cartsync.gateway.client import RemoteGateway
from cartsync.gateway.models import RemoteState
from cartsync.logging import get_logger, sanitize_id_for_logging
from cartsync.models import Mode, OperationKind, ProductSnapshot
from cartsync.money import Number, to_decimal, to_float
from cartsync.queue import OperationQueue
from cartsync.replica.models import Replica
from cartsync.replica.service import ReplicaStore
from cartsync.session import Connectivity, SessionContext
from cartsync.views import ListView

logger = get_logger(__name__)


def validate_product_id(product_id) -> str:
    if not product_id or not isinstance(product_id, str) or not product_id.strip():
        raise ValidationError(ERROR_INVALID_PRODUCT_ID)
    return product_id


def validate_quantity(quantity) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise ValidationError(ERROR_INVALID_QUANTITY)
    return quantity


def validate_price(price) -> Decimal:
    if isinstance(price, bool) or not isinstance(price, (int, float, Decimal)):
        raise ValidationError(ERROR_INVALID_PRICE)
    value = to_decimal(price)
    if not value.is_finite() or value < 0:
        raise ValidationError(ERROR_INVALID_PRICE)
    return value


class ModeDispatcher:
    """Facade over one instance (cart or saved list)."""

    def __init__(
        self,
        replica_store: ReplicaStore,
        queue: OperationQueue,
        gateway: RemoteGateway,
        connectivity: Connectivity,
        events: Optional[EventBus] = None,
    ):
        self.replica_store = replica_store
        self.queue = queue
        self.gateway = gateway
        self.connectivity = connectivity
        self.events = events or EventBus()
        self.kind = replica_store.settings.kind

    def classify(self, session: SessionContext) -> Mode:
        """
        Mode of a single call.

        An authenticated session without a user id cannot address the
        server yet, so it takes the offline path.
        """
        if not session.is_authenticated:
            return Mode.GUEST
        if not self.connectivity.is_online or not session.user_id:
            return Mode.OFFLINE
        return Mode.ONLINE

    # ==================== MUTATIONS ====================

    async def add_item(
        self,
        session: SessionContext,
        product_id: str,
        quantity: int = 1,
        price: Number = 0,
        snapshot: Optional[ProductSnapshot] = None,
    ) -> ListView:
        """Add a product, summing quantities with an existing line."""
        validate_product_id(product_id)
        validate_quantity(quantity)
        unit_price = validate_price(price)

        payload = {"productId": product_id, "quantity": quantity, "price": to_float(unit_price)}
        return await self._mutate(
            session,
            OperationKind.ADD,
            payload,
            local=lambda queued: self.replica_store.add_item(
                product_id, quantity, unit_price, snapshot, queued=queued
            ),
            remote=lambda user_id: self.gateway.add_item(user_id, product_id, quantity, unit_price),
        )

    async def remove_item(self, session: SessionContext, product_id: str) -> ListView:
        """Remove a product's line. Removing an absent product is a no-op."""
        validate_product_id(product_id)
        return await self._mutate(
            session,
            OperationKind.REMOVE,
            {"productId": product_id},
            local=lambda queued: self.replica_store.remove_item(product_id),
            remote=lambda user_id: self.gateway.remove_item(user_id, product_id),
        )

    async def update_quantity(self, session: SessionContext, product_id: str, new_quantity: int) -> ListView:
        """Set a line's quantity; zero or less removes the line."""
        validate_product_id(product_id)
        if isinstance(new_quantity, bool) or not isinstance(new_quantity, int):
            raise ValidationError(ERROR_INVALID_NEW_QUANTITY)

        if new_quantity <= 0:
            return await self.remove_item(session, product_id)

        return await self._mutate(
            session,
            OperationKind.UPDATE_QUANTITY,
            {"productId": product_id, "quantity": new_quantity},
            local=lambda queued: self.replica_store.update_quantity(product_id, new_quantity, queued=queued),
            remote=lambda user_id: self.gateway.update_quantity(user_id, product_id, new_quantity),
        )

    async def _mutate(
        self,
        session: SessionContext,
        kind: OperationKind,
        payload: dict,
        local: Callable[[bool], Awaitable[Replica]],
        remote: Callable[[str], Awaitable[RemoteState]],
    ) -> ListView:
        mode = self.classify(session)
        logger.debug(
            f"{kind.value} {sanitize_id_for_logging(payload['productId'])} "
            f"on {self.kind.value} via {mode.value} path"
        )

        if mode == Mode.ONLINE:
            try:
                state = await remote(session.user_id)
                view = ListView.from_remote(self.kind, state)
                await self._publish_updated(view, mode)
                return view
            except AuthError as e:
                logger.warning(f"Remote {kind.value} rejected ({e.code.value}), applying locally")
                await self.events.publish(SyncEvent.AUTH_REQUIRED, kind=self.kind.value, code=e.code.value)
            except NetworkError as e:
                logger.warning(f"Remote {kind.value} failed, applying locally and queueing: {e}")

        queued = mode != Mode.GUEST
        replica = await self._apply_local(local, queued)
        if queued:
            await self.queue.enqueue(kind, payload)

        view = ListView.from_replica(self.kind, replica)
        await self._publish_updated(view, mode)
        return view

    async def _apply_local(self, local: Callable[[bool], Awaitable[Replica]], queued: bool) -> Optional[Replica]:
        try:
            return await local(queued)
        except LocalStorageError as e:
            # Non-fatal: keep serving the in-memory replica
            logger.warning(f"Local {self.kind.value} write not persisted: {e}")
            return e.replica

    async def _publish_updated(self, view: ListView, mode: Mode) -> None:
        await self.events.publish(SyncEvent.LIST_UPDATED, kind=self.kind.value, mode=mode.value, summary=view.summary())

    # ==================== READS ====================

    async def get_items(self, session: SessionContext) -> ListView:
        """
        Current view of the list.

        Online + authenticated reads the server (enriched, then basic);
        if both tiers fail the local replica is returned with
        ``degraded=True``. Other modes read the replica.
        """
        mode = self.classify(session)
        if mode == Mode.ONLINE:
            try:
                state = await self.gateway.fetch_state(session.user_id)
                return ListView.from_remote(self.kind, state)
            except AuthError as e:
                logger.warning(f"Remote {self.kind.value} read rejected ({e.code.value}), using local replica")
                await self.events.publish(SyncEvent.AUTH_REQUIRED, kind=self.kind.value, code=e.code.value)
            except NetworkError as e:
                logger.warning(f"Remote {self.kind.value} read failed, using local replica: {e}")
            return ListView.from_replica(self.kind, await self.replica_store.get(), degraded=True)

        return ListView.from_replica(self.kind, await self.replica_store.get())

    async def contains(self, session: SessionContext, product_id: str) -> bool:
        validate_product_id(product_id)
        view = await self.get_items(session)
        return view.contains(product_id)

    async def clear(self, session: SessionContext) -> ListView:
        """Empty the list in the current mode, then drop the local replica."""
        mode = self.classify(session)
        replica = await self.replica_store.get()
        local_ids = [item.product_id for item in replica.items] if replica else []

        if mode == Mode.ONLINE:
            await self._clear_remote(session.user_id, local_ids)
        elif mode == Mode.OFFLINE:
            for product_id in local_ids:
                await self.queue.enqueue(OperationKind.REMOVE, {"productId": product_id})

        try:
            await self.replica_store.clear()
        except LocalStorageError as e:
            logger.warning(f"Failed to clear local {self.kind.value}: {e}")

        view = ListView.from_replica(self.kind, None)
        await self._publish_updated(view, mode)
        return view

    async def _clear_remote(self, user_id: str, local_ids: list[str]) -> None:
        try:
            state = await self.gateway.fetch_state(user_id)
            product_ids = [item.product_id for item in state.items]
        except (AuthError, NetworkError) as e:
            logger.warning(f"Could not read remote {self.kind.value} before clearing, queueing local removals: {e}")
            product_ids = []
        # Local lines the server may not know yet are removed too
        product_ids += [pid for pid in local_ids if pid not in product_ids]

        for product_id in product_ids:
            try:
                await self.gateway.remove_item(user_id, product_id)
            except NetworkError as e:
                if e.is_not_found:
                    continue
                logger.warning(f"Remote remove of {sanitize_id_for_logging(product_id)} failed, queueing: {e}")
                await self.queue.enqueue(OperationKind.REMOVE, {"productId": product_id})
            except AuthError as e:
                await self.events.publish(SyncEvent.AUTH_REQUIRED, kind=self.kind.value, code=e.code.value)
                await self.queue.enqueue(OperationKind.REMOVE, {"productId": product_id})

    # ==================== DEBUG ====================

    async def debug_info(self, session: SessionContext) -> dict:
        """Snapshot of routing inputs and local state for diagnostics."""
        replica = await self.replica_store.get()
        return {
            "kind": self.kind.value,
            "mode": self.classify(session).value,
            "authenticated": session.is_authenticated,
            "user_id": sanitize_id_for_logging(session.user_id) if session.user_id else None,
            "online": self.connectivity.is_online,
            "queue_length": await self.queue.size(),
            "replica_items": len(replica.items) if replica else 0,
            "replica_expires_at": replica.expires_at.isoformat() if replica else None,
        }
