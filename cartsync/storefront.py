"""
Storefront - per-session composition of the cart and saved-for-later lists.

Owns the current SessionContext and the connectivity signal, and wires
one replica/queue/gateway/dispatcher/coordinator stack per list. Sign-in
and reconnect trigger both coordinators in order, cart first.
"""

from dataclasses import dataclass
from typing import Callable, Optional

import httpx
from tenacity.wait import wait_base

from cartsync.config import API_URL, CART_SETTINGS, CONFLICT_POLICY, SAVED_SETTINGS, ListSettings
from cartsync.db import KeyValueStore
from cartsync.dispatcher import ModeDispatcher, validate_product_id
from cartsync.errors import ERROR_ITEM_NOT_SAVED, CartSyncError, ValidationError
from cartsync.events import EventBus, SyncEvent
from cartsync.gateway.client import RemoteGateway
from cartsync.logging import get_logger, sanitize_id_for_logging
from cartsync.models import Clock, ConflictPolicy, ListKind, ProductSnapshot, utcnow
from cartsync.money import Number
from cartsync.queue import OperationQueue
from cartsync.replica.service import ReplicaStore
from cartsync.session import BearerCredentials, Connectivity, SessionContext, TokenProvider
from cartsync.sync import SyncCoordinator, SyncResult
from cartsync.views import ListView

logger = get_logger(__name__)

GatewayFactory = Callable[[ListSettings], RemoteGateway]


@dataclass
class ListInstance:
    """The full stack for one list."""
    replica_store: ReplicaStore
    queue: OperationQueue
    gateway: RemoteGateway
    dispatcher: ModeDispatcher
    coordinator: SyncCoordinator


class Storefront:
    """Session-scoped entry point for cart and saved-list operations."""

    def __init__(
        self,
        cart: ListInstance,
        saved: ListInstance,
        connectivity: Connectivity,
        events: EventBus,
        session: Optional[SessionContext] = None,
    ):
        self.cart = cart
        self.saved = saved
        self.connectivity = connectivity
        self.events = events
        self.session = session or SessionContext.guest()
        connectivity.add_listener(self._on_connectivity_changed)

    @classmethod
    def create(
        cls,
        store: KeyValueStore,
        token_provider: TokenProvider,
        *,
        base_url: str = API_URL,
        online: bool = True,
        namespace: str = "default",
        policy: ConflictPolicy = CONFLICT_POLICY,
        http_client: Optional[httpx.AsyncClient] = None,
        gateway_factory: Optional[GatewayFactory] = None,
        retry_wait: Optional[wait_base] = None,
        clock: Clock = utcnow,
    ) -> "Storefront":
        """Build both list stacks over one key-value store."""
        events = EventBus()
        connectivity = Connectivity(online=online, events=events)
        credentials = BearerCredentials(token_provider)

        def build(settings: ListSettings) -> ListInstance:
            if gateway_factory is not None:
                gateway = gateway_factory(settings)
            else:
                gateway = RemoteGateway(settings, credentials, base_url=base_url, http_client=http_client)
            replica_store = ReplicaStore(store, settings, namespace=namespace, clock=clock)
            queue = OperationQueue(store, settings, namespace=namespace, clock=clock)
            return ListInstance(
                replica_store=replica_store,
                queue=queue,
                gateway=gateway,
                dispatcher=ModeDispatcher(replica_store, queue, gateway, connectivity, events),
                coordinator=SyncCoordinator(
                    replica_store, queue, gateway, connectivity, events, policy=policy, retry_wait=retry_wait
                ),
            )

        return cls(build(CART_SETTINGS), build(SAVED_SETTINGS), connectivity, events)

    def instance(self, kind: ListKind) -> ListInstance:
        return self.cart if kind == ListKind.CART else self.saved

    async def aclose(self) -> None:
        gateways = [self.cart.gateway]
        if self.saved.gateway is not self.cart.gateway:
            gateways.append(self.saved.gateway)
        for gateway in gateways:
            aclose = getattr(gateway, "aclose", None)
            if aclose is not None:
                await aclose()

    # ==================== SESSION ====================

    async def sign_in(self, user_id: str) -> dict[ListKind, Optional[SyncResult]]:
        """Switch to an authenticated session and sync both lists."""
        previous, self.session = self.session, SessionContext.authenticated(user_id)
        logger.info(f"Signed in as {sanitize_id_for_logging(user_id)}")
        await self.events.publish(SyncEvent.AUTH_STATE_CHANGED, authenticated=True, user_id=user_id)
        return await self._run_both(lambda instance: instance.coordinator.on_auth_changed(previous, self.session))

    async def sign_out(self) -> None:
        previous, self.session = self.session, SessionContext.guest()
        await self.events.publish(SyncEvent.AUTH_STATE_CHANGED, authenticated=False, user_id=None)
        for instance in (self.cart, self.saved):
            await instance.coordinator.on_auth_changed(previous, self.session)

    async def set_online(self, online: bool) -> None:
        await self.connectivity.set_online(online)

    async def _on_connectivity_changed(self, online: bool) -> None:
        if not online or not self.session.is_authenticated:
            return
        try:
            await self._run_both(lambda instance: instance.coordinator.on_online(self.session))
        except CartSyncError as e:
            # Already published as sync-failed; the next trigger retries
            logger.warning(f"Sync after reconnect did not complete: {e}")

    async def synchronize(self) -> dict[ListKind, Optional[SyncResult]]:
        """Explicit sync of both lists (e.g. before checkout)."""
        return await self._run_both(lambda instance: instance.coordinator.synchronize(self.session))

    async def _run_both(self, trigger) -> dict[ListKind, Optional[SyncResult]]:
        """Run a trigger on the cart then the saved list; the first error is re-raised."""
        results: dict[ListKind, Optional[SyncResult]] = {}
        first_error: Optional[CartSyncError] = None
        for instance in (self.cart, self.saved):
            kind = instance.replica_store.settings.kind
            try:
                results[kind] = await trigger(instance)
            except CartSyncError as e:
                results[kind] = None
                first_error = first_error or e
        if first_error is not None:
            raise first_error
        return results

    # ==================== CART ====================

    async def add_to_cart(
        self,
        product_id: str,
        quantity: int = 1,
        price: Number = 0,
        snapshot: Optional[ProductSnapshot] = None,
    ) -> ListView:
        return await self.cart.dispatcher.add_item(self.session, product_id, quantity, price, snapshot)

    async def remove_from_cart(self, product_id: str) -> ListView:
        return await self.cart.dispatcher.remove_item(self.session, product_id)

    async def update_cart_quantity(self, product_id: str, new_quantity: int) -> ListView:
        return await self.cart.dispatcher.update_quantity(self.session, product_id, new_quantity)

    async def get_cart(self) -> ListView:
        return await self.cart.dispatcher.get_items(self.session)

    async def clear_cart(self) -> ListView:
        return await self.cart.dispatcher.clear(self.session)

    # ==================== SAVED FOR LATER ====================

    async def save_for_later(
        self,
        product_id: str,
        price: Number = 0,
        snapshot: Optional[ProductSnapshot] = None,
        quantity: int = 1,
    ) -> ListView:
        return await self.saved.dispatcher.add_item(self.session, product_id, quantity, price, snapshot)

    async def remove_saved(self, product_id: str) -> ListView:
        return await self.saved.dispatcher.remove_item(self.session, product_id)

    async def get_saved(self) -> ListView:
        return await self.saved.dispatcher.get_items(self.session)

    async def move_to_cart(self, product_id: str) -> ListView:
        """Add a saved item to the cart, then remove it from the saved list."""
        validate_product_id(product_id)
        saved_view = await self.get_saved()
        item = saved_view.find(product_id)
        if item is None:
            raise ValidationError(ERROR_ITEM_NOT_SAVED)

        snapshot = ProductSnapshot(name=item.name, image=item.image, category=item.category)
        cart_view = await self.add_to_cart(product_id, max(item.quantity, 1), item.unit_price, snapshot)
        await self.remove_saved(product_id)
        return cart_view

    # ==================== DEBUG ====================

    async def debug_info(self) -> dict:
        return {
            "session": {
                "authenticated": self.session.is_authenticated,
                "user_id": sanitize_id_for_logging(self.session.user_id) if self.session.user_id else None,
            },
            "online": self.connectivity.is_online,
            "cart": {
                **await self.cart.dispatcher.debug_info(self.session),
                "sync": await self.cart.coordinator.debug_info(),
            },
            "saved": {
                **await self.saved.dispatcher.debug_info(self.session),
                "sync": await self.saved.coordinator.debug_info(),
            },
        }
