"""Pytest configuration and fixtures"""
import asyncio
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from tenacity import wait_none

# Set test environment variables
os.environ.setdefault("CARTSYNC_ENV", "test")
os.environ.setdefault("LOG_LEVEL", "DEBUG")

from cartsync.config import CART_SETTINGS, SAVED_SETTINGS, ListSettings
from cartsync.db import MemoryKeyValueStore
from cartsync.dispatcher import ModeDispatcher
from cartsync.errors import ERROR_STORAGE_QUOTA, ERROR_STORAGE_WRITE, LocalStorageError, NetworkError
from cartsync.events import EventBus, SyncEvent
from cartsync.gateway.models import RemoteItem, RemoteState
from cartsync.models import ListKind
from cartsync.money import to_decimal
from cartsync.queue import OperationQueue
from cartsync.replica.service import ReplicaStore
from cartsync.session import Connectivity, SessionContext
from cartsync.sync import SyncCoordinator, plan_merge


class FakeClock:
    """Controllable clock; time only moves when a test advances it."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FailingStore(MemoryKeyValueStore):
    """MemoryKeyValueStore with injectable write failures."""

    def __init__(self):
        super().__init__()
        self.quota_failures = 0  # next N writes fail with quota exceeded
        self.fail_writes = False  # every write fails (not quota)
        self.fail_deletes = False

    async def set(self, key, record):
        if self.quota_failures > 0:
            self.quota_failures -= 1
            raise LocalStorageError(ERROR_STORAGE_QUOTA, quota_exceeded=True)
        if self.fail_writes:
            raise LocalStorageError(ERROR_STORAGE_WRITE)
        await super().set(key, record)

    async def delete(self, key):
        if self.fail_deletes:
            raise LocalStorageError(ERROR_STORAGE_WRITE)
        await super().delete(key)


class FakeRemote:
    """
    In-memory stand-in for RemoteGateway.

    Records every call in ``calls`` (optionally shared between instances)
    and raises injected errors per method.
    """

    def __init__(self, settings: ListSettings = CART_SETTINGS, calls: Optional[list] = None):
        self.settings = settings
        self.lists: dict[str, dict[str, RemoteItem]] = {}
        self.calls = calls if calls is not None else []
        self.gate: Optional[asyncio.Event] = None  # blocks sync_replica until set
        self._failures: dict[str, list] = {}

    def fail(self, method: str, error: Exception, times: Optional[int] = None) -> None:
        """Raise ``error`` from ``method``; ``times=None`` means every call."""
        self._failures[method] = [error, times]

    def heal(self) -> None:
        self._failures.clear()

    def seed(self, user_id: str, product_id: str, quantity: int, price="10.00", updated_at=None) -> None:
        self.items(user_id)[product_id] = RemoteItem(
            product_id=product_id, quantity=quantity, price=to_decimal(price), updated_at=updated_at
        )

    def items(self, user_id: str) -> dict[str, RemoteItem]:
        return self.lists.setdefault(user_id, {})

    def quantity(self, user_id: str, product_id: str) -> Optional[int]:
        item = self.items(user_id).get(product_id)
        return item.quantity if item else None

    def called(self, method: str) -> list[tuple]:
        return [call for call in self.calls if call[1] == method]

    def _record(self, method: str, *args) -> None:
        self.calls.append((self.settings.kind, method, *args))
        failure = self._failures.get(method)
        if not failure:
            return
        error, times = failure
        if times is None:
            raise error
        if times > 0:
            failure[1] = times - 1
            raise error

    def _state(self, user_id: str, enriched: bool = False) -> RemoteState:
        return RemoteState(user_id=user_id, items=list(self.items(user_id).values()), enriched=enriched)

    async def add_item(self, user_id, product_id, quantity, price):
        self._record("add_item", user_id, product_id, quantity)
        items = self.items(user_id)
        if product_id in items:
            items[product_id].quantity += quantity
        else:
            items[product_id] = RemoteItem(product_id=product_id, quantity=quantity, price=to_decimal(price))
        return self._state(user_id)

    async def remove_item(self, user_id, product_id):
        self._record("remove_item", user_id, product_id)
        if self.items(user_id).pop(product_id, None) is None:
            raise NetworkError("Item not found", status_code=404)
        return self._state(user_id)

    async def update_quantity(self, user_id, product_id, quantity):
        self._record("update_quantity", user_id, product_id, quantity)
        item = self.items(user_id).get(product_id)
        if item is None:
            raise NetworkError("Item not found", status_code=404)
        item.quantity = quantity
        return self._state(user_id)

    async def fetch_state(self, user_id):
        self._record("fetch_state", user_id)
        return self._state(user_id, enriched=True)

    async def sync_replica(self, user_id, replica, policy, device_id):
        self._record("sync_replica", user_id, policy, device_id)
        if self.gate is not None:
            await self.gate.wait()
        plan = plan_merge(replica.items, list(self.items(user_id).values()), policy)
        self.lists[user_id] = {
            line.product_id: RemoteItem(product_id=line.product_id, quantity=line.quantity, price=line.price)
            for line in plan.lines
        }
        return self._state(user_id)

    async def aclose(self):
        pass


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return FailingStore()


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def recorded(events):
    """Every published event, in order."""
    published = []
    for name in SyncEvent:
        events.subscribe(name, published.append)
    return published


@pytest.fixture
def connectivity(events):
    return Connectivity(online=True, events=events)


@pytest.fixture
def remote():
    return FakeRemote(CART_SETTINGS)


@pytest.fixture
def replica_store(store, clock):
    return ReplicaStore(store, CART_SETTINGS, clock=clock)


@pytest.fixture
def queue(store, clock):
    return OperationQueue(store, CART_SETTINGS, clock=clock)


@pytest.fixture
def dispatcher(replica_store, queue, remote, connectivity, events):
    return ModeDispatcher(replica_store, queue, remote, connectivity, events)


@pytest.fixture
def coordinator(replica_store, queue, remote, connectivity, events):
    return SyncCoordinator(
        replica_store, queue, remote, connectivity, events, device_id="device_test", retry_wait=wait_none()
    )


@pytest.fixture
def guest():
    return SessionContext.guest()


@pytest.fixture
def user():
    return SessionContext.authenticated("user-1")


@pytest.fixture
def make_settings():
    """Factory for ListSettings with overrides."""

    def factory(kind: ListKind = ListKind.CART, **overrides) -> ListSettings:
        base = CART_SETTINGS if kind == ListKind.CART else SAVED_SETTINGS
        values = {
            "kind": base.kind,
            "ttl_days": base.ttl_days,
            "evict_keep": base.evict_keep,
            "max_retries": base.max_retries,
            "route_suffix": base.route_suffix,
        }
        values.update(overrides)
        return ListSettings(**values)

    return factory


@pytest.fixture
def remotes():
    """One FakeRemote per list, sharing a single call log."""
    calls: list = []
    return {
        ListKind.CART: FakeRemote(CART_SETTINGS, calls=calls),
        ListKind.SAVED: FakeRemote(SAVED_SETTINGS, calls=calls),
    }
