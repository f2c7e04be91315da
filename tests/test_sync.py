"""
Tests for the sync coordinator: merge, drain and the state machine
"""

import asyncio
import json
from datetime import timedelta

import pytest
from tenacity import wait_none

from cartsync.errors import AuthError, AuthErrorCode, NetworkError, SyncConflictError
from cartsync.events import SyncEvent
from cartsync.gateway.models import RemoteItem
from cartsync.models import ConflictPolicy, OperationKind, SyncState
from cartsync.replica import ReplicaItem
from cartsync.session import SessionContext
from cartsync.sync import SyncCoordinator, find_conflicts, plan_merge


def states(recorded):
    return [event.payload["state"] for event in recorded if event.name == SyncEvent.SYNC_STATE_CHANGED]


class TestMerge:
    """Merging the local replica into the server."""

    @pytest.mark.asyncio
    async def test_guest_items_are_summed_into_server_cart(self, coordinator, replica_store, remote, guest, user):
        await replica_store.add_item("P1", 2, "10.00")
        remote.seed("user-1", "P1", 1)

        result = await coordinator.on_auth_changed(guest, user)

        assert result.state == SyncState.SYNCED
        assert result.merged == 1
        assert remote.quantity("user-1", "P1") == 3
        assert await replica_store.get() is None

    @pytest.mark.asyncio
    async def test_failed_merge_leaves_replica_untouched(self, coordinator, replica_store, remote, store, user, recorded):
        await replica_store.add_item("P1", 2, "10.00")
        await replica_store.add_item("P2", 1, "4.00")
        before = store.raw(replica_store.key)
        remote.fail("sync_replica", NetworkError("gateway timeout", status_code=504))

        with pytest.raises(NetworkError):
            await coordinator.synchronize(user)

        assert store.raw(replica_store.key) == before
        assert (await replica_store.get()).product_ids == {"P1", "P2"}
        assert coordinator.state == SyncState.MERGING
        assert coordinator.sync_in_progress is False
        assert any(event.name == SyncEvent.SYNC_FAILED for event in recorded)

    @pytest.mark.asyncio
    async def test_empty_replica_skips_merge(self, coordinator, remote, user):
        result = await coordinator.synchronize(user)

        assert result.merged == 0
        assert remote.called("sync_replica") == []

    @pytest.mark.asyncio
    async def test_merge_sends_device_id(self, coordinator, replica_store, remote, user):
        await replica_store.add_item("P1", 1, "1.00")

        await coordinator.synchronize(user)

        assert remote.called("sync_replica")[0][-1] == "device_test"

    @pytest.mark.asyncio
    async def test_lines_added_during_merge_survive(self, coordinator, replica_store, remote, clock, user):
        await replica_store.add_item("P1", 1, "1.00")
        remote.gate = asyncio.Event()

        task = asyncio.create_task(coordinator.synchronize(user))
        await asyncio.sleep(0)
        while not remote.called("sync_replica"):
            await asyncio.sleep(0)
        clock.advance(seconds=1)
        await replica_store.add_item("P2", 1, "1.00")
        remote.gate.set()
        await task

        replica = await replica_store.get()
        assert replica.product_ids == {"P2"}

    @pytest.mark.asyncio
    async def test_queued_operations_covered_by_merge_are_superseded(
        self, coordinator, replica_store, queue, remote, user
    ):
        # Authenticated offline write: replica line + queued op for the same product
        await replica_store.add_item("P1", 1, "1.00", queued=True)
        await queue.enqueue(OperationKind.ADD, {"productId": "P1", "quantity": 1, "price": 1.0})
        await queue.enqueue(OperationKind.REMOVE, {"productId": "P9"})
        remote.seed("user-1", "P9", 1)

        result = await coordinator.synchronize(user)

        assert result.superseded == 1
        assert result.applied == 1
        assert remote.called("add_item") == []
        assert remote.quantity("user-1", "P1") == 1
        assert remote.quantity("user-1", "P9") is None
        assert await queue.size() == 0

    @pytest.mark.asyncio
    async def test_keep_server_drains_queued_add_for_server_line(
        self, coordinator, replica_store, queue, remote, user
    ):
        remote.seed("user-1", "P1", 3)
        await replica_store.add_item("P1", 1, "10.00", queued=True)
        await queue.enqueue(OperationKind.ADD, {"productId": "P1", "quantity": 1, "price": 10.0})

        result = await coordinator.synchronize(user, ConflictPolicy.KEEP_SERVER)

        assert result.superseded == 0
        assert result.applied == 1
        assert remote.quantity("user-1", "P1") == 4
        assert await queue.size() == 0
        assert await replica_store.get() is None

    @pytest.mark.asyncio
    async def test_keep_server_supersedes_local_only_lines(self, coordinator, replica_store, queue, remote, user):
        await replica_store.add_item("P2", 2, "1.00", queued=True)
        await queue.enqueue(OperationKind.ADD, {"productId": "P2", "quantity": 2, "price": 1.0})

        result = await coordinator.synchronize(user, ConflictPolicy.KEEP_SERVER)

        assert result.superseded == 1
        assert remote.called("add_item") == []
        assert remote.quantity("user-1", "P2") == 2

    @pytest.mark.asyncio
    async def test_keep_latest_drains_when_server_line_is_newer(
        self, coordinator, replica_store, queue, remote, clock, user
    ):
        await replica_store.add_item("P1", 1, "10.00", queued=True)
        await queue.enqueue(OperationKind.ADD, {"productId": "P1", "quantity": 1, "price": 10.0})
        newer = (clock() + timedelta(hours=1)).isoformat()
        remote.seed("user-1", "P1", 3, updated_at=newer)

        result = await coordinator.synchronize(user, ConflictPolicy.KEEP_LATEST)

        assert result.superseded == 0
        assert result.applied == 1
        assert remote.quantity("user-1", "P1") == 4

    @pytest.mark.asyncio
    async def test_keep_latest_supersedes_when_local_line_is_newer(
        self, coordinator, replica_store, queue, remote, clock, user
    ):
        older = (clock() - timedelta(hours=1)).isoformat()
        remote.seed("user-1", "P1", 3, updated_at=older)
        await replica_store.add_item("P1", 1, "10.00", queued=True)
        await queue.enqueue(OperationKind.ADD, {"productId": "P1", "quantity": 1, "price": 10.0})

        result = await coordinator.synchronize(user, ConflictPolicy.KEEP_LATEST)

        assert result.superseded == 1
        assert remote.called("add_item") == []
        assert remote.quantity("user-1", "P1") == 1


class TestDrain:
    """Replaying queued operations against the server."""

    @pytest.mark.asyncio
    async def test_operations_are_applied_in_enqueue_order(self, coordinator, queue, remote, user):
        remote.seed("user-1", "P2", 1)
        await queue.enqueue(OperationKind.ADD, {"productId": "P1", "quantity": 2, "price": 5.0})
        await queue.enqueue(OperationKind.UPDATE_QUANTITY, {"productId": "P1", "quantity": 4})
        await queue.enqueue(OperationKind.REMOVE, {"productId": "P2"})
        await queue.enqueue(OperationKind.ADD, {"productId": "P3", "quantity": 1, "price": 1.0})

        result = await coordinator.synchronize(user)

        assert [call[1:4] for call in remote.calls] == [
            ("add_item", "user-1", "P1"),
            ("update_quantity", "user-1", "P1"),
            ("remove_item", "user-1", "P2"),
            ("add_item", "user-1", "P3"),
        ]
        assert result.applied == 4
        assert remote.quantity("user-1", "P1") == 4
        assert await queue.size() == 0

    @pytest.mark.asyncio
    async def test_always_failing_operation_is_dropped_after_max_retries(
        self, coordinator, queue, remote, user, recorded
    ):
        remote.fail("add_item", NetworkError("bad gateway", status_code=502))
        await queue.enqueue(OperationKind.ADD, {"productId": "P1", "quantity": 1, "price": 1.0})

        result = await coordinator.synchronize(user)

        assert len(remote.called("add_item")) == 3
        assert result.dropped == 1
        assert await queue.size() == 0
        dropped = [event for event in recorded if event.name == SyncEvent.OPERATION_DROPPED]
        assert dropped[0].payload["operation"]["retryCount"] == 3

    @pytest.mark.asyncio
    async def test_retry_count_reaches_max_before_removal(self, coordinator, queue, remote, user):
        remote.fail("add_item", NetworkError("bad gateway", status_code=502))
        operation = await queue.enqueue(OperationKind.ADD, {"productId": "P1", "quantity": 1, "price": 1.0})
        marks = []
        original = queue.mark_retried

        async def spy(operation_id):
            updated = await original(operation_id)
            marks.append((updated.retry_count, await queue.get(operation_id) is not None))
            return updated

        queue.mark_retried = spy
        await coordinator.synchronize(user)

        assert marks == [(1, True), (2, True), (3, True)]
        assert await queue.get(operation.id) is None

    @pytest.mark.asyncio
    async def test_remove_is_dropped_after_third_failure(self, coordinator, queue, remote, user):
        remote.seed("user-1", "P3", 1)
        remote.fail("remove_item", NetworkError("timeout"), times=4)
        await queue.enqueue(OperationKind.REMOVE, {"productId": "P3"})

        result = await coordinator.synchronize(user)

        assert len(remote.called("remove_item")) == 3
        assert result.dropped == 1
        assert await queue.size() == 0
        assert remote.quantity("user-1", "P3") == 1

    @pytest.mark.asyncio
    async def test_transient_failure_then_success(self, coordinator, queue, remote, user):
        remote.fail("add_item", NetworkError("timeout"), times=2)
        await queue.enqueue(OperationKind.ADD, {"productId": "P1", "quantity": 1, "price": 1.0})

        result = await coordinator.synchronize(user)

        assert result.applied == 1
        assert result.dropped == 0
        assert remote.quantity("user-1", "P1") == 1

    @pytest.mark.asyncio
    async def test_partially_retried_operation_keeps_remaining_budget(self, coordinator, queue, remote, user):
        remote.fail("add_item", NetworkError("timeout"))
        operation = await queue.enqueue(OperationKind.ADD, {"productId": "P1", "quantity": 1, "price": 1.0})
        await queue.mark_retried(operation.id)
        await queue.mark_retried(operation.id)

        await coordinator.synchronize(user)

        assert len(remote.called("add_item")) == 1

    @pytest.mark.asyncio
    async def test_remove_of_absent_item_counts_as_applied(self, coordinator, queue, remote, user):
        await queue.enqueue(OperationKind.REMOVE, {"productId": "gone"})

        result = await coordinator.synchronize(user)

        assert result.applied == 1
        assert len(remote.called("remove_item")) == 1

    @pytest.mark.asyncio
    async def test_auth_error_stops_drain_and_keeps_operation(self, coordinator, queue, remote, user):
        remote.fail("add_item", AuthError(AuthErrorCode.UNAUTHORIZED))
        first = await queue.enqueue(OperationKind.ADD, {"productId": "P1", "quantity": 1, "price": 1.0})
        await queue.enqueue(OperationKind.REMOVE, {"productId": "P2"})

        with pytest.raises(AuthError):
            await coordinator.synchronize(user)

        assert coordinator.state == SyncState.AUTHENTICATING
        assert [op.id for op in await queue.list()][0] == first.id
        assert (await queue.get(first.id)).retry_count == 0
        assert remote.called("remove_item") == []

    @pytest.mark.asyncio
    async def test_unreplayable_persisted_entry_does_not_block_sync(self, coordinator, queue, store, remote, clock, user):
        entry = {
            "id": "x",
            "operation": "add",
            "data": {},
            "timestamp": clock().isoformat(),
            "retryCount": 0,
            "maxRetries": 3,
        }
        store.put_raw(queue.key, json.dumps([entry]))

        result = await coordinator.synchronize(user)

        assert result.state == SyncState.SYNCED
        assert result.applied == 0
        assert remote.called("add_item") == []
        assert await queue.size() == 0

    @pytest.mark.asyncio
    async def test_connection_lost_mid_drain_keeps_operations(
        self, coordinator, queue, remote, connectivity, user, recorded
    ):
        for product_id in ("A", "B", "C"):
            remote.seed("user-1", product_id, 1)
            await queue.enqueue(OperationKind.REMOVE, {"productId": product_id})

        original = remote.remove_item

        async def drop_connection(user_id, product_id):
            await connectivity.set_online(False)
            raise NetworkError("connection reset")

        remote.remove_item = drop_connection

        with pytest.raises(NetworkError):
            await coordinator.synchronize(user)

        operations = await queue.list()
        assert [op.product_id for op in operations] == ["A", "B", "C"]
        assert [op.retry_count for op in operations] == [0, 0, 0]
        assert not any(event.name == SyncEvent.OPERATION_DROPPED for event in recorded)
        assert coordinator.sync_in_progress is False

        remote.remove_item = original
        await connectivity.set_online(True)
        result = await coordinator.on_online(user)

        assert result.applied == 3
        assert await queue.size() == 0

    @pytest.mark.asyncio
    async def test_full_drain_removes_queued_replica_lines(self, coordinator, replica_store, queue, remote, clock, user):
        await replica_store.add_item("P1", 1, "1.00")
        remote.gate = asyncio.Event()
        task = asyncio.create_task(coordinator.synchronize(user))
        while not remote.called("sync_replica"):
            await asyncio.sleep(0)

        # Offline-path write while the merge is in flight
        clock.advance(seconds=1)
        await replica_store.add_item("P2", 1, "2.00", queued=True)
        await queue.enqueue(OperationKind.ADD, {"productId": "P2", "quantity": 1, "price": 2.0})
        remote.gate.set()
        result = await task

        assert result.superseded == 0
        assert result.applied == 1
        assert remote.quantity("user-1", "P2") == 1
        assert await replica_store.get() is None


class TestStateMachine:
    """Transitions, triggers and the in-progress guard."""

    @pytest.mark.asyncio
    async def test_states_on_sign_in(self, coordinator, guest, user, recorded):
        await coordinator.on_auth_changed(guest, user)

        assert states(recorded) == ["authenticating", "merging", "draining", "synced"]
        completed = [event for event in recorded if event.name == SyncEvent.SYNC_COMPLETED]
        assert len(completed) == 1

    @pytest.mark.asyncio
    async def test_sign_in_while_offline_waits_for_connectivity(
        self, coordinator, connectivity, remote, replica_store, guest, user
    ):
        await replica_store.add_item("P1", 1, "1.00")
        await connectivity.set_online(False)

        assert await coordinator.on_auth_changed(guest, user) is None
        assert coordinator.state == SyncState.AUTHENTICATING
        assert remote.calls == []

        await connectivity.set_online(True)
        result = await coordinator.on_online(user)

        assert result.state == SyncState.SYNCED
        assert remote.quantity("user-1", "P1") == 1

    @pytest.mark.asyncio
    async def test_missing_user_id_stays_authenticating(self, coordinator, guest):
        pending = SessionContext.authenticated(None)

        assert await coordinator.on_auth_changed(guest, pending) is None
        assert coordinator.state == SyncState.AUTHENTICATING

    @pytest.mark.asyncio
    async def test_sign_out_returns_to_guest(self, coordinator, guest, user):
        await coordinator.on_auth_changed(guest, user)

        await coordinator.on_auth_changed(user, guest)

        assert coordinator.state == SyncState.GUEST

    @pytest.mark.asyncio
    async def test_on_online_ignored_for_guest(self, coordinator, remote, guest):
        assert await coordinator.on_online(guest) is None
        assert coordinator.state == SyncState.GUEST

    @pytest.mark.asyncio
    async def test_guest_cannot_synchronize(self, coordinator, guest):
        with pytest.raises(AuthError, match="Sign in to sync your cart"):
            await coordinator.synchronize(guest)

    @pytest.mark.asyncio
    async def test_offline_synchronize_fails(self, coordinator, connectivity, user):
        await connectivity.set_online(False)

        with pytest.raises(NetworkError):
            await coordinator.synchronize(user)

    @pytest.mark.asyncio
    async def test_concurrent_trigger_is_noop(self, coordinator, replica_store, remote, user):
        await replica_store.add_item("P1", 1, "1.00")
        remote.gate = asyncio.Event()

        first = asyncio.create_task(coordinator.synchronize(user))
        while not remote.called("sync_replica"):
            await asyncio.sleep(0)

        assert coordinator.sync_in_progress is True
        assert await coordinator.synchronize(user) is None
        assert await coordinator.on_online(user) is None

        remote.gate.set()
        result = await first

        assert result.state == SyncState.SYNCED
        assert len(remote.called("sync_replica")) == 1

    @pytest.mark.asyncio
    async def test_debug_info(self, coordinator, queue, user):
        await queue.enqueue(OperationKind.REMOVE, {"productId": "P1"})

        info = await coordinator.debug_info()

        assert info["state"] == "guest"
        assert info["queue_length"] == 1
        assert info["policy"] == coordinator.policy.value


class TestAskUser:
    """Deferred merges under ASK_USER."""

    @pytest.fixture
    def asking(self, replica_store, queue, remote, connectivity, events):
        return SyncCoordinator(
            replica_store,
            queue,
            remote,
            connectivity,
            events,
            policy=ConflictPolicy.ASK_USER,
            device_id="device_test",
            retry_wait=wait_none(),
        )

    @pytest.mark.asyncio
    async def test_conflict_defers_merge(self, asking, replica_store, remote, user):
        await replica_store.add_item("P1", 2, "1.00")
        remote.seed("user-1", "P1", 5)

        with pytest.raises(SyncConflictError) as exc_info:
            await asking.synchronize(user)

        assert exc_info.value.conflicting_ids == ["P1"]
        assert asking.state == SyncState.MERGING
        assert (await replica_store.get()).find("P1").quantity == 2
        assert remote.called("sync_replica") == []

    @pytest.mark.asyncio
    async def test_resolve_conflict_with_concrete_policy(self, asking, replica_store, remote, user):
        await replica_store.add_item("P1", 2, "1.00")
        remote.seed("user-1", "P1", 5)
        with pytest.raises(SyncConflictError):
            await asking.synchronize(user)

        result = await asking.resolve_conflict(user, ConflictPolicy.KEEP_LOCAL)

        assert result.state == SyncState.SYNCED
        assert remote.quantity("user-1", "P1") == 2
        assert await replica_store.get() is None

    @pytest.mark.asyncio
    async def test_resolve_conflict_rejects_ask_user(self, asking, user):
        with pytest.raises(ValueError):
            await asking.resolve_conflict(user, ConflictPolicy.ASK_USER)

    @pytest.mark.asyncio
    async def test_disjoint_lists_merge_as_union(self, asking, replica_store, remote, user):
        await replica_store.add_item("P1", 2, "1.00")
        remote.seed("user-1", "P2", 1)

        await asking.synchronize(user)

        assert remote.called("sync_replica")[0][3] == ConflictPolicy.SUM_QUANTITIES
        assert remote.quantity("user-1", "P1") == 2
        assert remote.quantity("user-1", "P2") == 1


class TestPlanMerge:
    """Local preview of each conflict policy."""

    @pytest.fixture
    def sides(self, clock):
        local = [
            ReplicaItem(local_id="a", product_id="P1", quantity=2, unit_price="1.00",
                        added_at=clock(), updated_at=clock()),
            ReplicaItem(local_id="b", product_id="P2", quantity=1, unit_price="1.00",
                        added_at=clock(), updated_at=clock()),
        ]
        newer = (clock() + timedelta(hours=1)).isoformat()
        remote = [
            RemoteItem(product_id="P1", quantity=5, price="1.50", updated_at=newer),
            RemoteItem(product_id="P3", quantity=1, price="3.00"),
        ]
        return local, remote

    def test_sum_quantities(self, sides):
        plan = plan_merge(*sides, ConflictPolicy.SUM_QUANTITIES)

        assert plan.quantity_of("P1") == 7
        assert plan.quantity_of("P2") == 1
        assert plan.quantity_of("P3") == 1

    def test_keep_server(self, sides):
        assert plan_merge(*sides, ConflictPolicy.KEEP_SERVER).quantity_of("P1") == 5

    def test_keep_local(self, sides):
        assert plan_merge(*sides, ConflictPolicy.KEEP_LOCAL).quantity_of("P1") == 2

    def test_keep_latest_prefers_newer_server_line(self, sides):
        assert plan_merge(*sides, ConflictPolicy.KEEP_LATEST).quantity_of("P1") == 5

    def test_keep_latest_prefers_newer_local_line(self, sides, clock):
        local, remote = sides
        local[0].updated_at = clock() + timedelta(hours=2)

        assert plan_merge(local, remote, ConflictPolicy.KEEP_LATEST).quantity_of("P1") == 2

    def test_ask_user_lists_conflicts(self, sides):
        plan = plan_merge(*sides, ConflictPolicy.ASK_USER)

        assert plan.needs_resolution is True
        assert plan.conflicting_ids == ["P1"]
        assert plan.quantity_of("P1") == 5

    def test_equal_quantities_are_not_conflicts(self, clock):
        local = [ReplicaItem(local_id="a", product_id="P1", quantity=2, unit_price="1.00")]
        remote = [RemoteItem(product_id="P1", quantity=2)]

        assert find_conflicts(local, remote) == []
