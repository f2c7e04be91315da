"""
Sync Coordinator - merge the local replica into the server and drain the queue.

State machine (one per instance):

    guest -> authenticating -> merging -> draining -> synced

Re-entered on every guest -> authenticated transition and on every
reconnect while authenticated. A single ``sync_in_progress`` flag keeps
two merge/drain runs from interleaving; triggers that arrive while a run
is active are no-ops.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Optional

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from cartsync.config import CONFLICT_POLICY, RETRY_WAIT_MAX
from cartsync.db import get_device_id
from cartsync.errors import (
    ERROR_OFFLINE,
    ERROR_SIGN_IN_TO_SYNC,
    AuthError,
    AuthErrorCode,
    CartSyncError,
    LocalStorageError,
    NetworkError,
    SyncConflictError,
)
from cartsync.events import EventBus, SyncEvent
from cartsync.gateway.client import RemoteGateway
from cartsync.gateway.models import RemoteItem, RemoteState
from cartsync.logging import get_logger, sanitize_id_for_logging
from cartsync.models import ConflictPolicy, OperationKind, SyncState, parse_timestamp
from cartsync.queue import OperationQueue, QueuedOperation
from cartsync.replica.models import Replica, ReplicaItem
from cartsync.replica.service import ReplicaStore
from cartsync.session import Connectivity, SessionContext

logger = get_logger(__name__)


# ==================== MERGE PLANNING ====================

@dataclass
class MergedLine:
    product_id: str
    quantity: int
    price: Decimal
    source: str  # "local", "remote" or "both"


@dataclass
class MergePlan:
    """Local preview of what a server-side merge would produce."""
    policy: ConflictPolicy
    lines: list[MergedLine] = field(default_factory=list)
    conflicting_ids: list[str] = field(default_factory=list)

    @property
    def needs_resolution(self) -> bool:
        return self.policy == ConflictPolicy.ASK_USER and bool(self.conflicting_ids)

    def quantity_of(self, product_id: str) -> Optional[int]:
        line = next((line for line in self.lines if line.product_id == product_id), None)
        return line.quantity if line else None


def find_conflicts(local_items: Iterable[ReplicaItem], remote_items: Iterable[RemoteItem]) -> list[str]:
    """Products present on both sides with different quantities."""
    remote_by_id = {item.product_id: item for item in remote_items}
    return [
        item.product_id
        for item in local_items
        if item.product_id in remote_by_id and remote_by_id[item.product_id].quantity != item.quantity
    ]


def _local_is_newer(local: ReplicaItem, remote: RemoteItem) -> bool:
    if not remote.updated_at:
        return True
    try:
        return local.updated_at >= parse_timestamp(remote.updated_at)
    except ValueError:
        return True


def plan_merge(
    local_items: Iterable[ReplicaItem],
    remote_items: Iterable[RemoteItem],
    policy: ConflictPolicy,
) -> MergePlan:
    """
    Apply a conflict policy to local and remote lines.

    Products on one side only are always kept. Under ASK_USER the
    disagreeing products keep the server line and are listed in
    ``conflicting_ids`` for the caller to resolve.
    """
    local_items = list(local_items)
    remote_items = list(remote_items)
    local_by_id = {item.product_id: item for item in local_items}
    plan = MergePlan(policy=policy, conflicting_ids=find_conflicts(local_items, remote_items))

    for remote in remote_items:
        local = local_by_id.pop(remote.product_id, None)
        if local is None:
            plan.lines.append(MergedLine(remote.product_id, remote.quantity, remote.price, "remote"))
            continue

        if policy == ConflictPolicy.SUM_QUANTITIES:
            line = MergedLine(remote.product_id, local.quantity + remote.quantity, local.unit_price, "both")
        elif policy == ConflictPolicy.KEEP_LOCAL:
            line = MergedLine(local.product_id, local.quantity, local.unit_price, "local")
        elif policy == ConflictPolicy.KEEP_LATEST and _local_is_newer(local, remote):
            line = MergedLine(local.product_id, local.quantity, local.unit_price, "local")
        elif policy == ConflictPolicy.ASK_USER and remote.product_id not in plan.conflicting_ids:
            line = MergedLine(remote.product_id, remote.quantity, remote.price, "both")
        else:
            line = MergedLine(remote.product_id, remote.quantity, remote.price, "remote")
        plan.lines.append(line)

    for local in local_by_id.values():
        plan.lines.append(MergedLine(local.product_id, local.quantity, local.unit_price, "local"))
    return plan


def _carried_products(
    snapshot: Replica,
    remote: Optional[RemoteState],
    policy: ConflictPolicy,
) -> set[str]:
    """
    Products whose local line survives the merge under ``policy``.

    Queued operations for any other product still have to be drained,
    otherwise a server-side win would discard them.
    """
    if remote is None or policy in (ConflictPolicy.SUM_QUANTITIES, ConflictPolicy.KEEP_LOCAL):
        return snapshot.product_ids
    plan = plan_merge(snapshot.items, remote.items, policy)
    return {line.product_id for line in plan.lines if line.source != "remote"}


# Policies where the outcome per product depends on the server copy
_POLICIES_NEEDING_SERVER_COPY = (
    ConflictPolicy.ASK_USER,
    ConflictPolicy.KEEP_SERVER,
    ConflictPolicy.KEEP_LATEST,
)


# ==================== COORDINATOR ====================

@dataclass
class SyncResult:
    """Outcome of one merge + drain run."""
    state: SyncState
    merged: int = 0  # replica lines sent in the merge
    superseded: int = 0  # queued operations already covered by the merge
    applied: int = 0
    dropped: int = 0
    remote: Optional[RemoteState] = None


class SyncCoordinator:
    """Drives one instance (cart or saved list) back into agreement with the server."""

    def __init__(
        self,
        replica_store: ReplicaStore,
        queue: OperationQueue,
        gateway: RemoteGateway,
        connectivity: Connectivity,
        events: Optional[EventBus] = None,
        policy: ConflictPolicy = CONFLICT_POLICY,
        device_id: Optional[str] = None,
        retry_wait=None,
    ):
        self.replica_store = replica_store
        self.queue = queue
        self.gateway = gateway
        self.connectivity = connectivity
        self.events = events or EventBus()
        self.policy = policy
        self.kind = replica_store.settings.kind
        self._device_id = device_id
        self._retry_wait = retry_wait or wait_exponential(multiplier=0.5, max=RETRY_WAIT_MAX)
        self._state = SyncState.GUEST
        self._sync_in_progress = False

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def sync_in_progress(self) -> bool:
        return self._sync_in_progress

    async def _set_state(self, state: SyncState) -> None:
        if state == self._state:
            return
        previous, self._state = self._state, state
        logger.info(f"{self.kind.value} sync: {previous.value} -> {state.value}")
        await self.events.publish(
            SyncEvent.SYNC_STATE_CHANGED, kind=self.kind.value, previous=previous.value, state=state.value
        )

    async def _get_device_id(self) -> str:
        if self._device_id is None:
            self._device_id = await get_device_id(self.replica_store.store)
        return self._device_id

    # ==================== TRIGGERS ====================

    async def on_auth_changed(
        self,
        previous: SessionContext,
        current: SessionContext,
    ) -> Optional[SyncResult]:
        """
        React to a change of the session context.

        Signing out returns to guest. A newly usable identity moves to
        authenticating and, when online, runs a full sync.
        """
        if not current.is_authenticated:
            await self._set_state(SyncState.GUEST)
            return None

        identity_changed = not previous.can_reach_server or previous.user_id != current.user_id
        if not identity_changed and self._state != SyncState.GUEST:
            return None

        await self._set_state(SyncState.AUTHENTICATING)
        if not current.can_reach_server or not self.connectivity.is_online:
            return None
        return await self.synchronize(current)

    async def on_online(self, session: SessionContext) -> Optional[SyncResult]:
        """Reconnect trigger. Runs a full sync while authenticated."""
        if not session.is_authenticated or not self.connectivity.is_online:
            return None
        if not self._sync_in_progress:
            await self._set_state(SyncState.AUTHENTICATING)
        if not session.user_id:
            return None
        return await self.synchronize(session)

    # ==================== SYNC ====================

    async def synchronize(
        self,
        session: SessionContext,
        policy: Optional[ConflictPolicy] = None,
    ) -> Optional[SyncResult]:
        """
        Merge the replica and drain the queue.

        Returns None when another run is active or no user id is known
        yet. Failures are published as ``sync-failed`` and re-raised to
        the caller that triggered the run.
        """
        if not session.is_authenticated:
            raise AuthError(AuthErrorCode.UNAUTHORIZED, ERROR_SIGN_IN_TO_SYNC)
        if not self.connectivity.is_online:
            raise NetworkError(ERROR_OFFLINE)
        if not session.user_id:
            await self._set_state(SyncState.AUTHENTICATING)
            return None

        if self._sync_in_progress:
            logger.debug(f"{self.kind.value} sync already running, ignoring trigger")
            return None

        self._sync_in_progress = True
        try:
            result = await self._run(session.user_id, policy or self.policy)
        except AuthError as e:
            await self._set_state(SyncState.AUTHENTICATING)
            await self._publish_failure(e)
            raise
        except CartSyncError as e:
            await self._publish_failure(e)
            raise
        finally:
            self._sync_in_progress = False

        await self.events.publish(
            SyncEvent.SYNC_COMPLETED,
            kind=self.kind.value,
            merged=result.merged,
            superseded=result.superseded,
            applied=result.applied,
            dropped=result.dropped,
        )
        return result

    async def resolve_conflict(self, session: SessionContext, policy: ConflictPolicy) -> Optional[SyncResult]:
        """Retry a merge deferred under ASK_USER with a concrete policy."""
        if policy == ConflictPolicy.ASK_USER:
            raise ValueError("resolve_conflict needs a concrete conflict policy")
        return await self.synchronize(session, policy)

    async def _publish_failure(self, error: Exception) -> None:
        logger.warning(f"{self.kind.value} sync failed in {self._state.value}: {error}")
        await self.events.publish(
            SyncEvent.SYNC_FAILED, kind=self.kind.value, state=self._state.value, error=str(error)
        )

    async def _run(self, user_id: str, policy: ConflictPolicy) -> SyncResult:
        result = SyncResult(state=SyncState.MERGING)
        await self._merge(user_id, policy, result)
        await self._drain(user_id, result)
        await self._set_state(SyncState.SYNCED)
        result.state = SyncState.SYNCED
        return result

    # ==================== MERGING ====================

    async def _merge(self, user_id: str, policy: ConflictPolicy, result: SyncResult) -> None:
        await self._set_state(SyncState.MERGING)

        replica = await self.replica_store.get()
        if replica is None or replica.is_empty:
            return

        # Mutations made while the request is in flight must survive it
        snapshot = replica.copy()
        pending_ids = {op.id for op in await self.queue.list()}

        effective = policy
        remote = None
        if policy in _POLICIES_NEEDING_SERVER_COPY:
            remote = await self.gateway.fetch_state(user_id)
        if policy == ConflictPolicy.ASK_USER:
            conflicting_ids = find_conflicts(snapshot.items, remote.items)
            if conflicting_ids:
                logger.info(f"{self.kind.value} merge deferred: {len(conflicting_ids)} conflicting products")
                raise SyncConflictError(snapshot, remote, conflicting_ids)
            effective = ConflictPolicy.SUM_QUANTITIES

        carried = _carried_products(snapshot, remote, effective)

        result.remote = await self.gateway.sync_replica(user_id, snapshot, effective, await self._get_device_id())
        result.merged = len(snapshot.items)
        logger.info(
            f"Merged {result.merged} local {self.kind.value} items for user "
            f"{sanitize_id_for_logging(user_id)} ({effective.value})"
        )

        result.superseded = await self._supersede(carried, pending_ids)
        try:
            await self.replica_store.discard(snapshot.items)
        except LocalStorageError as e:
            logger.warning(f"Merged {self.kind.value} replica could not be cleared: {e}")

    async def _supersede(self, carried: set[str], pending_ids: set[str]) -> int:
        """Drop queued operations whose net effect the merged snapshot already carried."""
        superseded = 0
        for operation in await self.queue.list():
            if operation.id in pending_ids and operation.product_id in carried:
                if await self.queue.remove(operation.id):
                    superseded += 1
        if superseded:
            logger.info(f"{superseded} queued {self.kind.value} operations superseded by merge")
        return superseded

    # ==================== DRAINING ====================

    async def _drain(self, user_id: str, result: SyncResult) -> None:
        await self._set_state(SyncState.DRAINING)

        # Operations enqueued during the drain are appended and picked up here too
        while True:
            operations = await self.queue.list()
            if not operations:
                break
            if await self._deliver(user_id, operations[0]):
                result.applied += 1
            else:
                result.dropped += 1

        if result.applied or result.dropped:
            logger.info(
                f"Drained {self.kind.value} queue: {result.applied} applied, {result.dropped} dropped"
            )

        try:
            await self.replica_store.discard_queued()
        except LocalStorageError as e:
            logger.warning(f"Delivered {self.kind.value} items could not be removed locally: {e}")
        await self.queue.clear()

    async def _deliver(self, user_id: str, operation: QueuedOperation) -> bool:
        """
        Apply one operation with bounded retries.

        Every failed attempt made while online counts against the
        operation's budget. Returns False when the budget ran out and the
        operation was dropped. AuthError or a lost connection stops the
        drain with the operation left in place.
        """
        remaining = operation.max_retries - operation.retry_count
        if remaining <= 0:
            await self._drop(operation, None)
            return False

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(remaining),
                wait=self._retry_wait,
                retry=retry_if_exception(self._is_retryable),
                reraise=True,
            ):
                with attempt:
                    if not self.connectivity.is_online:
                        raise NetworkError(ERROR_OFFLINE)
                    try:
                        await self._apply(user_id, operation)
                    except NetworkError:
                        if self.connectivity.is_online:
                            await self.queue.mark_retried(operation.id)
                        raise
        except NetworkError as e:
            if not self.connectivity.is_online:
                logger.info(f"{self.kind.value} drain paused: connection lost, {await self.queue.size()} pending")
                raise NetworkError(ERROR_OFFLINE) from e
            await self._drop(operation, e)
            return False

        await self.queue.remove(operation.id)
        return True

    def _is_retryable(self, error: BaseException) -> bool:
        return isinstance(error, NetworkError) and self.connectivity.is_online

    async def _apply(self, user_id: str, operation: QueuedOperation) -> None:
        payload = operation.payload
        product_id = payload["productId"]

        if operation.kind == OperationKind.ADD:
            await self.gateway.add_item(user_id, product_id, int(payload["quantity"]), payload.get("price"))
        elif operation.kind == OperationKind.UPDATE_QUANTITY:
            await self.gateway.update_quantity(user_id, product_id, int(payload["quantity"]))
        else:
            try:
                await self.gateway.remove_item(user_id, product_id)
            except NetworkError as e:
                if not e.is_not_found:
                    raise
                # Already absent on the server
                logger.debug(f"Queued remove of {sanitize_id_for_logging(product_id)} was already applied")

    async def _drop(self, operation: QueuedOperation, error: Optional[Exception]) -> None:
        await self.queue.remove(operation.id)
        logger.error(
            f"Dropped queued {operation.kind.value} for {self.kind.value} "
            f"{sanitize_id_for_logging(operation.product_id or '')} after "
            f"{operation.retry_count} attempts: {error}"
        )
        await self.events.publish(
            SyncEvent.OPERATION_DROPPED,
            kind=self.kind.value,
            operation=operation.to_dict(),
            error=str(error) if error else None,
        )

    # ==================== DEBUG ====================

    async def debug_info(self) -> dict:
        replica = await self.replica_store.get()
        return {
            "kind": self.kind.value,
            "state": self._state.value,
            "sync_in_progress": self._sync_in_progress,
            "policy": self.policy.value,
            "online": self.connectivity.is_online,
            "queue_length": await self.queue.size(),
            "replica_items": len(replica.items) if replica else 0,
        }
