"""Event bus - state-change notifications for UI or host runtimes.

Replaces browser event dispatch with explicit subscriptions. Handlers
may be plain functions or coroutines; a failing handler is logged and
never breaks the publisher. Consumers that prefer pulling can open a
channel (an asyncio.Queue receiving every event).
"""

import asyncio
import inspect
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from cartsync.logging import get_logger

logger = get_logger(__name__)


class SyncEvent(str, Enum):
    """Published event names."""
    AUTH_STATE_CHANGED = "auth-state-changed"
    AUTH_REQUIRED = "auth-required"
    CONNECTIVITY_CHANGED = "connectivity-changed"
    LIST_UPDATED = "list-updated"
    SYNC_STATE_CHANGED = "sync-state-changed"
    SYNC_COMPLETED = "sync-completed"
    SYNC_FAILED = "sync-failed"
    OPERATION_DROPPED = "operation-dropped"


@dataclass(frozen=True)
class Event:
    name: SyncEvent
    payload: dict[str, Any] = field(default_factory=dict)


Handler = Callable[[Event], Any]


class EventBus:
    """Observer registry with optional queue channels."""

    def __init__(self) -> None:
        self._handlers: dict[SyncEvent, list[Handler]] = {}
        self._channels: list[asyncio.Queue] = []

    def subscribe(self, name: SyncEvent, handler: Handler) -> Callable[[], None]:
        """Register handler for an event; returns an unsubscribe callable."""
        self._handlers.setdefault(name, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(name, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def channel(self) -> asyncio.Queue:
        """Open a message channel that receives every published event."""
        queue: asyncio.Queue = asyncio.Queue()
        self._channels.append(queue)
        return queue

    def close_channel(self, queue: asyncio.Queue) -> None:
        if queue in self._channels:
            self._channels.remove(queue)

    async def publish(self, name: SyncEvent, **payload: Any) -> None:
        event = Event(name=name, payload=payload)

        for queue in self._channels:
            queue.put_nowait(event)

        for handler in list(self._handlers.get(name, [])):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Event handler for {name.value} failed: {e}", exc_info=True)
