"""
Session context, connectivity signal and bearer credentials.

The auth collaborator is consumed only as "is authenticated + user id"
and "a token for requests"; everything here is explicit input passed to
the dispatcher and the coordinator rather than ambient mutable state.
"""

import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

import jwt

from cartsync.errors import AuthError, AuthErrorCode
from cartsync.events import EventBus, SyncEvent
from cartsync.logging import get_logger

logger = get_logger(__name__)

TokenProvider = Callable[[], Union[Optional[str], Awaitable[Optional[str]]]]


@dataclass(frozen=True)
class SessionContext:
    """Read-only auth input for a single session."""
    is_authenticated: bool = False
    user_id: Optional[str] = None

    @classmethod
    def guest(cls) -> "SessionContext":
        return cls(is_authenticated=False, user_id=None)

    @classmethod
    def authenticated(cls, user_id: Optional[str]) -> "SessionContext":
        return cls(is_authenticated=True, user_id=user_id)

    @property
    def can_reach_server(self) -> bool:
        """Authenticated with a known user id."""
        return self.is_authenticated and bool(self.user_id)


class Connectivity:
    """Online/offline signal with change listeners."""

    def __init__(self, online: bool = True, events: Optional[EventBus] = None):
        self._online = online
        self._events = events
        self._listeners: list[Callable[[bool], Any]] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def add_listener(self, listener: Callable[[bool], Any]) -> None:
        self._listeners.append(listener)

    async def set_online(self, online: bool) -> None:
        """Update the flag; listeners run only on an actual transition."""
        if online == self._online:
            return
        self._online = online
        logger.info("Connectivity changed: %s", "online" if online else "offline")

        if self._events:
            await self._events.publish(SyncEvent.CONNECTIVITY_CHANGED, online=online)

        for listener in list(self._listeners):
            result = listener(online)
            if inspect.isawaitable(result):
                await result


def is_token_expired(token: str, leeway: float = 0) -> bool:
    """
    Check the ``exp`` claim of a JWT without verifying its signature.

    Opaque (non-JWT) tokens are assumed valid; the server decides.
    A JWT that cannot be decoded is treated as expired.
    """
    raw = token[7:] if token.startswith("Bearer ") else token
    if raw.count(".") != 2:
        return False
    try:
        jwt.decode(raw, options={"verify_signature": False, "verify_exp": True}, leeway=leeway)
    except jwt.ExpiredSignatureError:
        return True
    except jwt.InvalidTokenError as e:
        logger.debug("Undecodable bearer token: %s", e)
        return True
    return False


class BearerCredentials:
    """Formats the Authorization header from an external token provider."""

    def __init__(self, provider: TokenProvider):
        self._provider = provider

    async def authorization_header(self) -> str:
        token = self._provider()
        if inspect.isawaitable(token):
            token = await token
        if not token:
            raise AuthError(AuthErrorCode.UNAUTHORIZED)
        if is_token_expired(token):
            raise AuthError(AuthErrorCode.TOKEN_EXPIRED)
        return token if token.startswith("Bearer ") else f"Bearer {token}"
