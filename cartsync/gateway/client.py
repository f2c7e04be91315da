"""Remote Gateway - backend cart/saved-items API client.

Thin request layer over the gateway service. Every call carries a
bearer credential from the auth collaborator. Error classification:
- 401 -> AuthError(UNAUTHORIZED), 403 -> AuthError(FORBIDDEN)
- transport failures and every other non-2xx -> NetworkError (transient)
"""

from typing import Any, Optional
from urllib.parse import quote

import httpx
from pydantic import ValidationError as PydanticValidationError

from cartsync.config import API_URL, HTTP_TIMEOUT, ListSettings
from cartsync.errors import ERROR_MALFORMED_RESPONSE, AuthError, AuthErrorCode, NetworkError
from cartsync.logging import get_logger, sanitize_id_for_logging, sanitize_string_for_logging
from cartsync.models import ConflictPolicy, ListKind, format_timestamp
from cartsync.money import Number, to_float
from cartsync.replica.models import Replica
from cartsync.session import BearerCredentials
from .models import AddItemRequest, ApiEnvelope, RemoteState, SyncItem, SyncRequest, UpdateQuantityRequest

logger = get_logger(__name__)


class RemoteGateway:
    """Gateway for one instance (cart or saved list)."""

    def __init__(
        self,
        settings: ListSettings,
        credentials: BearerCredentials,
        base_url: str = API_URL,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = HTTP_TIMEOUT,
    ):
        self.settings = settings
        self.credentials = credentials
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http_client = http_client  # Lazy init when not injected

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Lazy creation of shared httpx client with timeouts."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=5.0),
                limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
            )
        return self._http_client

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    # ==================== ROUTES ====================

    def _list_path(self, user_id: str) -> str:
        return f"/carts/{quote(user_id, safe='')}{self.settings.route_suffix}"

    def _items_path(self, user_id: str) -> str:
        if self.settings.kind == ListKind.CART:
            return f"{self._list_path(user_id)}/items"
        return self._list_path(user_id)

    def _item_path(self, user_id: str, product_id: str) -> str:
        return f"{self._items_path(user_id)}/{quote(product_id, safe='')}"

    # ==================== TRANSPORT ====================

    async def _request(self, method: str, path: str, body: Optional[dict] = None) -> Any:
        """Issue a request and return the unwrapped ``data`` payload."""
        headers = {
            "Content-Type": "application/json",
            "Authorization": await self.credentials.authorization_header(),
        }
        client = await self._get_http_client()

        try:
            response = await client.request(method, f"{self.base_url}{path}", json=body, headers=headers)
        except httpx.HTTPError as e:
            raise NetworkError(f"{method} {path} failed: {type(e).__name__}: {e}") from e

        if response.status_code == 401:
            raise AuthError(AuthErrorCode.UNAUTHORIZED)
        if response.status_code == 403:
            raise AuthError(AuthErrorCode.FORBIDDEN)

        if not response.is_success:
            message = f"HTTP error! status: {response.status_code}"
            try:
                message = response.json().get("message") or message
            except (ValueError, AttributeError):
                pass  # Non-JSON error body
            raise NetworkError(message, status_code=response.status_code)

        if not response.content:
            return None

        try:
            payload = response.json()
        except ValueError as e:
            raise NetworkError(ERROR_MALFORMED_RESPONSE, status_code=response.status_code) from e

        if isinstance(payload, dict) and ("data" in payload or "success" in payload):
            try:
                envelope = ApiEnvelope.model_validate(payload)
            except PydanticValidationError as e:
                raise NetworkError(ERROR_MALFORMED_RESPONSE, status_code=response.status_code) from e
            if not envelope.success:
                raise NetworkError(envelope.message or ERROR_MALFORMED_RESPONSE, status_code=response.status_code)
            return envelope.data
        return payload

    def _to_state(self, data: Any, user_id: str) -> Optional[RemoteState]:
        """Parse a list payload; None when the response carries no full state."""
        try:
            if isinstance(data, list):
                return RemoteState.model_validate({"userId": user_id, "items": data})
            if isinstance(data, dict) and "items" in data:
                return RemoteState.model_validate(data)
        except PydanticValidationError as e:
            logger.warning(f"Malformed {self.settings.kind.value} state: {sanitize_string_for_logging(str(e), 200)}")
            raise NetworkError(ERROR_MALFORMED_RESPONSE) from e
        return None

    async def _mutation_result(self, data: Any, user_id: str) -> RemoteState:
        state = self._to_state(data, user_id)
        if state is None:
            state = await self._fetch_basic(user_id)
        return state

    # ==================== MUTATIONS ====================

    async def add_item(self, user_id: str, product_id: str, quantity: int, price: Number) -> RemoteState:
        body = AddItemRequest(product_id=product_id, quantity=quantity, price=to_float(price))
        data = await self._request("POST", self._items_path(user_id), body.model_dump(by_alias=True))
        logger.debug(f"Remote add {sanitize_id_for_logging(product_id)} for user {sanitize_id_for_logging(user_id)}")
        return await self._mutation_result(data, user_id)

    async def remove_item(self, user_id: str, product_id: str) -> RemoteState:
        data = await self._request("DELETE", self._item_path(user_id, product_id))
        return await self._mutation_result(data, user_id)

    async def update_quantity(self, user_id: str, product_id: str, quantity: int) -> RemoteState:
        body = UpdateQuantityRequest(quantity=quantity)
        data = await self._request("PUT", self._item_path(user_id, product_id), body.model_dump(by_alias=True))
        return await self._mutation_result(data, user_id)

    # ==================== READS ====================

    async def _fetch_basic(self, user_id: str) -> RemoteState:
        data = await self._request("GET", self._list_path(user_id))
        state = self._to_state(data if data is not None else [], user_id)
        if state is None:
            raise NetworkError(ERROR_MALFORMED_RESPONSE)
        return state

    async def _fetch_enriched(self, user_id: str) -> RemoteState:
        data = await self._request("GET", f"{self._list_path(user_id)}/enriched")
        state = self._to_state(data if data is not None else [], user_id)
        if state is None:
            raise NetworkError(ERROR_MALFORMED_RESPONSE)
        state.enriched = True
        return state

    async def fetch_state(self, user_id: str) -> RemoteState:
        """
        Read the server copy.

        Prefers the enriched read (live price/availability); degrades to
        the basic read. Raises only when both tiers fail.
        """
        try:
            return await self._fetch_enriched(user_id)
        except NetworkError as e:
            logger.warning(f"Enriched {self.settings.kind.value} read failed, using basic read: {e}")
        return await self._fetch_basic(user_id)

    # ==================== SYNC ====================

    async def sync_replica(
        self,
        user_id: str,
        replica: Replica,
        policy: ConflictPolicy,
        device_id: str,
    ) -> RemoteState:
        """Bulk-apply a whole local replica using the named conflict policy."""
        body = SyncRequest(
            items=[SyncItem.from_replica_item(item) for item in replica.items],
            conflict_strategy=policy.value,
            last_updated=format_timestamp(replica.updated_at),
            device_id=device_id,
            session_id=replica.session_id,
        )
        data = await self._request("POST", f"{self._list_path(user_id)}/sync", body.model_dump(by_alias=True))
        logger.info(
            f"Synced {len(replica.items)} {self.settings.kind.value} items for user "
            f"{sanitize_id_for_logging(user_id)} with {policy.value}"
        )
        return await self._mutation_result(data, user_id)
