"""Gateway package: wire models and the remote API client."""
from .client import RemoteGateway
from .models import ProductStatus, RemoteItem, RemoteState

__all__ = [
    "RemoteGateway",
    "RemoteItem",
    "RemoteState",
    "ProductStatus",
]
