"""
Gateway Wire Models

Pydantic models for the backend cart/saved-items API. Field names are
snake_case in Python and camelCase on the wire.
"""
from decimal import Decimal
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, field_validator, model_validator
from pydantic.alias_generators import to_camel

from cartsync.money import to_decimal, to_float
from cartsync.replica.models import ReplicaItem


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ProductStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    OUT_OF_STOCK = "OUT_OF_STOCK"
    DISCONTINUED = "DISCONTINUED"


_STATUS_VALUES = {status.value for status in ProductStatus}


# ==================== RESPONSES ====================

class RemoteItem(_WireModel):
    """One server-side line. Enriched reads fill the product fields."""
    id: Optional[str] = None
    product_id: str
    quantity: int = 1
    price: Decimal = Decimal("0")
    subtotal: Optional[Decimal] = None
    added_at: Optional[str] = None
    updated_at: Optional[str] = None
    # Enriched product data
    product_name: Optional[str] = None
    product_image: Optional[str] = None
    category: Optional[str] = None
    in_stock: Optional[bool] = None
    available_quantity: Optional[int] = None
    product_status: Optional[ProductStatus] = None
    discount_percent: Optional[Decimal] = None

    @model_validator(mode="before")
    @classmethod
    def accept_saved_item_shape(cls, data: Any) -> Any:
        # Saved-list rows use savedAt / imagePath
        if isinstance(data, dict):
            data = dict(data)
            if "addedAt" not in data and "savedAt" in data:
                data["addedAt"] = data["savedAt"]
            if "productImage" not in data and "imagePath" in data:
                data["productImage"] = data["imagePath"]
        return data

    @field_validator("price", "subtotal", "discount_percent", mode="before")
    @classmethod
    def convert_to_decimal(cls, v):
        return None if v is None else to_decimal(v)

    @field_validator("product_status", mode="before")
    @classmethod
    def tolerate_unknown_status(cls, v):
        if v is None or v in _STATUS_VALUES:
            return v
        return None


class RemoteState(_WireModel):
    """Server's authoritative copy of a cart or saved list."""
    id: Optional[str] = None
    user_id: Optional[str] = None
    items: List[RemoteItem] = []
    total: Optional[Decimal] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    expires_at: Optional[str] = None
    # Set by the gateway, not sent by the server
    enriched: bool = False

    @field_validator("total", mode="before")
    @classmethod
    def convert_total(cls, v):
        return None if v is None else to_decimal(v)

    def find(self, product_id: str) -> Optional[RemoteItem]:
        return next((item for item in self.items if item.product_id == product_id), None)

    @property
    def product_ids(self) -> set[str]:
        return {item.product_id for item in self.items}


class ApiEnvelope(_WireModel):
    """Standard response wrapper: {success, message, data}."""
    success: bool = True
    message: str = ""
    data: Any = None
    timestamp: Optional[str] = None


# ==================== REQUESTS ====================

class AddItemRequest(_WireModel):
    product_id: str
    quantity: int
    price: float


class UpdateQuantityRequest(_WireModel):
    quantity: int


class SyncItem(_WireModel):
    product_id: str
    quantity: int
    price: float
    added_at: str
    updated_at: str
    product_name: Optional[str] = None
    product_image: Optional[str] = None
    category: Optional[str] = None

    @classmethod
    def from_replica_item(cls, item: ReplicaItem) -> "SyncItem":
        data = item.to_dict()
        return cls(
            product_id=item.product_id,
            quantity=item.quantity,
            price=to_float(item.unit_price),
            added_at=data["addedAt"],
            updated_at=data["updatedAt"],
            product_name=item.name,
            product_image=item.image,
            category=item.category,
        )


class SyncRequest(_WireModel):
    items: List[SyncItem]
    conflict_strategy: str
    last_updated: str
    device_id: str
    session_id: str
