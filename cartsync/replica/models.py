"""Replica models with Decimal-based pricing."""
import copy
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from cartsync.models import format_timestamp, parse_timestamp, utcnow
from cartsync.money import multiply, round_money, to_decimal


@dataclass
class ReplicaItem:
    """Single line of the local cart or saved list."""
    local_id: str
    product_id: str
    quantity: int
    unit_price: Decimal
    added_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    name: Optional[str] = None
    image: Optional[str] = None
    category: Optional[str] = None
    # Written on an authenticated path, so its effect is also in the queue
    queued: bool = False

    def __post_init__(self):
        self.unit_price = to_decimal(self.unit_price)

    @property
    def total_price(self) -> Decimal:
        return round_money(multiply(self.unit_price, self.quantity))

    def to_dict(self) -> dict:
        """Convert to the persisted record format."""
        data = {
            "id": self.local_id,
            "productId": self.product_id,
            "quantity": self.quantity,
            "price": str(self.unit_price),
            "addedAt": format_timestamp(self.added_at),
            "updatedAt": format_timestamp(self.updated_at),
        }
        if self.name is not None:
            data["productName"] = self.name
        if self.image is not None:
            data["productImage"] = self.image
        if self.category is not None:
            data["category"] = self.category
        if self.queued:
            data["queued"] = True
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ReplicaItem":
        """Create from a persisted record."""
        return cls(
            local_id=data["id"],
            product_id=data["productId"],
            quantity=int(data["quantity"]),
            unit_price=to_decimal(data.get("price")),
            added_at=parse_timestamp(data["addedAt"]),
            updated_at=parse_timestamp(data.get("updatedAt") or data["addedAt"]),
            name=data.get("productName"),
            image=data.get("productImage") or data.get("imagePath"),
            category=data.get("category"),
            queued=bool(data.get("queued", False)),
        )


@dataclass
class Replica:
    """Local durable copy of one list, owned by this device/session."""
    items: List[ReplicaItem]
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    session_id: str

    def find(self, product_id: str) -> Optional[ReplicaItem]:
        return next((item for item in self.items if item.product_id == product_id), None)

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    @property
    def is_empty(self) -> bool:
        return not self.items

    @property
    def product_ids(self) -> set[str]:
        return {item.product_id for item in self.items}

    @property
    def total_quantity(self) -> int:
        return sum(item.quantity for item in self.items)

    def copy(self) -> "Replica":
        """Deep copy, used to snapshot the replica at merge start."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict:
        return {
            "items": [item.to_dict() for item in self.items],
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
            "expiresAt": format_timestamp(self.expires_at),
            "sessionId": self.session_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Replica":
        return cls(
            items=[ReplicaItem.from_dict(item) for item in data.get("items", [])],
            created_at=parse_timestamp(data["createdAt"]),
            updated_at=parse_timestamp(data["updatedAt"]),
            expires_at=parse_timestamp(data["expiresAt"]),
            session_id=data["sessionId"],
        )
