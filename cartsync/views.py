"""List views returned to callers, built from either the replica or the server copy."""
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from cartsync.gateway.models import RemoteState
from cartsync.models import ListKind, format_timestamp
from cartsync.money import multiply, round_money, to_float
from cartsync.replica.models import Replica


class ViewSource(str, Enum):
    """Where a view's data came from."""
    LOCAL = "local"
    REMOTE = "remote"  # enriched server read
    REMOTE_BASIC = "remote_basic"


@dataclass
class ViewItem:
    """One displayed line."""
    product_id: str
    quantity: int
    unit_price: Decimal
    name: Optional[str] = None
    image: Optional[str] = None
    category: Optional[str] = None
    added_at: Optional[str] = None
    in_stock: Optional[bool] = None
    available_quantity: Optional[int] = None
    product_status: Optional[str] = None
    discount_percent: Optional[Decimal] = None

    @property
    def total_price(self) -> Decimal:
        return round_money(multiply(self.unit_price, self.quantity))


@dataclass
class ListView:
    """A consistent snapshot of a cart or saved list."""
    kind: ListKind
    items: List[ViewItem] = field(default_factory=list)
    source: ViewSource = ViewSource.LOCAL
    # True when a server read was intended but fell back to local data
    degraded: bool = False

    @classmethod
    def from_replica(cls, kind: ListKind, replica: Optional[Replica], degraded: bool = False) -> "ListView":
        items = []
        for item in (replica.items if replica else []):
            items.append(
                ViewItem(
                    product_id=item.product_id,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    name=item.name,
                    image=item.image,
                    category=item.category,
                    added_at=format_timestamp(item.added_at),
                )
            )
        return cls(kind=kind, items=items, source=ViewSource.LOCAL, degraded=degraded)

    @classmethod
    def from_remote(cls, kind: ListKind, state: RemoteState) -> "ListView":
        items = [
            ViewItem(
                product_id=item.product_id,
                quantity=item.quantity,
                unit_price=item.price,
                name=item.product_name,
                image=item.product_image,
                category=item.category,
                added_at=item.added_at,
                in_stock=item.in_stock,
                available_quantity=item.available_quantity,
                product_status=item.product_status.value if item.product_status else None,
                discount_percent=item.discount_percent,
            )
            for item in state.items
        ]
        source = ViewSource.REMOTE if state.enriched else ViewSource.REMOTE_BASIC
        return cls(kind=kind, items=items, source=source)

    @property
    def item_count(self) -> int:
        """Number of distinct lines."""
        return len(self.items)

    @property
    def total_quantity(self) -> int:
        return sum(item.quantity for item in self.items)

    @property
    def subtotal(self) -> Decimal:
        return round_money(sum((item.total_price for item in self.items), Decimal("0")))

    @property
    def is_empty(self) -> bool:
        return not self.items

    def find(self, product_id: str) -> Optional[ViewItem]:
        return next((item for item in self.items if item.product_id == product_id), None)

    def contains(self, product_id: str) -> bool:
        return self.find(product_id) is not None

    def summary(self) -> dict:
        """Compact summary for UI badges and logs."""
        return {
            "kind": self.kind.value,
            "is_empty": self.is_empty,
            "item_count": self.item_count,
            "total_quantity": self.total_quantity,
            "subtotal": to_float(self.subtotal),
            "source": self.source.value,
            "degraded": self.degraded,
        }
