"""Cart domain models for both storage layouts."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from cartstore.models.product import Product


@dataclass
class Cart:
    """A cart.  Created empty; the id is generated on creation."""

    cart_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = field(
        default_factory=lambda: datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    )

    def to_dict(self) -> dict[str, Any]:
        return {"cart_id": self.cart_id, "created_at": self.created_at}

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Cart":
        return cls(cart_id=row["cart_id"], created_at=row.get("created_at") or "")


@dataclass
class CartItem:
    """One ``(product, quantity)`` pair as written by callers."""

    product_id: str
    quantity: int = 1

    def __post_init__(self) -> None:
        if self.quantity <= 0:
            raise ValueError(f"Quantity must be positive, got {self.quantity}")

    def to_dict(self) -> dict[str, Any]:
        return {"product_id": self.product_id, "quantity": self.quantity}


@dataclass
class CartEntry:
    """One item as read back, with its product when it still exists."""

    product_id: str
    quantity: int
    product: Optional[Product] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "CartEntry":
        """Build from a joined row carrying ``products__*`` columns."""
        marker = "products__"
        product = {k[len(marker):]: v for k, v in row.items() if k.startswith(marker)}
        return cls(
            product_id=row["product_id"],
            quantity=row["quantity"],
            product=Product.from_row(product) if product.get("product_id") else None,
        )

    def as_item(self) -> CartItem:
        return CartItem(self.product_id, self.quantity)

    def to_dict(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "quantity": self.quantity,
            "product": self.product.to_dict() if self.product else None,
        }


@dataclass
class CartWithItems:
    """A cart with its items in cart order."""

    cart: Cart
    items: list[CartEntry] = field(default_factory=list)

    @property
    def cart_id(self) -> str:
        return self.cart.cart_id

    @property
    def total(self) -> float:
        return sum(e.product.price * e.quantity for e in self.items if e.product)

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.cart.to_dict(),
            "items": [e.to_dict() for e in self.items],
            "total": self.total,
        }


# -- Serialisation helpers for the JSON items column --

def items_json(items: list[CartItem]) -> str:
    return json.dumps([i.to_dict() for i in items])


def parse_items(raw: Optional[str]) -> list[CartItem]:
    """Parse a stored items array.  Raises ValueError on any malformed entry."""
    if not raw:
        return []
    try:
        return [CartItem(d["product_id"], int(d["quantity"])) for d in json.loads(raw)]
    except (TypeError, KeyError) as e:
        raise ValueError(f"Malformed cart items: {e!r}") from e


def merge_items(items: list[CartItem]) -> list[CartItem]:
    """Collapse repeated products, keeping first-seen order and summing quantity."""
    merged: dict[str, CartItem] = {}
    for item in items:
        if item.product_id in merged:
            merged[item.product_id].quantity += item.quantity
        else:
            merged[item.product_id] = CartItem(item.product_id, item.quantity)
    return list(merged.values())
