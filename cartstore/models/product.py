"""Product domain model: a buyable item shared by every cart."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class Product:
    """A catalogue entry.  Carts reference products; they never own them."""

    name: str
    price: float
    product_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "product_id": self.product_id,
            "name": self.name,
            "price": self.price,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Product":
        return cls(
            product_id=row["product_id"],
            name=row["name"],
            price=row["price"],
            created_at=row.get("created_at") or "",
            updated_at=row.get("updated_at") or "",
        )
