"""Repository for the ``products`` table: full CRUD with ACID transactions."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from cartstore.db.database import Database
from cartstore.models.product import Product


class ProductRepository:
    """Single-Responsibility repository for product persistence."""

    def __init__(self, db: Database):
        self._db = db
        self._sql = db.statements

    # -- Create ----------------------------------------------------------------

    def create(self, product: Product) -> Product:
        """Insert a new product. Raises ConstraintViolation on duplicate id."""
        with self._db.transaction() as tx:
            tx.execute(self._sql.insert("products", product.to_dict()))
        return product

    # -- Read ------------------------------------------------------------------

    def get_by_id(self, product_id: str) -> Optional[Product]:
        row = self._db.fetchone(self._sql.select("products", where={"product_id": product_id}))
        return Product.from_row(row) if row else None

    def list_all(self) -> list[Product]:
        rows = self._db.fetchall(self._sql.select("products", order_by=["name", "product_id"]))
        return [Product.from_row(r) for r in rows]

    # -- Update ----------------------------------------------------------------

    def update(self, product_id: str, **fields: Any) -> Optional[Product]:
        """
        Update name and/or price.  Only supplied keys are changed;
        ``updated_at`` is set automatically.
        """
        allowed = {"name", "price"}
        filtered = {k: v for k, v in fields.items() if k in allowed}
        if not filtered:
            return self.get_by_id(product_id)

        filtered["updated_at"] = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        with self._db.transaction() as tx:
            tx.execute(self._sql.update("products", filtered, where={"product_id": product_id}))
        return self.get_by_id(product_id)

    # -- Delete ----------------------------------------------------------------

    def delete(self, product_id: str) -> bool:
        """Delete a product.

        Raises ConstraintViolation while a ``cart_items`` row references it.
        Carts in the JSON layout are not checked; see
        ``JsonCartRepository.dangling_references``.
        """
        with self._db.transaction() as tx:
            cursor = tx.execute(self._sql.delete("products", where={"product_id": product_id}))
        return cursor.rowcount > 0
