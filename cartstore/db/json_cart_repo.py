"""Repository for carts whose items live in a JSON array column (``carts_json``)."""

from __future__ import annotations

import logging
from typing import Any, Optional

from cartstore.db.database import Database, Transaction
from cartstore.db.mapper import first_group, group_rows
from cartstore.db.statements import ElementJoin, Statement
from cartstore.errors import CartNotFound, ConstraintViolation
from cartstore.live.query import LiveQuery
from cartstore.live.reactive import Observable
from cartstore.models.cart import (
    Cart,
    CartEntry,
    CartItem,
    CartWithItems,
    items_json,
    merge_items,
    parse_items,
)

logger = logging.getLogger(__name__)

_TABLES = frozenset({"carts_json", "products"})


class JsonCartRepository:
    """JSON layout.  Replacing items is a single-row write; item order is kept.

    Product references inside the array are not enforced by the database.
    """

    def __init__(self, db: Database):
        self._db = db
        self._sql = db.statements

    # -- Create ----------------------------------------------------------------

    def create(self, cart: Optional[Cart] = None, items: Optional[list[CartItem]] = None) -> Cart:
        cart = cart or Cart()
        row = {**cart.to_dict(), "items": items_json(merge_items(items or []))}
        with self._db.transaction() as tx:
            tx.execute(self._sql.insert("carts_json", row))
        logger.info("Created JSON cart %s", cart.cart_id)
        return cart

    # -- Write items -----------------------------------------------------------

    def replace_items(self, cart_id: str, items: list[CartItem]) -> CartWithItems:
        """Overwrite the cart's item array in one statement."""
        items = merge_items(items)
        with self._db.transaction() as tx:
            cursor = tx.execute(self._sql.update(
                "carts_json", {"items": items_json(items)}, where={"cart_id": cart_id},
            ))
            if cursor.rowcount == 0:
                raise CartNotFound(f"Cart {cart_id} not found")
        logger.info("Replaced items of JSON cart %s (%d items)", cart_id, len(items))
        return self.get(cart_id)  # type: ignore[return-value]

    def add_item(self, cart_id: str, product_id: str, quantity: int = 1) -> CartWithItems:
        """Append a product, or add to its quantity if already present."""
        if quantity <= 0:
            raise ValueError(f"Quantity must be positive, got {quantity}")
        with self._db.transaction() as tx:
            items = self._read_items(tx, cart_id)
            items.append(CartItem(product_id, quantity))
            tx.execute(self._sql.update(
                "carts_json", {"items": items_json(merge_items(items))},
                where={"cart_id": cart_id},
            ))
        return self.get(cart_id)  # type: ignore[return-value]

    def remove_item(self, cart_id: str, product_id: str) -> bool:
        """Drop a product from the cart.  False if the cart or product is absent."""
        with self._db.transaction() as tx:
            if not self.exists(cart_id):
                return False
            items = self._read_items(tx, cart_id)
            kept = [i for i in items if i.product_id != product_id]
            if len(kept) == len(items):
                return False
            tx.execute(self._sql.update(
                "carts_json", {"items": items_json(kept)}, where={"cart_id": cart_id},
            ))
        return True

    # -- Read ------------------------------------------------------------------

    def exists(self, cart_id: str) -> bool:
        row = self._db.fetchone(
            self._sql.select("carts_json", ["cart_id"], where={"cart_id": cart_id})
        )
        return row is not None

    def get(self, cart_id: str) -> Optional[CartWithItems]:
        group = first_group(self._grouped(self._db.fetchall(self._expanded(cart_id))))
        return CartWithItems(group.parent, group.children) if group else None

    def list_all(self) -> dict[str, list[CartEntry]]:
        """Every cart, empty ones included, in creation order."""
        groups = self._grouped(self._db.fetchall(self._expanded()))
        return {cart_id: g.children for cart_id, g in groups.items()}

    def dangling_references(self) -> dict[str, list[str]]:
        """Carts whose array names products that no longer exist."""
        dangling: dict[str, list[str]] = {}
        for row in self._db.fetchall(self._expanded()):
            if row["product_id"] is not None and row["products__product_id"] is None:
                dangling.setdefault(row["cart_id"], []).append(row["product_id"])
        return dangling

    # -- Delete ----------------------------------------------------------------

    def delete(self, cart_id: str) -> bool:
        """Delete a cart; the embedded items go with the row."""
        with self._db.transaction() as tx:
            cursor = tx.execute(self._sql.delete("carts_json", where={"cart_id": cart_id}))
        return cursor.rowcount > 0

    # -- Live ------------------------------------------------------------------

    def watch_cart(self, cart_id: str) -> Observable:
        """Snapshots of one cart (``None`` while it does not exist)."""
        return LiveQuery(self._db, _TABLES, lambda: self.get(cart_id),
                         name=f"json-cart:{cart_id[:8]}")

    def watch_all(self) -> Observable:
        """Snapshots of ``{cart_id: items}``; one query covers every cart."""
        return LiveQuery(self._db, _TABLES, self.list_all, name="json-carts")

    # -- internal --------------------------------------------------------------

    def _read_items(self, tx: Transaction, cart_id: str) -> list[CartItem]:
        row = tx.fetchone(self._sql.select("carts_json", ["items"], where={"cart_id": cart_id}))
        if row is None:
            raise CartNotFound(f"Cart {cart_id} not found")
        try:
            return parse_items(row["items"])
        except ValueError as e:
            # Rewriting from a partial parse would drop the unreadable entries.
            raise ConstraintViolation(f"Cart {cart_id} holds malformed items: {e}") from e

    def _expanded(self, cart_id: Optional[str] = None) -> Statement:
        return self._sql.expand(
            "carts_json", "items",
            fields=["product_id", "quantity"],
            where={"cart_id": cart_id} if cart_id is not None else None,
            join=ElementJoin("products", "product_id", "product_id"),
        )

    @staticmethod
    def _grouped(rows: list[dict[str, Any]]):
        return group_rows(
            rows, "cart_id", "position", parent=Cart.from_row, child=CartEntry.from_row
        )
