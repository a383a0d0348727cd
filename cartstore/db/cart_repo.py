"""Repository for carts stored relationally: ``carts`` + ``cart_items`` join table."""

from __future__ import annotations

import logging
from typing import Any, Optional

from cartstore.db.database import Database, Transaction
from cartstore.db.mapper import first_group, group_rows
from cartstore.db.statements import Join, Statement
from cartstore.errors import CartNotFound
from cartstore.live.query import LiveQuery
from cartstore.live.reactive import Observable, combine_latest, switch_by_key
from cartstore.models.cart import Cart, CartEntry, CartItem, CartWithItems, merge_items

logger = logging.getLogger(__name__)

_PRODUCT_COLUMNS = (
    "products.product_id", "products.name", "products.price",
    "products.created_at", "products.updated_at",
)


class CartRepository:
    """Relational layout.  Item replacement is a delete + insert in one transaction."""

    def __init__(self, db: Database):
        self._db = db
        self._sql = db.statements

    # -- Create ----------------------------------------------------------------

    def create(self, cart: Optional[Cart] = None) -> Cart:
        cart = cart or Cart()
        with self._db.transaction() as tx:
            tx.execute(self._sql.insert("carts", cart.to_dict()))
        logger.info("Created cart %s", cart.cart_id)
        return cart

    # -- Write items -----------------------------------------------------------

    def replace_items(self, cart_id: str, items: list[CartItem]) -> CartWithItems:
        """Atomically swap the cart's contents for ``items``.

        Repeated products are merged.  A reader never observes a mix of old
        and new rows.
        """
        items = merge_items(items)
        with self._db.transaction() as tx:
            self._require(tx, cart_id)
            tx.execute(self._sql.delete("cart_items", where={"cart_id": cart_id}))
            if items:
                tx.execute(self._sql.insert_many(
                    "cart_items",
                    ("cart_id", "product_id", "quantity", "position"),
                    [(cart_id, i.product_id, i.quantity, pos) for pos, i in enumerate(items)],
                ))
        logger.info("Replaced items of cart %s (%d items)", cart_id, len(items))
        return self.get(cart_id)  # type: ignore[return-value]

    def add_item(self, cart_id: str, product_id: str, quantity: int = 1) -> CartWithItems:
        """Add ``quantity`` of a product, appending it if not yet in the cart."""
        if quantity <= 0:
            raise ValueError(f"Quantity must be positive, got {quantity}")
        with self._db.transaction() as tx:
            self._require(tx, cart_id)
            existing = tx.fetchone(self._sql.select(
                "cart_items", ["quantity"],
                where={"cart_id": cart_id, "product_id": product_id},
            ))
            if existing:
                tx.execute(self._sql.update(
                    "cart_items",
                    {"quantity": existing["quantity"] + quantity},
                    where={"cart_id": cart_id, "product_id": product_id},
                ))
            else:
                last = tx.fetchone(
                    "SELECT COALESCE(MAX(position), -1) AS pos FROM cart_items WHERE cart_id = ?",
                    (cart_id,),
                )
                tx.execute(self._sql.insert("cart_items", {
                    "cart_id": cart_id,
                    "product_id": product_id,
                    "quantity": quantity,
                    "position": last["pos"] + 1,  # type: ignore[index]
                }))
        return self.get(cart_id)  # type: ignore[return-value]

    def remove_item(self, cart_id: str, product_id: str) -> bool:
        with self._db.transaction() as tx:
            cursor = tx.execute(self._sql.delete(
                "cart_items", where={"cart_id": cart_id, "product_id": product_id},
            ))
        return cursor.rowcount > 0

    # -- Read ------------------------------------------------------------------

    def exists(self, cart_id: str) -> bool:
        return self._db.fetchone(self._cart_row(cart_id)) is not None

    def items(self, cart_id: str) -> list[CartEntry]:
        """Join form: the cart's items joined to their products, in cart order."""
        return [CartEntry.from_row(r) for r in self._db.fetchall(self._items_query(cart_id))]

    def get(self, cart_id: str) -> Optional[CartWithItems]:
        groups = self._grouped(self._db.fetchall(self._carts_query(cart_id)))
        group = first_group(groups)
        return CartWithItems(group.parent, group.children) if group else None

    def list_all(self) -> dict[str, list[CartEntry]]:
        """Every cart, empty ones included, in creation order."""
        groups = self._grouped(self._db.fetchall(self._carts_query()))
        return {cart_id: g.children for cart_id, g in groups.items()}

    def cart_ids(self) -> list[str]:
        rows = self._db.fetchall(self._sql.select("carts", ["cart_id"], order_by=["rowid"]))
        return [r["cart_id"] for r in rows]

    # -- Delete ----------------------------------------------------------------

    def delete(self, cart_id: str) -> bool:
        """Delete a cart; its ``cart_items`` rows cascade."""
        with self._db.transaction() as tx:
            cursor = tx.execute(self._sql.delete("carts", where={"cart_id": cart_id}))
        return cursor.rowcount > 0

    # -- Live ------------------------------------------------------------------

    def watch_cart(self, cart_id: str) -> Observable:
        """Snapshots of one cart: combine-latest of its row and its items.

        Emits ``None`` while the cart does not exist.
        """
        row = LiveQuery(
            self._db, {"carts"},
            lambda: self._db.fetchone(self._cart_row(cart_id)),
            name=f"cart-row:{cart_id[:8]}",
        )
        items = LiveQuery(
            self._db, {"cart_items", "products"},
            lambda: self.items(cart_id),
            name=f"cart-items:{cart_id[:8]}",
        )

        def combine(cart_row: Optional[dict[str, Any]], entries: list[CartEntry]):
            if cart_row is None:
                return None
            return CartWithItems(Cart.from_row(cart_row), entries)

        return combine_latest([row, items], combine)

    def watch_all(self) -> Observable:
        """Snapshots of ``{cart_id: items}`` for every cart.

        The outer query tracks the cart list; each snapshot of it replaces
        the per-cart inner subscriptions.
        """
        ids = LiveQuery(self._db, {"carts"}, self.cart_ids, name="cart-ids")

        def combine(carts: dict[str, Optional[CartWithItems]]) -> dict[str, list[CartEntry]]:
            return {cid: c.items for cid, c in carts.items() if c is not None}

        return switch_by_key(ids, lambda snapshot: snapshot, self.watch_cart, combine)

    # -- internal --------------------------------------------------------------

    def _require(self, tx: Transaction, cart_id: str) -> None:
        if tx.fetchone(self._cart_row(cart_id)) is None:
            raise CartNotFound(f"Cart {cart_id} not found")

    def _cart_row(self, cart_id: str) -> Statement:
        return self._sql.select("carts", where={"cart_id": cart_id})

    def _items_query(self, cart_id: str) -> Statement:
        return self._sql.join(
            "cart_items",
            [Join("products", "cart_items.product_id", "products.product_id", outer=True)],
            columns=[
                ("cart_items.product_id", "product_id"),
                ("cart_items.quantity", "quantity"),
                *_PRODUCT_COLUMNS,
            ],
            where={"cart_items.cart_id": cart_id},
            order_by=["cart_items.position", "cart_items.rowid"],
        )

    def _carts_query(self, cart_id: Optional[str] = None) -> Statement:
        return self._sql.join(
            "carts",
            [
                Join("cart_items", "carts.cart_id", "cart_items.cart_id", outer=True),
                Join("products", "cart_items.product_id", "products.product_id", outer=True),
            ],
            columns=[
                ("carts.cart_id", "cart_id"),
                ("carts.created_at", "created_at"),
                ("cart_items.product_id", "product_id"),
                ("cart_items.quantity", "quantity"),
                *_PRODUCT_COLUMNS,
            ],
            where={"carts.cart_id": cart_id} if cart_id is not None else None,
            order_by=["carts.rowid", "cart_items.position"],
        )

    @staticmethod
    def _grouped(rows: list[dict[str, Any]]):
        return group_rows(rows, "cart_id", "product_id", parent=Cart.from_row, child=CartEntry.from_row)
