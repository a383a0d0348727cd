"""Unit tests for the DB layer: transactions and both cart repositories.

Every test uses a fresh temporary SQLite file so tests are isolated and
leave nothing behind in the repo.
"""

from __future__ import annotations

import json
import threading
import unittest

from cartstore.db.cart_repo import CartRepository
from cartstore.db.json_cart_repo import JsonCartRepository
from cartstore.db.product_repo import ProductRepository
from cartstore.errors import CartNotFound, ConstraintViolation, TransactionAborted
from cartstore.models import Cart, CartItem, Product

from tests.helpers import make_db, seed_products


def _quantities(entries):
    return [(e.product_id, e.quantity) for e in entries]


# ===========================================================================
# 1. Database core
# ===========================================================================

class TestDatabaseCore(unittest.TestCase):
    def setUp(self):
        self.db = make_db()

    def tearDown(self):
        self.db.close()

    def test_tables_created(self):
        tables = self.db.fetchall(
            "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
        )
        names = {t["name"] for t in tables}
        expected = {"products", "carts", "cart_items", "carts_json"}
        self.assertTrue(expected.issubset(names), f"Missing tables: {expected - names}")

    def test_init_is_idempotent(self):
        self.db.init()

    def test_foreign_keys_enabled(self):
        row = self.db.fetchone("PRAGMA foreign_keys")
        self.assertEqual(row["foreign_keys"], 1)

    def test_transaction_commit(self):
        with self.db.transaction() as tx:
            tx.execute(self.db.statements.insert("carts", {"cart_id": "c1"}))
        self.assertIsNotNone(self.db.fetchone("SELECT * FROM carts WHERE cart_id = 'c1'"))

    def test_transaction_rollback(self):
        try:
            with self.db.transaction() as tx:
                tx.execute(self.db.statements.insert("carts", {"cart_id": "c1"}))
                raise ValueError("Force rollback")
        except ValueError:
            pass
        self.assertIsNone(self.db.fetchone("SELECT * FROM carts WHERE cart_id = 'c1'"))

    def test_written_tables_recorded(self):
        with self.db.transaction() as tx:
            tx.execute(self.db.statements.insert("carts", {"cart_id": "c1"}))
            tx.execute("UPDATE carts SET created_at = created_at", writes=["carts"])
        self.assertEqual(tx.written, {"carts"})

    def test_constraint_violation_translated(self):
        with self.assertRaises(ConstraintViolation):
            with self.db.transaction() as tx:
                tx.execute(self.db.statements.insert(
                    "cart_items", {"cart_id": "nope", "product_id": "nope", "quantity": 1},
                ))

    def test_statement_after_failure_aborts(self):
        with self.assertRaises(TransactionAborted):
            with self.db.transaction() as tx:
                try:
                    tx.execute(self.db.statements.insert("products", {"product_id": "p1"}))
                except ConstraintViolation:
                    pass
                tx.execute(self.db.statements.insert("carts", {"cart_id": "c1"}))
        self.assertIsNone(self.db.fetchone("SELECT * FROM carts"))

    def test_swallowed_inner_failure_aborts_outer(self):
        with self.assertRaises(TransactionAborted):
            with self.db.transaction() as outer:
                outer.execute(self.db.statements.insert("carts", {"cart_id": "c1"}))
                try:
                    with self.db.transaction() as inner:
                        self.assertIs(inner, outer)
                        raise RuntimeError("inner failure")
                except RuntimeError:
                    pass
        self.assertIsNone(self.db.fetchone("SELECT * FROM carts WHERE cart_id = 'c1'"))

    def test_nested_scope_commits_with_outer(self):
        with self.db.transaction() as outer:
            outer.execute(self.db.statements.insert("carts", {"cart_id": "c1"}))
            self.db.execute(self.db.statements.insert("carts", {"cart_id": "c2"}))
        rows = self.db.fetchall("SELECT cart_id FROM carts ORDER BY cart_id")
        self.assertEqual([r["cart_id"] for r in rows], ["c1", "c2"])


# ===========================================================================
# 2. Products
# ===========================================================================

class TestProductRepository(unittest.TestCase):
    def setUp(self):
        self.db = make_db()
        self.repo = ProductRepository(self.db)

    def tearDown(self):
        self.db.close()

    def test_create_and_get(self):
        p = self.repo.create(Product(name="Pen", price=1.5))
        fetched = self.repo.get_by_id(p.product_id)
        self.assertEqual(fetched.name, "Pen")
        self.assertEqual(fetched.price, 1.5)

    def test_duplicate_id(self):
        self.repo.create(Product(name="Pen", price=1.5, product_id="p1"))
        with self.assertRaises(ConstraintViolation):
            self.repo.create(Product(name="Other", price=2.0, product_id="p1"))

    def test_negative_price_rejected(self):
        with self.assertRaises(ConstraintViolation):
            self.repo.create(Product(name="Pen", price=-1))

    def test_list_all_sorted_by_name(self):
        seed_products(self.db, ("b", "Zeta", 1.0), ("a", "Alpha", 2.0))
        self.assertEqual([p.name for p in self.repo.list_all()], ["Alpha", "Zeta"])

    def test_update(self):
        seed_products(self.db, ("p1", "Pen", 1.0))
        updated = self.repo.update("p1", price=2.5, colour="ignored")
        self.assertEqual(updated.price, 2.5)

    def test_delete(self):
        seed_products(self.db, ("p1", "Pen", 1.0))
        self.assertTrue(self.repo.delete("p1"))
        self.assertFalse(self.repo.delete("p1"))


# ===========================================================================
# 3. Relational carts (join table)
# ===========================================================================

class TestCartRepository(unittest.TestCase):
    def setUp(self):
        self.db = make_db()
        self.repo = CartRepository(self.db)
        seed_products(self.db, ("p1", "Pen", 1.5), ("p2", "Ink", 4.0), ("p3", "Pad", 2.0))

    def tearDown(self):
        self.db.close()

    def test_new_cart_is_empty(self):
        cart = self.repo.create()
        self.assertTrue(self.repo.exists(cart.cart_id))
        self.assertEqual(self.repo.get(cart.cart_id).items, [])

    def test_replace_items_round_trip(self):
        cart = self.repo.create()
        result = self.repo.replace_items(cart.cart_id, [CartItem("p2", 1), CartItem("p1", 3)])
        self.assertEqual(_quantities(result.items), [("p2", 1), ("p1", 3)])
        self.assertEqual(result.items[0].product.name, "Ink")
        self.assertEqual(result.total, 8.5)
        self.assertEqual(_quantities(self.repo.items(cart.cart_id)), [("p2", 1), ("p1", 3)])

    def test_replace_items_overwrites(self):
        cart = self.repo.create()
        self.repo.replace_items(cart.cart_id, [CartItem("p1", 1), CartItem("p2", 1)])
        result = self.repo.replace_items(cart.cart_id, [CartItem("p3", 2)])
        self.assertEqual(_quantities(result.items), [("p3", 2)])

    def test_replace_with_empty_list(self):
        cart = self.repo.create()
        self.repo.replace_items(cart.cart_id, [CartItem("p1", 1)])
        self.assertEqual(self.repo.replace_items(cart.cart_id, []).items, [])

    def test_duplicate_products_merged(self):
        cart = self.repo.create()
        result = self.repo.replace_items(cart.cart_id, [CartItem("p1", 1), CartItem("p1", 2)])
        self.assertEqual(_quantities(result.items), [("p1", 3)])

    def test_replace_on_missing_cart(self):
        with self.assertRaises(CartNotFound):
            self.repo.replace_items("missing", [CartItem("p1", 1)])

    def test_unknown_product_leaves_cart_unchanged(self):
        cart = self.repo.create()
        self.repo.replace_items(cart.cart_id, [CartItem("p1", 1)])
        with self.assertRaises(ConstraintViolation):
            self.repo.replace_items(cart.cart_id, [CartItem("p2", 1), CartItem("nope", 1)])
        self.assertEqual(_quantities(self.repo.get(cart.cart_id).items), [("p1", 1)])

    def test_add_and_remove_item(self):
        cart = self.repo.create()
        self.repo.add_item(cart.cart_id, "p2")
        self.repo.add_item(cart.cart_id, "p1", 2)
        result = self.repo.add_item(cart.cart_id, "p2", 4)
        self.assertEqual(_quantities(result.items), [("p2", 5), ("p1", 2)])
        self.assertTrue(self.repo.remove_item(cart.cart_id, "p2"))
        self.assertFalse(self.repo.remove_item(cart.cart_id, "p2"))
        self.assertEqual(_quantities(self.repo.get(cart.cart_id).items), [("p1", 2)])

    def test_remove_item_on_missing_cart(self):
        self.assertFalse(self.repo.remove_item("missing", "p1"))

    def test_add_item_rejects_bad_quantity(self):
        cart = self.repo.create()
        with self.assertRaises(ValueError):
            self.repo.add_item(cart.cart_id, "p1", 0)

    def test_referenced_product_cannot_be_deleted(self):
        cart = self.repo.create()
        self.repo.replace_items(cart.cart_id, [CartItem("p1", 1)])
        with self.assertRaises(ConstraintViolation):
            ProductRepository(self.db).delete("p1")
        self.assertIsNotNone(ProductRepository(self.db).get_by_id("p1"))
        self.assertEqual(_quantities(self.repo.get(cart.cart_id).items), [("p1", 1)])

    def test_list_all_includes_empty_carts(self):
        c1 = self.repo.create(Cart(cart_id="c1"))
        c2 = self.repo.create(Cart(cart_id="c2"))
        self.repo.replace_items(c1.cart_id, [CartItem("p1", 1), CartItem("p2", 2)])
        carts = self.repo.list_all()
        self.assertEqual(list(carts), ["c1", "c2"])
        self.assertEqual(_quantities(carts["c1"]), [("p1", 1), ("p2", 2)])
        self.assertEqual(carts[c2.cart_id], [])
        self.assertEqual(self.repo.cart_ids(), ["c1", "c2"])

    def test_delete_cascades_items(self):
        cart = self.repo.create()
        self.repo.replace_items(cart.cart_id, [CartItem("p1", 1)])
        self.assertTrue(self.repo.delete(cart.cart_id))
        self.assertIsNone(self.repo.get(cart.cart_id))
        rows = self.db.fetchall("SELECT * FROM cart_items")
        self.assertEqual(rows, [])
        self.assertTrue(ProductRepository(self.db).delete("p1"))

    def test_get_missing(self):
        self.assertIsNone(self.repo.get("missing"))
        self.assertFalse(self.repo.delete("missing"))

    def test_replace_is_atomic_for_concurrent_readers(self):
        cart = self.repo.create()
        old = [CartItem("p1", 1), CartItem("p2", 1)]
        new = [CartItem("p3", 7)]
        self.repo.replace_items(cart.cart_id, old)
        allowed = {(("p1", 1), ("p2", 1)), (("p3", 7),)}
        seen: set[tuple] = set()
        stop = threading.Event()

        def reader():
            while not stop.is_set():
                seen.add(tuple(_quantities(self.repo.items(cart.cart_id))))

        thread = threading.Thread(target=reader)
        thread.start()
        try:
            for _ in range(50):
                self.repo.replace_items(cart.cart_id, new)
                self.repo.replace_items(cart.cart_id, old)
        finally:
            stop.set()
            thread.join()
        self.assertTrue(seen)
        self.assertTrue(seen <= allowed, f"Partial state observed: {seen - allowed}")


# ===========================================================================
# 4. JSON carts (items array column)
# ===========================================================================

class TestJsonCartRepository(unittest.TestCase):
    def setUp(self):
        self.db = make_db()
        self.repo = JsonCartRepository(self.db)
        seed_products(self.db, ("p1", "Pen", 1.5), ("p2", "Ink", 4.0))

    def tearDown(self):
        self.db.close()

    def test_order_preserved(self):
        self.repo.create(Cart(cart_id="c1"))
        self.repo.replace_items("c1", [CartItem("p2", 1), CartItem("p1", 3)])
        carts = self.repo.list_all()
        self.assertEqual(_quantities(carts["c1"]), [("p2", 1), ("p1", 3)])
        self.assertEqual([e.product.name for e in carts["c1"]], ["Ink", "Pen"])

    def test_fetch_returns_items_in_insert_order(self):
        self.repo.create(Cart(cart_id="c1"))
        self.repo.replace_items("c1", [CartItem("p1", 2), CartItem("p2", 1)])
        cart = self.repo.get("c1")
        self.assertEqual(cart.cart_id, "c1")
        self.assertEqual(_quantities(cart.items), [("p1", 2), ("p2", 1)])

    def test_create_with_items(self):
        cart = self.repo.create(items=[CartItem("p1", 2)])
        self.assertEqual(_quantities(self.repo.get(cart.cart_id).items), [("p1", 2)])

    def test_empty_cart_listed(self):
        self.repo.create(Cart(cart_id="c1"))
        self.repo.create(Cart(cart_id="c2"), [CartItem("p1", 1)])
        carts = self.repo.list_all()
        self.assertEqual(list(carts), ["c1", "c2"])
        self.assertEqual(carts["c1"], [])

    def test_replace_on_missing_cart(self):
        with self.assertRaises(CartNotFound):
            self.repo.replace_items("missing", [])

    def test_add_and_remove_item(self):
        cart = self.repo.create()
        self.repo.add_item(cart.cart_id, "p1")
        result = self.repo.add_item(cart.cart_id, "p1", 2)
        self.assertEqual(_quantities(result.items), [("p1", 3)])
        self.assertTrue(self.repo.remove_item(cart.cart_id, "p1"))
        self.assertFalse(self.repo.remove_item(cart.cart_id, "p1"))
        with self.assertRaises(CartNotFound):
            self.repo.add_item("missing", "p1")

    def test_remove_item_on_missing_cart(self):
        self.assertFalse(self.repo.remove_item("missing", "p1"))

    def test_malformed_items_are_not_rewritten(self):
        self.repo.create(Cart(cart_id="c1"))
        stored = json.dumps([{"product_id": "p1", "quantity": 2}, {"product_id": "p2", "qty": 1}])
        self.db.execute(
            "UPDATE carts_json SET items = ? WHERE cart_id = ?", (stored, "c1"), writes=["carts_json"]
        )
        with self.assertRaises(ConstraintViolation):
            self.repo.add_item("c1", "p2")
        with self.assertRaises(ConstraintViolation):
            self.repo.remove_item("c1", "p1")
        row = self.db.fetchone("SELECT items FROM carts_json WHERE cart_id = ?", ("c1",))
        self.assertEqual(row["items"], stored)

    def test_deleted_product_leaves_dangling_entry(self):
        self.repo.create(Cart(cart_id="c1"), [CartItem("p1", 1), CartItem("p2", 1)])
        self.assertTrue(ProductRepository(self.db).delete("p1"))
        entries = self.repo.get("c1").items
        self.assertEqual(_quantities(entries), [("p1", 1), ("p2", 1)])
        self.assertIsNone(entries[0].product)
        self.assertEqual(self.repo.dangling_references(), {"c1": ["p1"]})

    def test_delete(self):
        self.repo.create(Cart(cart_id="c1"))
        self.assertTrue(self.repo.delete("c1"))
        self.assertFalse(self.repo.exists("c1"))


if __name__ == "__main__":
    unittest.main()
