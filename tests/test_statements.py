"""Unit tests for the statement builder (join and JSON expansion forms)."""

from __future__ import annotations

import json
import sqlite3
import unittest

from cartstore.db.registry import Column, SchemaRegistry, Table
from cartstore.db.schema import build_registry, schema_ddl
from cartstore.db.statements import ElementJoin, Join, StatementBuilder
from cartstore.errors import QueryBuildError


class TestWriteStatements(unittest.TestCase):
    def setUp(self):
        self.sql = StatementBuilder(build_registry())

    def test_insert(self):
        st = self.sql.insert("products", {"product_id": "p1", "name": "Pen", "price": 1.5})
        self.assertEqual(
            st.sql,
            'INSERT INTO "products" ("product_id", "name", "price") VALUES (?, ?, ?)',
        )
        self.assertEqual(st.params, ("p1", "Pen", 1.5))
        self.assertEqual(st.writes, frozenset({"products"}))

    def test_upsert(self):
        st = self.sql.insert("products", {"product_id": "p1", "name": "Pen"}, upsert=True)
        self.assertIn('ON CONFLICT("product_id") DO UPDATE SET "name" = excluded."name"', st.sql)

    def test_upsert_key_only_does_nothing(self):
        st = self.sql.insert("carts", {"cart_id": "c1"}, upsert=True)
        self.assertTrue(st.sql.endswith('ON CONFLICT("cart_id") DO NOTHING'))

    def test_insert_unknown_column(self):
        with self.assertRaises(QueryBuildError):
            self.sql.insert("products", {"colour": "red"})

    def test_insert_unknown_table(self):
        with self.assertRaises(QueryBuildError):
            self.sql.insert("orders", {"id": 1})

    def test_insert_many(self):
        st = self.sql.insert_many(
            "cart_items", ["cart_id", "product_id", "quantity"],
            [("c1", "p1", 1), ("c1", "p2", 3)],
        )
        self.assertTrue(st.sql.endswith("VALUES (?, ?, ?), (?, ?, ?)"))
        self.assertEqual(st.params, ("c1", "p1", 1, "c1", "p2", 3))

    def test_insert_many_arity_mismatch(self):
        with self.assertRaises(QueryBuildError):
            self.sql.insert_many("cart_items", ["cart_id", "product_id"], [("c1",)])

    def test_insert_many_needs_rows(self):
        with self.assertRaises(QueryBuildError):
            self.sql.insert_many("cart_items", ["cart_id"], [])

    def test_update_where(self):
        st = self.sql.update("products", {"price": 2}, where={"product_id": "p1"})
        self.assertEqual(st.sql, 'UPDATE "products" SET "price" = ? WHERE "product_id" = ?')
        self.assertEqual(st.params, (2, "p1"))

    def test_delete_reports_cascade_children(self):
        st = self.sql.delete("carts", where={"cart_id": "c1"})
        self.assertEqual(st.writes, frozenset({"carts", "cart_items"}))

    def test_delete_reports_indirect_effects(self):
        registry = SchemaRegistry()
        registry.register(Table("a", (Column("id", primary_key=True),)))
        registry.register(Table("b", (
            Column("id", primary_key=True),
            Column("a_id", references=("a", "id"), on_delete="CASCADE"),
        )))
        registry.register(Table("c", (
            Column("b_id", references=("b", "id"), on_delete="CASCADE"),
        )))
        registry.register(Table("d", (
            Column("id", primary_key=True),
            Column("a_id", references=("a", "id"), on_delete="SET NULL"),
        )))
        registry.register(Table("e", (
            Column("d_id", references=("d", "id"), on_delete="CASCADE"),
        )))
        st = StatementBuilder(registry).delete("a")
        self.assertEqual(st.writes, frozenset({"a", "b", "c", "d"}))

    def test_delete_restrict_child_not_reported(self):
        st = self.sql.delete("products", where={"product_id": "p1"})
        self.assertEqual(st.writes, frozenset({"products"}))


class TestReadStatements(unittest.TestCase):
    def setUp(self):
        self.sql = StatementBuilder(build_registry())

    def test_select_where_variants(self):
        st = self.sql.select(
            "cart_items", ["product_id"],
            where={"cart_id": ["c1", "c2"], "position": None},
            order_by=["position DESC"], limit=5,
        )
        self.assertEqual(
            st.sql,
            'SELECT "product_id" FROM "cart_items" WHERE "cart_id" IN (?, ?) '
            'AND "position" IS NULL ORDER BY "cart_items"."position" DESC LIMIT ?',
        )
        self.assertEqual(st.params, ("c1", "c2", 5))
        self.assertEqual(st.writes, frozenset())

    def test_select_empty_in_matches_nothing(self):
        st = self.sql.select("carts", where={"cart_id": []})
        self.assertIn("WHERE 0", st.sql)

    def test_bad_sort_direction(self):
        with self.assertRaises(QueryBuildError):
            self.sql.select("carts", order_by=["cart_id sideways"])

    def test_join(self):
        st = self.sql.join(
            "cart_items",
            [Join("products", "cart_items.product_id", "products.product_id")],
            columns=["products.name", ("cart_items.quantity", "qty")],
            where={"cart_items.cart_id": "c1"},
            order_by=["cart_items.rowid"],
        )
        self.assertEqual(
            st.sql,
            'SELECT "products"."name" AS "products__name", "cart_items"."quantity" AS "qty" '
            'FROM "cart_items" JOIN "products" ON "cart_items"."product_id" = "products"."product_id" '
            'WHERE "cart_items"."cart_id" = ? ORDER BY "cart_items".rowid ASC',
        )
        self.assertEqual(st.tables, frozenset({"cart_items", "products"}))

    def test_join_rejects_table_outside_query(self):
        with self.assertRaises(QueryBuildError):
            self.sql.join("carts", [], columns=["products.name"])

    def test_join_rejects_bare_column(self):
        with self.assertRaises(QueryBuildError):
            self.sql.join("carts", [], columns=["cart_id"])

    def test_expand_requires_json_column(self):
        with self.assertRaises(QueryBuildError):
            self.sql.expand("carts", "cart_id", fields=["product_id"])

    def test_expand_rejects_bad_field_name(self):
        with self.assertRaises(QueryBuildError):
            self.sql.expand("carts_json", "items", fields=["x') OR 1=1 --"])

    def test_expand_join_field_must_be_expanded(self):
        with self.assertRaises(QueryBuildError):
            self.sql.expand(
                "carts_json", "items", fields=["quantity"],
                join=ElementJoin("products", "product_id", "product_id"),
            )


class TestExpansionAgainstSQLite(unittest.TestCase):
    """Run the expansion form on a real connection."""

    def setUp(self):
        registry = build_registry()
        self.sql = StatementBuilder(registry)
        self.conn = sqlite3.connect(":memory:")
        self.conn.row_factory = sqlite3.Row
        self.conn.executescript(schema_ddl(registry))
        self.conn.execute("INSERT INTO products (product_id, name, price) VALUES ('p1', 'Pen', 1.0)")
        self.conn.execute("INSERT INTO products (product_id, name, price) VALUES ('p2', 'Ink', 4.0)")
        items = [{"product_id": "p2", "quantity": 1}, {"product_id": "p1", "quantity": 3}]
        self.conn.execute(
            "INSERT INTO carts_json (cart_id, items) VALUES (?, ?)", ("c1", json.dumps(items))
        )
        self.conn.execute("INSERT INTO carts_json (cart_id) VALUES ('c2')")

    def tearDown(self):
        self.conn.close()

    def _run(self, st):
        return [dict(r) for r in self.conn.execute(st.sql, st.params)]

    def test_rows_in_array_order_with_empty_parent(self):
        rows = self._run(self.sql.expand(
            "carts_json", "items", fields=["product_id", "quantity"],
            join=ElementJoin("products", "product_id", "product_id"),
        ))
        self.assertEqual(
            [(r["cart_id"], r["product_id"], r["quantity"]) for r in rows],
            [("c1", "p2", 1), ("c1", "p1", 3), ("c2", None, None)],
        )
        self.assertEqual(rows[0]["products__name"], "Ink")
        self.assertEqual([r["position"] for r in rows], [0, 1, None])

    def test_where_on_parent(self):
        rows = self._run(self.sql.expand(
            "carts_json", "items", fields=["product_id"], where={"cart_id": "c2"},
        ))
        self.assertEqual(len(rows), 1)
        self.assertIsNone(rows[0]["product_id"])

    def test_invalid_json_rejected_by_check(self):
        with self.assertRaises(sqlite3.IntegrityError):
            self.conn.execute("INSERT INTO carts_json (cart_id, items) VALUES ('c3', 'not json')")


if __name__ == "__main__":
    unittest.main()
