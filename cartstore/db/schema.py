"""Table definitions for both cart layouts.

- products:    shared catalogue, referenced by both layouts
- carts:       relational layout: one row per cart
- cart_items:  relational layout: join table (cart_id, product_id, quantity)
- carts_json:  JSON layout: one row per cart, items embedded as a JSON array
"""

from __future__ import annotations

from cartstore.db.registry import Column, SchemaRegistry, Table

NOW = "(strftime('%Y-%m-%dT%H:%M:%SZ','now'))"

PRODUCTS = Table(
    name="products",
    columns=(
        Column("product_id", "TEXT", nullable=False, primary_key=True),
        Column("name", "TEXT", nullable=False),
        Column("price", "REAL", nullable=False, check="price >= 0"),
        Column("created_at", "TEXT", nullable=False, default=NOW),
        Column("updated_at", "TEXT", nullable=False, default=NOW),
    ),
)

CARTS = Table(
    name="carts",
    columns=(
        Column("cart_id", "TEXT", nullable=False, primary_key=True),
        Column("created_at", "TEXT", nullable=False, default=NOW),
    ),
)

CART_ITEMS = Table(
    name="cart_items",
    columns=(
        Column("cart_id", "TEXT", nullable=False,
               references=("carts", "cart_id"), on_delete="CASCADE"),
        Column("product_id", "TEXT", nullable=False,
               references=("products", "product_id"), on_delete="RESTRICT"),
        Column("quantity", "INTEGER", nullable=False, check="quantity > 0"),
        Column("position", "INTEGER", nullable=False, default=0),
    ),
    primary_key=("cart_id", "product_id"),
)

CARTS_JSON = Table(
    name="carts_json",
    columns=(
        Column("cart_id", "TEXT", nullable=False, primary_key=True),
        Column("items", "JSON", nullable=False, default="[]"),
        Column("created_at", "TEXT", nullable=False, default=NOW),
    ),
)

ALL_TABLES = (PRODUCTS, CARTS, CART_ITEMS, CARTS_JSON)

INDEXES = (
    ("cart_items", "CREATE INDEX IF NOT EXISTS idx_cart_items_product ON cart_items(product_id);"),
)


def build_registry() -> SchemaRegistry:
    """Return a fresh registry holding every table, parents first."""
    registry = SchemaRegistry()
    for table in ALL_TABLES:
        registry.register(table)
    return registry


def schema_ddl(registry: SchemaRegistry) -> str:
    indexes = [sql for table, sql in INDEXES if registry.has_table(table)]
    return registry.ddl() + "\n\n" + "\n".join(indexes)
