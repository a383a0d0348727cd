#!/usr/bin/env python3
"""Initialize the cartstore database, optionally seed products from YAML."""

from __future__ import annotations

import argparse
from pathlib import Path

from cartstore.db.cart_repo import CartRepository
from cartstore.db.database import Database
from cartstore.db.json_cart_repo import JsonCartRepository
from cartstore.db.product_repo import ProductRepository
from cartstore.errors import CartStoreError
from cartstore.logging_setup import configure_logging
from cartstore.models import Product


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Initialize the cartstore database")
    parser.add_argument("--db-path", type=str, help="Override database path")
    parser.add_argument("--seed-products", type=str, help="YAML file with product definitions")
    parser.add_argument("--show", action="store_true", help="Print products and carts")
    parser.add_argument("--log-level", type=str, help="Logging level (default from env)")
    args = parser.parse_args(argv)

    configure_logging(args.log_level)

    db = Database(path=Path(args.db_path) if args.db_path else None)
    try:
        db.init()
        print(f"Database initialized at: {db.path}")

        if args.seed_products:
            _seed_products(db, Path(args.seed_products))

        if args.show:
            _show(db)
    finally:
        db.close()
    print("Done.")
    return 0


def _seed_products(db: Database, path: Path) -> int:
    import yaml
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    repo = ProductRepository(db)
    created = 0
    for p in data.get("products", []):
        try:
            product = Product(name=p["name"], price=float(p["price"]))
            if p.get("product_id"):
                product.product_id = str(p["product_id"])
            repo.create(product)
            created += 1
            print(f"  Created product: {product.name} ({product.product_id})")
        except (KeyError, ValueError, CartStoreError) as e:
            print(f"  Skipping {p.get('name', '?')}: {e}")
    return created


def _show(db: Database) -> None:
    products = ProductRepository(db).list_all()
    print(f"Products ({len(products)}):")
    for p in products:
        print(f"  {p.product_id}  {p.name:<24} {p.price:>10.2f}")

    for label, repo in (("relational", CartRepository(db)), ("json", JsonCartRepository(db))):
        carts = repo.list_all()
        print(f"Carts [{label}] ({len(carts)}):")
        for cart_id, entries in carts.items():
            print(f"  {cart_id}")
            for e in entries:
                name = e.product.name if e.product else "<missing product>"
                print(f"    {e.quantity} x {name} ({e.product_id})")


if __name__ == "__main__":
    raise SystemExit(main())
