"""Shared helpers for the test modules."""

from __future__ import annotations

import tempfile
import time
from pathlib import Path
from typing import Callable

from cartstore.db.database import Database
from cartstore.db.product_repo import ProductRepository
from cartstore.models import Product


def make_db() -> Database:
    """Return a Database backed by a fresh temporary file (auto-deleted)."""
    tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False)
    tmp.close()
    db = Database(path=Path(tmp.name))
    db.init()
    return db


def seed_products(db: Database, *specs: tuple[str, str, float]) -> list[Product]:
    repo = ProductRepository(db)
    return [repo.create(Product(name=name, price=price, product_id=pid)) for pid, name, price in specs]


def eventually(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.01) -> bool:
    """Poll ``predicate`` until it holds or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
