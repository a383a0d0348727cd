"""FastAPI web server for cartstore."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, Optional, Union

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from cartstore.db.cart_repo import CartRepository
from cartstore.db.database import Database, get_db, reset_db
from cartstore.db.json_cart_repo import JsonCartRepository
from cartstore.db.product_repo import ProductRepository
from cartstore.errors import CartNotFound, ConstraintViolation
from cartstore.live import SubscriptionClosed, watch
from cartstore.logging_setup import configure_logging
from cartstore.models import CartEntry, CartItem, Product

logger = logging.getLogger(__name__)

# Global service instances
_db: Optional[Database] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the database on startup, close it on shutdown."""
    global _db

    configure_logging()
    _db = get_db()
    logger.info("Server started - DB: %s", _db.path)
    yield

    logger.info("Server shutting down")
    reset_db()
    _db = None


app = FastAPI(
    title="cartstore API",
    description="Carts and products stored as a join table or a JSON column",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request/Response Models
class Variant(str, Enum):
    RELATIONAL = "relational"
    JSON = "json"


class ProductCreate(BaseModel):
    name: str
    price: float = Field(ge=0)
    product_id: Optional[str] = None


class ItemIn(BaseModel):
    product_id: str
    quantity: int = Field(default=1, gt=0)


class ItemsReplace(BaseModel):
    items: list[ItemIn]


def _require_db() -> Database:
    if not _db:
        raise HTTPException(status_code=503, detail="Database not initialized")
    return _db


def _carts(variant: Variant) -> Union[CartRepository, JsonCartRepository]:
    db = _require_db()
    return CartRepository(db) if variant == Variant.RELATIONAL else JsonCartRepository(db)


def _entries(entries: list[CartEntry]) -> list[dict[str, Any]]:
    return [e.to_dict() for e in entries]


# API Routes
@app.get("/api/status")
async def get_status():
    return {"status": "ok", "database": _db is not None}


@app.post("/api/products", status_code=201)
async def create_product(product: ProductCreate):
    repo = ProductRepository(_require_db())
    new_product = Product(name=product.name, price=product.price)
    if product.product_id:
        new_product.product_id = product.product_id
    try:
        repo.create(new_product)
    except ConstraintViolation as e:
        raise HTTPException(status_code=409, detail=str(e))
    return new_product.to_dict()


@app.get("/api/products")
async def list_products():
    products = ProductRepository(_require_db()).list_all()
    return {"count": len(products), "products": [p.to_dict() for p in products]}


@app.delete("/api/products/{product_id}")
async def delete_product(product_id: str):
    repo = ProductRepository(_require_db())
    try:
        deleted = repo.delete(product_id)
    except ConstraintViolation as e:
        raise HTTPException(status_code=409, detail=f"Product is still in a cart: {e}")
    if not deleted:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"status": "deleted", "product_id": product_id}


@app.post("/api/carts", status_code=201)
async def create_cart(variant: Variant = Query(Variant.RELATIONAL)):
    cart = _carts(variant).create()
    return {"status": "created", "cart_id": cart.cart_id, "variant": variant.value}


@app.get("/api/carts")
async def list_carts(variant: Variant = Query(Variant.RELATIONAL)):
    carts = _carts(variant).list_all()
    return {
        "count": len(carts),
        "carts": {cart_id: _entries(items) for cart_id, items in carts.items()},
    }


@app.get("/api/carts/{cart_id}")
async def get_cart(cart_id: str, variant: Variant = Query(Variant.RELATIONAL)):
    cart = _carts(variant).get(cart_id)
    if cart is None:
        raise HTTPException(status_code=404, detail="Cart not found")
    return cart.to_dict()


@app.put("/api/carts/{cart_id}/items")
async def replace_cart_items(
    cart_id: str,
    body: ItemsReplace,
    variant: Variant = Query(Variant.RELATIONAL),
):
    items = [CartItem(i.product_id, i.quantity) for i in body.items]
    try:
        cart = _carts(variant).replace_items(cart_id, items)
    except CartNotFound:
        raise HTTPException(status_code=404, detail="Cart not found")
    except ConstraintViolation as e:
        raise HTTPException(status_code=409, detail=str(e))
    return cart.to_dict()


@app.delete("/api/carts/{cart_id}")
async def delete_cart(cart_id: str, variant: Variant = Query(Variant.RELATIONAL)):
    if not _carts(variant).delete(cart_id):
        raise HTTPException(status_code=404, detail="Cart not found")
    return {"status": "deleted", "cart_id": cart_id}


@app.websocket("/api/carts/watch")
async def watch_carts(websocket: WebSocket, variant: Variant = Query(Variant.RELATIONAL)):
    """Stream ``{cart_id: items}`` snapshots until the client disconnects."""
    await websocket.accept()
    subscription = watch(_carts(variant).watch_all())
    try:
        while True:
            try:
                snapshot = await asyncio.to_thread(subscription.next, 1.0)
            except TimeoutError:
                continue
            await websocket.send_json(
                {cart_id: _entries(items) for cart_id, items in snapshot.items()}
            )
    except (WebSocketDisconnect, SubscriptionClosed):
        logger.debug("Watcher disconnected")
    except Exception as e:
        logger.error("Live query failed: %s", e)
        await websocket.close(code=1011)
    finally:
        subscription.cancel()
