"""Domain models for carts and products."""

from cartstore.models.cart import Cart, CartEntry, CartItem, CartWithItems
from cartstore.models.product import Product

__all__ = ["Cart", "CartEntry", "CartItem", "CartWithItems", "Product"]
