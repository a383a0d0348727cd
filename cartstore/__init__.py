"""cartstore: carts and products on SQLite, as a join table or a JSON column."""

__version__ = "0.1.0"
