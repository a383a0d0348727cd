"""Exception hierarchy for the storage and query layer."""

from __future__ import annotations


class CartStoreError(Exception):
    """Base class for all cartstore errors."""


class SchemaError(CartStoreError):
    """Invalid or missing table / column / constraint reference."""


class QueryBuildError(CartStoreError):
    """A statement could not be built (unknown name, mismatched arity, ...)."""


class ConstraintViolation(CartStoreError):
    """Foreign-key, uniqueness, check or not-null failure at write time."""


class TransactionAborted(CartStoreError):
    """The enclosing transaction scope has already failed."""


class CartNotFound(CartStoreError, LookupError):
    """A write addressed a cart that does not exist."""
