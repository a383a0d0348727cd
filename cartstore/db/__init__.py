"""Database layer: SQLite with ACID transactions and repository pattern."""

from cartstore.db.database import Database, Transaction, get_db
from cartstore.db.registry import Column, SchemaRegistry, Table
from cartstore.db.schema import build_registry
from cartstore.db.statements import ElementJoin, Join, Statement, StatementBuilder

__all__ = [
    "Database", "Transaction", "get_db",
    "Column", "SchemaRegistry", "Table", "build_registry",
    "ElementJoin", "Join", "Statement", "StatementBuilder",
]
