"""Core database connection with ACID transaction support."""

from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator, Iterable, Optional, Union

from cartstore.db.registry import SchemaRegistry
from cartstore.db.schema import build_registry, schema_ddl
from cartstore.db.statements import Statement, StatementBuilder
from cartstore.errors import ConstraintViolation, TransactionAborted
from cartstore.live.notifier import ChangeNotifier

logger = logging.getLogger(__name__)

SQL = Union[Statement, str]


class Transaction:
    """One transactional scope on the shared connection.

    Any failing statement marks the scope aborted; later statements raise
    :class:`TransactionAborted` and the scope can only roll back.
    """

    def __init__(self, db: "Database", conn: sqlite3.Connection):
        self.id = uuid.uuid4().hex[:8]
        self._db = db
        self._conn = conn
        self.written: set[str] = set()
        self.aborted = False

    def execute(self, statement: SQL, params: tuple = (), writes: Iterable[str] = ()) -> sqlite3.Cursor:
        if self.aborted:
            raise TransactionAborted(f"Transaction {self.id} has already aborted")
        sql, bound, changed = _unpack(statement, params)
        try:
            cursor = self._db._run(self._conn, sql, bound)
        except Exception:
            self.aborted = True
            raise
        self.written.update(changed)
        self.written.update(writes)
        return cursor

    def fetchone(self, statement: SQL, params: tuple = ()) -> Optional[dict[str, Any]]:
        row = self.execute(statement, params).fetchone()
        return dict(row) if row else None

    def fetchall(self, statement: SQL, params: tuple = ()) -> list[dict[str, Any]]:
        return [dict(r) for r in self.execute(statement, params).fetchall()]


class Database:
    """
    SQLite database wrapper with explicit ACID transaction support.

    Implements the Unit-of-Work pattern: every mutation goes through
    ``transaction()``, which commits on success and rolls back on failure.
    One connection is shared by all threads; a re-entrant lock serialises
    transactions and keeps readers out of half-applied ones.  Tables written
    by a committed transaction are published to ``notifier``.
    """

    def __init__(
        self,
        path: Optional[Path | str] = None,
        registry: Optional[SchemaRegistry] = None,
        notifier: Optional[ChangeNotifier] = None,
        wal: Optional[bool] = None,
    ):
        from cartstore.config import get_db_config
        cfg = get_db_config()
        if path is None:
            self.path: Path = cfg.path
        elif isinstance(path, str):
            self.path = Path(path)
        else:
            self.path = path
        self.wal = cfg.wal if wal is None else wal
        self.registry = registry or build_registry()
        self.statements = StatementBuilder(self.registry)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._active: Optional[Transaction] = None
        self._notifier = notifier
        self._owns_notifier = notifier is None

    # -- connection lifecycle --------------------------------------------------

    @property
    def in_memory(self) -> bool:
        return str(self.path) == ":memory:"

    def _ensure_dir(self) -> None:
        if not self.in_memory:
            self.path.parent.mkdir(parents=True, exist_ok=True)

    def connection(self) -> sqlite3.Connection:
        with self._lock:
            if self._conn is None:
                self._ensure_dir()
                # isolation_level=None: BEGIN/COMMIT are issued explicitly.
                self._conn = sqlite3.connect(
                    str(self.path), check_same_thread=False, isolation_level=None
                )
                self._conn.row_factory = sqlite3.Row
                self._conn.execute("PRAGMA foreign_keys = ON")
                if self.wal and not self.in_memory:
                    self._conn.execute("PRAGMA journal_mode = WAL")
            return self._conn

    @property
    def notifier(self) -> ChangeNotifier:
        with self._lock:
            if self._notifier is None:
                self._notifier = ChangeNotifier()
            return self._notifier

    def close(self) -> None:
        if self._owns_notifier:
            notifier, self._notifier = self._notifier, None
            # Joined outside the lock: the dispatcher may be waiting on it.
            if notifier is not None:
                notifier.close()
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    def init(self) -> None:
        """Create all registered tables (idempotent)."""
        with self._lock:
            self.connection().executescript(schema_ddl(self.registry))
        logger.info("Schema ready at %s (%d tables)", self.path, len(self.registry.tables()))

    # -- transaction helpers ---------------------------------------------------

    @contextmanager
    def transaction(self) -> Generator[Transaction, None, None]:
        """ACID transaction: commits on success, rolls back on exception.

        A nested call on the same thread joins the outer scope.  The original
        exception always propagates unchanged.
        """
        with self._lock:
            outer = self._active
            if outer is not None:
                try:
                    yield outer
                except Exception:
                    outer.aborted = True
                    raise
                return

            conn = self.connection()
            tx = Transaction(self, conn)
            self._active = tx
            try:
                conn.execute("BEGIN")
                logger.debug("BEGIN %s", tx.id)
                try:
                    yield tx
                except Exception as exc:
                    conn.rollback()
                    logger.debug("ROLLBACK %s (%s)", tx.id, type(exc).__name__)
                    raise
                if tx.aborted:
                    conn.rollback()
                    logger.warning("ROLLBACK %s: an inner scope failed", tx.id)
                    raise TransactionAborted(
                        f"Transaction {tx.id} rolled back after an earlier failure"
                    )
                conn.commit()
                logger.debug("COMMIT %s tables=%s", tx.id, sorted(tx.written))
            finally:
                self._active = None

        if tx.written:
            self.notifier.publish(tx.written)

    # -- low-level query helpers -----------------------------------------------

    def execute(self, statement: SQL, params: tuple = (), writes: Iterable[str] = ()) -> sqlite3.Cursor:
        """Run one statement in its own (or the current) transaction."""
        with self.transaction() as tx:
            return tx.execute(statement, params, writes)

    def fetchone(self, statement: SQL, params: tuple = ()) -> Optional[dict[str, Any]]:
        sql, bound, _ = _unpack(statement, params)
        with self._lock:
            row = self._run(self.connection(), sql, bound).fetchone()
        return dict(row) if row else None

    def fetchall(self, statement: SQL, params: tuple = ()) -> list[dict[str, Any]]:
        sql, bound, _ = _unpack(statement, params)
        with self._lock:
            rows = self._run(self.connection(), sql, bound).fetchall()
        return [dict(r) for r in rows]

    @staticmethod
    def _run(conn: sqlite3.Connection, sql: str, params: tuple) -> sqlite3.Cursor:
        try:
            return conn.execute(sql, params)
        except sqlite3.IntegrityError as e:
            logger.warning("Constraint violation: %s", e)
            raise ConstraintViolation(str(e)) from e


def _unpack(statement: SQL, params: tuple) -> tuple[str, tuple, frozenset[str]]:
    if isinstance(statement, Statement):
        return statement.sql, statement.params, statement.writes
    return statement, tuple(params), frozenset()


# -- module singleton ----------------------------------------------------------

_default_db: Optional[Database] = None


def get_db(path: Optional[Path] = None) -> Database:
    """Return (and lazily initialise) the module-level Database singleton."""
    global _default_db
    if _default_db is None:
        _default_db = Database(path)
        _default_db.init()
    return _default_db


def reset_db() -> None:
    """Close and discard the singleton (useful in tests)."""
    global _default_db
    if _default_db is not None:
        _default_db.close()
        _default_db = None
