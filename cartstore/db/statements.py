"""Statement builder: parameterised SQL checked against the schema registry.

Every identifier is validated against the registry and quoted; every value is
bound as a parameter.  Nothing here touches the connection.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional, Sequence, Union

from cartstore.db.registry import SchemaRegistry, Table, quote
from cartstore.errors import QueryBuildError

_IDENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

ColumnSpec = Union[str, tuple[str, str]]


@dataclass(frozen=True)
class Statement:
    """SQL text plus bound parameters.

    ``tables`` lists every table the statement reads or writes; ``writes`` the
    subset it modifies.  Both feed change notification.
    """

    sql: str
    params: tuple[Any, ...] = ()
    tables: frozenset[str] = field(default_factory=frozenset)
    writes: frozenset[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class Join:
    """One ``JOIN`` step: ``table`` joined on ``left = right`` (both ``t.c``)."""

    table: str
    left: str
    right: str
    outer: bool = False


@dataclass(frozen=True)
class ElementJoin:
    """Join a table on a field of each expanded array element."""

    table: str
    element_field: str
    column: str


class StatementBuilder:
    """Builds :class:`Statement` objects for tables known to ``registry``."""

    def __init__(self, registry: SchemaRegistry):
        self._registry = registry

    # -- writes ----------------------------------------------------------------

    def insert(self, table: str, values: Mapping[str, Any], upsert: bool = False) -> Statement:
        """``INSERT`` one row.  ``upsert`` updates in place on key conflict."""
        t = self._table(table)
        if not values:
            raise QueryBuildError(f"INSERT into {table!r} needs at least one value")
        cols = list(values)
        self._check_columns(t, cols)
        sql = (
            f"INSERT INTO {quote(t.name)} ({', '.join(quote(c) for c in cols)}) "
            f"VALUES ({', '.join('?' for _ in cols)})"
        )
        if upsert:
            sql += self._upsert_clause(t, cols)
        return Statement(sql, tuple(values.values()), frozenset({t.name}), frozenset({t.name}))

    def insert_many(
        self,
        table: str,
        columns: Sequence[str],
        rows: Iterable[Sequence[Any]],
    ) -> Statement:
        """Multi-row ``INSERT``.  Every row must match ``columns`` in arity."""
        t = self._table(table)
        cols = list(columns)
        if not cols:
            raise QueryBuildError(f"INSERT into {table!r} needs at least one column")
        self._check_columns(t, cols)
        params: list[Any] = []
        groups: list[str] = []
        placeholder = f"({', '.join('?' for _ in cols)})"
        for i, row in enumerate(rows):
            if len(row) != len(cols):
                raise QueryBuildError(
                    f"Row {i} has {len(row)} values but {len(cols)} columns were given"
                )
            params.extend(row)
            groups.append(placeholder)
        if not groups:
            raise QueryBuildError(f"INSERT into {table!r} needs at least one row")
        sql = (
            f"INSERT INTO {quote(t.name)} ({', '.join(quote(c) for c in cols)}) "
            f"VALUES {', '.join(groups)}"
        )
        return Statement(sql, tuple(params), frozenset({t.name}), frozenset({t.name}))

    def update(
        self,
        table: str,
        values: Mapping[str, Any],
        where: Optional[Mapping[str, Any]] = None,
    ) -> Statement:
        t = self._table(table)
        if not values:
            raise QueryBuildError(f"UPDATE of {table!r} needs at least one value")
        self._check_columns(t, values)
        set_sql = ", ".join(f"{quote(c)} = ?" for c in values)
        where_sql, where_params = self._where(
            [(quote(c), v) for c, v in self._checked_where(t, where)]
        )
        return Statement(
            f"UPDATE {quote(t.name)} SET {set_sql}{where_sql}",
            tuple(values.values()) + where_params,
            frozenset({t.name}),
            frozenset({t.name}),
        )

    def delete(self, table: str, where: Optional[Mapping[str, Any]] = None) -> Statement:
        t = self._table(table)
        where_sql, params = self._where(
            [(quote(c), v) for c, v in self._checked_where(t, where)]
        )
        touched = self._delete_effects(t.name)
        return Statement(
            f"DELETE FROM {quote(t.name)}{where_sql}",
            params,
            frozenset(touched),
            frozenset(touched),
        )

    # -- reads -----------------------------------------------------------------

    def select(
        self,
        table: str,
        columns: Optional[Sequence[str]] = None,
        where: Optional[Mapping[str, Any]] = None,
        order_by: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
    ) -> Statement:
        t = self._table(table)
        cols = list(columns) if columns else list(t.column_names)
        self._check_columns(t, cols)
        where_sql, params = self._where(
            [(quote(c), v) for c, v in self._checked_where(t, where)]
        )
        order_sql = self._order_by([(t.name, *self._split_direction(o)) for o in order_by or ()])
        sql = f"SELECT {', '.join(quote(c) for c in cols)} FROM {quote(t.name)}{where_sql}{order_sql}"
        if limit is not None:
            sql += " LIMIT ?"
            params = params + (int(limit),)
        return Statement(sql, params, frozenset({t.name}))

    def join(
        self,
        base: str,
        joins: Sequence[Join],
        columns: Sequence[ColumnSpec],
        where: Optional[Mapping[str, Any]] = None,
        order_by: Optional[Sequence[str]] = None,
    ) -> Statement:
        """Join form: ``base`` joined step by step to each table in ``joins``.

        Column, where and order references are ``"table.column"``.  Selected
        columns are aliased ``table__column`` unless given as ``(ref, alias)``.
        Row order is unspecified unless ``order_by`` is supplied.
        """
        tables = [self._table(base).name]
        join_sql = []
        for j in joins:
            self._table(j.table)
            tables.append(j.table)
            left = self._ref(j.left, tables)
            right = self._ref(j.right, tables)
            kind = "LEFT JOIN" if j.outer else "JOIN"
            join_sql.append(f" {kind} {quote(j.table)} ON {left} = {right}")

        if not columns:
            raise QueryBuildError("Join needs at least one selected column")
        select_parts = []
        for spec in columns:
            ref, alias = spec if isinstance(spec, tuple) else (spec, spec.replace(".", "__"))
            select_parts.append(f"{self._ref(ref, tables)} AS {quote(alias)}")

        where_sql, params = self._where(
            [(self._ref(ref, tables), v) for ref, v in (where or {}).items()]
        )
        order_sql = self._order_by(
            [(*self._split_ref(ref, tables), direction)
             for ref, direction in (self._split_direction(o) for o in order_by or ())]
        )
        sql = (
            f"SELECT {', '.join(select_parts)} FROM {quote(base)}"
            f"{''.join(join_sql)}{where_sql}{order_sql}"
        )
        return Statement(sql, params, frozenset(tables))

    def expand(
        self,
        table: str,
        array_column: str,
        fields: Sequence[str],
        parent_columns: Optional[Sequence[str]] = None,
        where: Optional[Mapping[str, Any]] = None,
        join: Optional[ElementJoin] = None,
    ) -> Statement:
        """Expansion form: one virtual row per element of a JSON array column.

        Rows carry the parent columns, ``position`` (array index) and each of
        ``fields`` pulled from the element.  Parents with an empty array still
        produce one row whose element fields are NULL.  Rows come back in
        parent insertion order, then array order.
        """
        t = self._table(table)
        col = self._column(t, array_column)
        if col.type != "JSON":
            raise QueryBuildError(f"{table}.{array_column} is not a JSON column")
        parents = list(parent_columns) if parent_columns else [
            c for c in t.column_names if c != array_column
        ]
        self._check_columns(t, parents)
        for name in fields:
            if not _IDENT.match(name):
                raise QueryBuildError(f"Invalid element field name {name!r}")

        select_parts = [f'"p".{quote(c)} AS {quote(c)}' for c in parents]
        select_parts.append('"je"."key" AS "position"')
        select_parts.extend(
            f"json_extract(\"je\".\"value\", '$.{name}') AS {quote(name)}" for name in fields
        )
        sql_from = f'{quote(t.name)} AS "p" LEFT JOIN json_each("p".{quote(array_column)}) AS "je"'
        tables = {t.name}

        if join is not None:
            jt = self._table(join.table)
            self._column(jt, join.column)
            if join.element_field not in fields:
                raise QueryBuildError(
                    f"Element field {join.element_field!r} must be one of the expanded fields"
                )
            tables.add(jt.name)
            select_parts.extend(
                f'"j".{quote(c)} AS {quote(jt.name + "__" + c)}' for c in jt.column_names
            )
            sql_from += (
                f' LEFT JOIN {quote(jt.name)} AS "j" ON "j".{quote(join.column)} = '
                f"json_extract(\"je\".\"value\", '$.{join.element_field}')"
            )

        where_sql, params = self._where(
            [(f'"p".{quote(c)}', v) for c, v in self._checked_where(t, where)]
        )
        sql = (
            f"SELECT {', '.join(select_parts)} FROM {sql_from}{where_sql}"
            ' ORDER BY "p".rowid, "je"."key"'
        )
        return Statement(sql, params, frozenset(tables))

    def _delete_effects(self, table: str) -> set[str]:
        """Tables whose rows a delete from ``table`` can change.

        CASCADE is followed transitively.  SET NULL children are updated, not
        deleted, so the walk stops there.
        """
        touched = {table}
        pending = [table]
        while pending:
            parent = pending.pop()
            for child, fk in self._registry.referencing(parent):
                if fk.on_delete not in ("CASCADE", "SET NULL") or child in touched:
                    continue
                touched.add(child)
                if fk.on_delete == "CASCADE":
                    pending.append(child)
        return touched

    # -- validation helpers ----------------------------------------------------

    def _table(self, name: str) -> Table:
        if not self._registry.has_table(name):
            raise QueryBuildError(f"Unknown table {name!r}")
        return self._registry.table(name)

    @staticmethod
    def _column(table: Table, name: str):
        if not table.has_column(name):
            raise QueryBuildError(f"Unknown column {name!r} in table {table.name!r}")
        return table.column(name)

    def _check_columns(self, table: Table, names: Iterable[str]) -> None:
        for name in names:
            self._column(table, name)

    def _checked_where(self, table: Table, where: Optional[Mapping[str, Any]]):
        items = list((where or {}).items())
        self._check_columns(table, [c for c, _ in items])
        return items

    def _split_ref(self, ref: str, tables: Sequence[str]) -> tuple[str, str]:
        table, sep, column = ref.partition(".")
        if not sep:
            raise QueryBuildError(f"Column reference {ref!r} must be 'table.column'")
        if table not in tables:
            raise QueryBuildError(f"Table {table!r} is not part of this query")
        if column != "rowid":
            self._column(self._table(table), column)
        return table, column

    def _ref(self, ref: str, tables: Sequence[str]) -> str:
        table, column = self._split_ref(ref, tables)
        return f"{quote(table)}.{'rowid' if column == 'rowid' else quote(column)}"

    @staticmethod
    def _split_direction(spec: str) -> tuple[str, str]:
        name, _, direction = spec.strip().partition(" ")
        direction = direction.strip().upper() or "ASC"
        if direction not in ("ASC", "DESC"):
            raise QueryBuildError(f"Invalid sort direction in {spec!r}")
        return name, direction

    def _order_by(self, terms: list[tuple[str, str, str]]) -> str:
        if not terms:
            return ""
        parts = []
        for table, column, direction in terms:
            if column != "rowid":
                self._column(self._table(table), column)
            col_sql = "rowid" if column == "rowid" else quote(column)
            parts.append(f"{quote(table)}.{col_sql} {direction}")
        return " ORDER BY " + ", ".join(parts)

    @staticmethod
    def _where(clauses: list[tuple[str, Any]]) -> tuple[str, tuple[Any, ...]]:
        if not clauses:
            return "", ()
        parts: list[str] = []
        params: list[Any] = []
        for col_sql, value in clauses:
            if value is None:
                parts.append(f"{col_sql} IS NULL")
            elif isinstance(value, (list, tuple, set, frozenset)):
                values = list(value)
                if not values:
                    parts.append("0")
                else:
                    parts.append(f"{col_sql} IN ({', '.join('?' for _ in values)})")
                    params.extend(values)
            else:
                parts.append(f"{col_sql} = ?")
                params.append(value)
        return " WHERE " + " AND ".join(parts), tuple(params)

    @staticmethod
    def _upsert_clause(table: Table, cols: list[str]) -> str:
        key = table.key
        if not key:
            raise QueryBuildError(f"Upsert into {table.name!r} needs a primary key")
        rest = [c for c in cols if c not in key]
        target = ", ".join(quote(c) for c in key)
        if not rest:
            return f" ON CONFLICT({target}) DO NOTHING"
        assignments = ", ".join(f"{quote(c)} = excluded.{quote(c)}" for c in rest)
        return f" ON CONFLICT({target}) DO UPDATE SET {assignments}"
