"""Schema registry: table / column definitions and their constraints."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from cartstore.errors import SchemaError

COLUMN_TYPES = ("TEXT", "INTEGER", "REAL", "JSON")
ON_DELETE_ACTIONS = ("CASCADE", "RESTRICT", "SET NULL", "NO ACTION")


def quote(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


@dataclass(frozen=True)
class Column:
    """A named, typed column.  ``references`` is ``(table, column)``."""

    name: str
    type: str = "TEXT"
    nullable: bool = True
    primary_key: bool = False
    unique: bool = False
    default: Any = None
    references: Optional[tuple[str, str]] = None
    on_delete: Optional[str] = None
    check: Optional[str] = None

    def __post_init__(self) -> None:
        if self.type not in COLUMN_TYPES:
            raise SchemaError(f"Unsupported column type {self.type!r} for {self.name!r}")
        if self.on_delete is not None and self.on_delete not in ON_DELETE_ACTIONS:
            raise SchemaError(f"Unsupported ON DELETE action {self.on_delete!r}")
        if self.on_delete is not None and self.references is None:
            raise SchemaError(f"Column {self.name!r} has ON DELETE but no foreign key")

    def ddl(self, inline_pk: bool = False) -> str:
        storage = "TEXT" if self.type == "JSON" else self.type
        parts = [quote(self.name), storage]
        if inline_pk:
            parts.append("PRIMARY KEY")
        if not self.nullable:
            parts.append("NOT NULL")
        if self.unique:
            parts.append("UNIQUE")
        if self.default is not None:
            parts.append(f"DEFAULT {_literal(self.default)}")
        if self.references is not None:
            table, column = self.references
            parts.append(f"REFERENCES {quote(table)}({quote(column)})")
            if self.on_delete:
                parts.append(f"ON DELETE {self.on_delete}")
        checks = []
        if self.type == "JSON":
            checks.append(f"json_valid({quote(self.name)})")
        if self.check:
            checks.append(self.check)
        if checks:
            parts.append(f"CHECK({' AND '.join(checks)})")
        return " ".join(parts)


@dataclass(frozen=True)
class ForeignKey:
    column: str
    table: str
    target: str
    on_delete: Optional[str] = None


@dataclass(frozen=True)
class Constraints:
    primary_key: tuple[str, ...]
    unique: tuple[tuple[str, ...], ...]
    foreign_keys: tuple[ForeignKey, ...]


@dataclass(frozen=True)
class Table:
    """A table definition.  ``primary_key`` may be composite."""

    name: str
    columns: tuple[Column, ...]
    primary_key: tuple[str, ...] = ()
    unique: tuple[tuple[str, ...], ...] = ()
    _by_name: dict[str, Column] = field(
        default_factory=dict, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        object.__setattr__(self, "columns", tuple(self.columns))
        object.__setattr__(self, "primary_key", tuple(self.primary_key))
        object.__setattr__(self, "unique", tuple(tuple(u) for u in self.unique))
        for col in self.columns:
            if col.name in self._by_name:
                raise SchemaError(f"Duplicate column {col.name!r} in table {self.name!r}")
            self._by_name[col.name] = col

    @property
    def column_names(self) -> tuple[str, ...]:
        return tuple(c.name for c in self.columns)

    @property
    def key(self) -> tuple[str, ...]:
        """Primary key columns, whether declared on the table or on columns."""
        if self.primary_key:
            return self.primary_key
        return tuple(c.name for c in self.columns if c.primary_key)

    def has_column(self, name: str) -> bool:
        return name in self._by_name

    def column(self, name: str) -> Column:
        try:
            return self._by_name[name]
        except KeyError:
            raise SchemaError(f"Unknown column {name!r} in table {self.name!r}") from None

    def constraints(self) -> Constraints:
        return Constraints(
            primary_key=self.key,
            unique=self.unique + tuple((c.name,) for c in self.columns if c.unique),
            foreign_keys=tuple(
                ForeignKey(c.name, c.references[0], c.references[1], c.on_delete)
                for c in self.columns
                if c.references is not None
            ),
        )

    def ddl(self) -> str:
        lines = []
        for col in self.columns:
            lines.append(col.ddl(inline_pk=col.primary_key and not self.primary_key))
        if self.primary_key:
            lines.append(f"PRIMARY KEY ({', '.join(quote(c) for c in self.primary_key)})")
        for cols in self.unique:
            lines.append(f"UNIQUE ({', '.join(quote(c) for c in cols)})")
        body = ",\n    ".join(lines)
        return f"CREATE TABLE IF NOT EXISTS {quote(self.name)} (\n    {body}\n);"


class SchemaRegistry:
    """Holds registered tables in registration order."""

    def __init__(self) -> None:
        self._tables: dict[str, Table] = {}

    # -- registration ----------------------------------------------------------

    def register(self, table: Table) -> Table:
        """Validate and add ``table``.  Raises :class:`SchemaError`."""
        if table.name in self._tables:
            raise SchemaError(f"Table {table.name!r} is already registered")

        pk_columns = [c.name for c in table.columns if c.primary_key]
        if table.primary_key and pk_columns:
            raise SchemaError(
                f"Table {table.name!r} declares both a composite and a column primary key"
            )
        if len(pk_columns) > 1:
            raise SchemaError(
                f"Table {table.name!r} marks several columns primary; use primary_key=(...)"
            )
        for name in table.primary_key:
            if not table.has_column(name):
                raise SchemaError(f"Primary key column {name!r} not in table {table.name!r}")
        for cols in table.unique:
            for name in cols:
                if not table.has_column(name):
                    raise SchemaError(f"Unique column {name!r} not in table {table.name!r}")

        for col in table.columns:
            if col.references is None:
                continue
            target_table, target_column = col.references
            if target_table == table.name:
                target = table
            elif target_table in self._tables:
                target = self._tables[target_table]
            else:
                raise SchemaError(
                    f"{table.name}.{col.name} references undefined table {target_table!r}"
                )
            if not target.has_column(target_column):
                raise SchemaError(
                    f"{table.name}.{col.name} references undefined column "
                    f"{target_table}.{target_column}"
                )

        self._tables[table.name] = table
        return table

    # -- lookup ----------------------------------------------------------------

    def has_table(self, name: str) -> bool:
        return name in self._tables

    def table(self, name: str) -> Table:
        try:
            return self._tables[name]
        except KeyError:
            raise SchemaError(f"Unknown table {name!r}") from None

    def tables(self) -> list[Table]:
        return list(self._tables.values())

    def columns(self, name: str) -> tuple[Column, ...]:
        return self.table(name).columns

    def column(self, table: str, name: str) -> Column:
        return self.table(table).column(name)

    def constraints(self, name: str) -> Constraints:
        return self.table(name).constraints()

    def referencing(self, name: str) -> list[tuple[str, ForeignKey]]:
        """All ``(table, foreign_key)`` pairs that point at table ``name``."""
        return [
            (t.name, fk)
            for t in self._tables.values()
            for fk in t.constraints().foreign_keys
            if fk.table == name
        ]

    def ddl(self) -> str:
        return "\n\n".join(t.ddl() for t in self._tables.values())


def _literal(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, str) and value.startswith("(") and value.endswith(")"):
        return value  # expression default, e.g. (strftime(...))
    return "'" + str(value).replace("'", "''") + "'"
