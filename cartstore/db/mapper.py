"""Query result mapper: fold flat parent/child rows into nested values."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Iterable, Optional, TypeVar

P = TypeVar("P")
C = TypeVar("C")

Row = dict[str, Any]


@dataclass
class Group(Generic[P, C]):
    parent: P
    children: list[C] = field(default_factory=list)


def group_rows(
    rows: Iterable[Row],
    parent_key: str,
    child_key: str,
    parent: Callable[[Row], P],
    child: Callable[[Row], C],
) -> dict[Any, Group[P, C]]:
    """Group ``rows`` by ``row[parent_key]``.

    Parents appear in first-seen order, children in row order.  A row whose
    ``child_key`` is NULL (an outer join or an empty array expansion) still
    registers its parent, with no child added, so empty parents survive.
    """
    groups: dict[Any, Group[P, C]] = {}
    for row in rows:
        key = row[parent_key]
        group = groups.get(key)
        if group is None:
            group = groups[key] = Group(parent(row))
        if row.get(child_key) is not None:
            group.children.append(child(row))
    return groups


def first_group(groups: dict[Any, Group[P, C]]) -> Optional[Group[P, C]]:
    return next(iter(groups.values()), None)

