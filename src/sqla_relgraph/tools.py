from __future__ import annotations

import re
from collections.abc import Collection, Iterable, Mapping, Sequence
from functools import lru_cache
from typing import Any, TypeVar

import sqlalchemy as sa
from sqlalchemy import orm

from .datastructures import frozendict


T = TypeVar("T", bound=orm.DeclarativeBase)

Row = dict[str, Any]
Ordering = tuple[tuple[str, bool], ...]


def freeze_value(value: Any) -> Any:
    """Normalise one filter value so it can live in a ``frozendict``.

    Lists, sets and generators become tuples (``IN``); scalars, ``None`` and
    compiled patterns are returned unchanged.

    Raises:
        TypeError: for mapping values, which only make sense as nested graph
            conditions.
    """
    if isinstance(value, Mapping):
        raise TypeError(f"Nested conditions are not valid row filters: {value!r}")

    if isinstance(value, (str, bytes, re.Pattern)) or value is None:
        return value

    if isinstance(value, (list, tuple, set, frozenset)) or hasattr(value, "__next__"):
        return tuple(value)

    return value


def normalize_conditions(
    conditions: Mapping[str, Any] | None = None, **kw: Any
) -> frozendict[str, Any]:
    """Merge positional and keyword conditions into a frozen filter map."""
    merged = {**(conditions or {}), **kw}

    return frozendict({key: freeze_value(value) for key, value in merged.items()})


def match_value(actual: Any, expected: Any) -> bool:
    """In-memory counterpart of :func:`build_clause` for a single value."""
    if expected is None:
        return actual is None

    if isinstance(expected, tuple):
        return actual in expected

    if isinstance(expected, re.Pattern):
        return actual is not None and expected.search(str(actual)) is not None

    return actual == expected


def match_row(row: Mapping[str, Any], filters: Mapping[str, Any]) -> bool:
    return all(match_value(row.get(key), value) for key, value in filters.items())


def filter_rows(rows: Iterable[Row], filters: Mapping[str, Any]) -> list[Row]:
    if not filters:
        return list(rows)

    return [row for row in rows if match_row(row, filters)]


def narrow_conditions(
    current: Mapping[str, Any], conditions: Mapping[str, Any]
) -> frozendict[str, Any]:
    """Intersect value filters with the filters already in *current*.

    A key already filtered in *current* keeps only the values that its
    existing filter accepts, so an empty tuple means nothing can match.

    Raises:
        TypeError: a value is a pattern; only values can be intersected.

    Example:
        >>> narrow_conditions({"company_id": 2}, {"company_id": [1, 2]})
        <frozendict {'company_id': (2,)}>
    """
    narrowed: dict[str, Any] = {}
    for key, value in normalize_conditions(conditions).items():
        if isinstance(value, re.Pattern):
            raise TypeError(f"Cannot narrow {key!r} by a pattern")

        if key in current:
            values = value if isinstance(value, tuple) else (value,)
            value = tuple(item for item in values if match_value(item, current[key]))

        narrowed[key] = value

    return frozendict(narrowed)


def build_clause(column: sa.ColumnElement[Any], value: Any) -> sa.ColumnElement[bool]:
    """Translate a normalised filter value into a SQL boolean clause.

    An empty tuple yields ``false()`` rather than an empty ``IN``.
    """
    if value is None:
        return column.is_(None)

    if isinstance(value, tuple):
        return column.in_(value) if value else sa.false()

    if isinstance(value, re.Pattern):
        return column.regexp_match(value.pattern)

    return column == value


def normalize_ordering(*columns: str | tuple[str, str] | tuple[str, bool]) -> Ordering:
    """Accept ``"name"``, ``"-name"``, ``("name", "desc")`` or ``("name", True)``.

    Returns:
        Tuple of ``(column, descending)`` pairs.

    Example:
        >>> normalize_ordering("name", "-id")
        (('name', False), ('id', True))
    """
    out: list[tuple[str, bool]] = []
    for column in columns:
        if isinstance(column, tuple):
            name, direction = column
            if isinstance(direction, str):
                if direction.lower() not in ("asc", "desc"):
                    raise ValueError(f"Unknown ordering direction: {direction!r}")
                out.append((name, direction.lower() == "desc"))
            else:
                out.append((name, bool(direction)))
        elif column.startswith("-"):
            out.append((column[1:], True))
        else:
            out.append((column, False))

    return tuple(out)


def _sort_key(column: str) -> Any:
    def key(row: Mapping[str, Any]) -> tuple[bool, Any]:
        value = row.get(column)
        return (True, 0) if value is None else (False, value)

    return key


def order_rows(rows: Iterable[Row], ordering: Ordering) -> list[Row]:
    """Stable in-memory sort; ``None`` sorts after every value ascending."""
    result = list(rows)
    for column, descending in reversed(ordering):
        result.sort(key=_sort_key(column), reverse=descending)

    return result


def paginate_rows(rows: Sequence[Row], limit: int | None, offset: int | None) -> list[Row]:
    start = offset or 0
    stop = None if limit is None else start + limit

    return list(rows[start:stop])


def row_key(row: Mapping[str, Any], columns: Sequence[str]) -> Any:
    """Single column -> scalar, several columns -> tuple."""
    if len(columns) == 1:
        return row.get(columns[0])

    return tuple(row.get(column) for column in columns)


def has_null(key: Any, width: int) -> bool:
    if width == 1:
        return key is None

    return any(part is None for part in key)


def distinct_values(rows: Iterable[Row], columns: Sequence[str]) -> tuple[Any, ...]:
    """Distinct non-null key values in first-seen order.

    Composite keys with any ``None`` component are skipped, as they can never
    satisfy an equality join.
    """
    seen: dict[Any, None] = {}
    for row in rows:
        key = row_key(row, columns)
        if not has_null(key, len(columns)):
            seen.setdefault(key, None)

    return tuple(seen)


def key_filter(columns: Sequence[str], values: Collection[Any]) -> dict[str, Any]:
    """Filter restricting *columns* to *values* (one ``IN`` per column).

    Composite keys are narrowed per column, which is a superset of the exact
    tuple match; the merge step restores exactness.
    """
    if len(columns) == 1:
        return {columns[0]: tuple(values)}

    return {
        column: tuple(dict.fromkeys(value[i] for value in values))
        for i, column in enumerate(columns)
    }


def freeze(value: Any) -> Any:
    """Hashable deep copy of a row value (nested rows and lists included)."""
    if isinstance(value, Mapping):
        return tuple(sorted((key, freeze(item)) for key, item in value.items()))

    if isinstance(value, (list, tuple, set, frozenset)):
        return tuple(freeze(item) for item in value)

    return value


def distinct_rows(rows: Iterable[Row], columns: Sequence[str] = ()) -> list[Row]:
    """Keep the first row for every distinct value of *columns* (all when empty)."""
    seen: set[Any] = set()
    out: list[Row] = []
    for row in rows:
        key = freeze({c: row.get(c) for c in columns} if columns else row)
        if key not in seen:
            seen.add(key)
            out.append(row)

    return out


def project_rows(rows: Iterable[Row], columns: Sequence[str]) -> list[Row]:
    if not columns:
        raise TypeError("select() requires at least one column")

    return [{column: row.get(column) for column in columns} for row in rows]


@lru_cache
def _get_table_name(model: type[T]) -> str:
    """Return the table name for *model*, preferring ``__tablename__`` (cached)."""
    result = getattr(
        model,
        "__tablename__",
        model.__table__.description,
    )
    if not result:
        raise ValueError(f"Cannot determine tablename for {model}")

    return result


def get_table_name(model: type[T]) -> str:
    """Get the table name for a SQLAlchemy model.

    Args:
        model: SQLAlchemy model class.

    Returns:
        The table name as a string.

    Raises:
        ValueError: If the table name cannot be determined.
    """
    return _get_table_name(model)
