from __future__ import annotations

from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

import sqlalchemy as sa

from .datastructures import frozendict
from .tools import Row, distinct_rows, project_rows


class Operator:
    """Mixin for values that can be chained with ``then`` / ``>>``.

    Relations, graphs and loaded results are operators: calling one yields the
    value handed to the next stage.  Any plain callable can follow.
    """

    __slots__ = ()

    def then(self, other: Callable[..., Any]) -> Pipeline:
        return Pipeline.of(self, other)

    def __rshift__(self, other: Callable[..., Any]) -> Pipeline:
        return self.then(other)

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        raise NotImplementedError


@dataclass(frozen=True, slots=True)
class Pipeline(Operator):
    """Ordered stages folded left to right on call.

    Nested pipelines are flattened on construction, so ``(a >> b) >> c`` and
    ``a >> (b >> c)`` hold the same stage tuple.  Nothing runs until the
    pipeline is called; each stage receives the previous stage's output and
    whatever the last stage returns is handed back unwrapped.
    """

    stages: tuple[Callable[..., Any], ...]

    @classmethod
    def of(cls, *stages: Callable[..., Any]) -> Pipeline:
        flat: list[Callable[..., Any]] = []
        for stage in stages:
            if isinstance(stage, Pipeline):
                flat.extend(stage.stages)
            elif callable(stage):
                flat.append(stage)
            else:
                raise TypeError(f"Pipeline stage must be callable, got {type(stage).__name__}")

        if not flat:
            raise ValueError("Pipeline requires at least one stage")

        return cls(tuple(flat))

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        first, *rest = self.stages
        value = first(*args, **kwargs)
        for stage in rest:
            value = stage(value)

        return value

    def __len__(self) -> int:
        return len(self.stages)


@dataclass(frozen=True, slots=True)
class Loaded(Operator):
    """Materialized rows of a relation or graph."""

    rows: tuple[Row, ...] = ()

    def __iter__(self) -> Iterator[Row]:
        return iter(self.rows)

    def __len__(self) -> int:
        return len(self.rows)

    def __getitem__(self, index: int) -> Row:
        return self.rows[index]

    def __call__(self) -> Loaded:
        return self

    @property
    def empty(self) -> bool:
        return not self.rows

    def one(self) -> Row:
        """Return the only row.

        Raises:
            sqlalchemy.exc.NoResultFound: no rows.
            sqlalchemy.exc.MultipleResultsFound: more than one row.
        """
        if not self.rows:
            raise sa.exc.NoResultFound("No row was found when one was required")

        if len(self.rows) > 1:
            raise sa.exc.MultipleResultsFound("Multiple rows were found when exactly one was required")

        return self.rows[0]

    def one_or_none(self) -> Row | None:
        if len(self.rows) > 1:
            raise sa.exc.MultipleResultsFound("Multiple rows were found when one or none was required")

        return self.rows[0] if self.rows else None

    def first(self) -> Row | None:
        return self.rows[0] if self.rows else None

    def pluck(self, *columns: str) -> list[Any]:
        if not columns:
            raise TypeError("pluck() requires at least one column")

        if len(columns) == 1:
            return [row.get(columns[0]) for row in self.rows]

        return [tuple(row.get(column) for column in columns) for row in self.rows]

    def count(self) -> int:
        return len(self.rows)

    def to_array(self) -> list[Row]:
        return list(self.rows)

    def map(self, fn: Callable[[Row], Any]) -> list[Any]:
        return [fn(row) for row in self.rows]

    def distinct(self, *columns: str) -> Loaded:
        return Loaded(tuple(distinct_rows(self.rows, columns)))

    def select(self, *columns: str) -> Loaded:
        return Loaded(tuple(project_rows(self.rows, columns)))


@dataclass(frozen=True, slots=True)
class Combined:
    """Root rows plus, per joined node, a parallel sequence of matches.

    ``nodes[name][i]`` belongs to ``root[i]``: a list of rows for many-valued
    nodes, a row or ``None`` for single-valued ones.
    """

    root: tuple[Row, ...]
    nodes: Mapping[str, tuple[Any, ...]] = field(default_factory=frozendict)

    def __iter__(self) -> Iterator[tuple[Row, dict[str, Any]]]:
        for index, row in enumerate(self.root):
            yield row, {name: values[index] for name, values in self.nodes.items()}

    def __len__(self) -> int:
        return len(self.root)

    def node(self, name: str) -> tuple[Any, ...]:
        return self.nodes[name]


def _stage(name: str, fn: Callable[[Any], Any]) -> Callable[[Any], Any]:
    fn.__name__ = fn.__qualname__ = name
    return fn


def pluck(*columns: str) -> Callable[[Any], list[Any]]:
    return _stage(f"pluck{columns}", lambda value: value.pluck(*columns))


def count() -> Callable[[Any], int]:
    return _stage("count", lambda value: value.count())


def distinct(*columns: str) -> Callable[[Any], Any]:
    return _stage(f"distinct{columns}", lambda value: value.distinct(*columns))


def select(*columns: str) -> Callable[[Any], Any]:
    return _stage(f"select{columns}", lambda value: value.select(*columns))


def to_array() -> Callable[[Any], list[Row]]:
    return _stage("to_array", lambda value: value.to_array())
