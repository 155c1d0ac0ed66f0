from __future__ import annotations

import logging
from collections.abc import Hashable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, TypeVar

import sqlalchemy as sa
from sqlalchemy import orm

from .config import JoinKind
from .datastructures import frozendict
from .exceptions import ResolutionError, UnsupportedJoinError
from .relation import EMPTY_CONTEXT, Context, Relation
from .tools import Ordering, Row, build_clause, get_table_name


if TYPE_CHECKING:
    from .registry import SchemaRegistry


T = TypeVar("T", bound=orm.DeclarativeBase)

logger = logging.getLogger(__name__)


def _column(source: sa.FromClause, name: str, relation: str) -> sa.ColumnElement[Any]:
    try:
        return source.c[name]
    except KeyError:
        raise ResolutionError(
            f"Column {name!r} not found on relation {relation!r}. "
            f"Available: {list(source.c.keys())}"
        ) from None


@dataclass(frozen=True, eq=False)
class SqlRelation(Relation):
    """Relation over a SQLAlchemy selectable.

    ``bind`` is an ``Engine`` or an open ``Connection``; two relations join
    natively when they resolve to the same engine.  ``scope`` lists columns
    restricted to the value of the same key in ``context``.

    Example:
        >>> users = SqlRelation.from_table(users_table, engine)
        >>> users.where(active=True).order("-id").limit(10).to_array()
    """

    name: str
    source: sa.FromClause
    bind: sa.Engine | sa.Connection
    context: Context = field(default=EMPTY_CONTEXT)
    filters: frozendict[str, Any] = field(default_factory=frozendict)
    clauses: tuple[sa.ColumnElement[bool], ...] = field(default=())
    ordering: Ordering = field(default=())
    row_limit: int | None = field(default=None)
    row_offset: int | None = field(default=None)
    scope: tuple[str, ...] = field(default=())
    primary_key: tuple[str, ...] = field(default=())
    registry: SchemaRegistry | None = field(default=None)

    @classmethod
    def from_table(
        cls,
        table: sa.FromClause,
        bind: sa.Engine | sa.Connection,
        *,
        name: str | None = None,
        scope: Sequence[str] = (),
        context: Mapping[str, Any] | None = None,
        registry: SchemaRegistry | None = None,
    ) -> SqlRelation:
        return cls(
            name=name or getattr(table, "name", None) or table.description,
            source=table,
            bind=bind,
            context=Context(context or {}),
            scope=tuple(scope),
            primary_key=tuple(column.key for column in table.primary_key),
            registry=registry,
        )

    @classmethod
    def from_model(
        cls,
        model: type[T],
        bind: sa.Engine | sa.Connection,
        **kwargs: Any,
    ) -> SqlRelation:
        kwargs.setdefault("name", get_table_name(model))
        return cls.from_table(model.__table__, bind, **kwargs)

    @property
    def backend(self) -> Hashable:
        return self.bind.engine

    @property
    def columns(self) -> frozenset[str]:
        return frozenset(self.source.c.keys())

    @property
    def ordered_columns(self) -> tuple[str, ...]:
        return tuple(self.source.c.keys())

    def supports_native_join(self, other: Relation) -> bool:
        return isinstance(other, SqlRelation) and other.backend is self.backend

    def filter(self, *clauses: sa.ColumnExpressionArgument[bool]) -> SqlRelation:
        """Add raw SQLAlchemy criteria, evaluated against :attr:`source`."""
        return replace(self, clauses=self.clauses + tuple(sa.and_(clause) for clause in clauses))

    def to_select(self, *, ordered: bool = True) -> sa.Select[Any]:
        """Compile the relation into a ``SELECT``.

        Without explicit ordering rows come by primary key ascending.  The
        ordering is dropped for ``ordered=False`` unless limit or offset need it.
        """
        stmt = sa.select(self.source)

        criteria = [
            build_clause(_column(self.source, key, self.name), value)
            for key, value in self.filters.items()
        ]
        for column in self.scope:
            if column not in self.context:
                raise ResolutionError(f"Relation {self.name!r} is scoped by {column!r}, missing from context")
            criteria.append(_column(self.source, column, self.name) == self.context[column])

        if criteria or self.clauses:
            stmt = stmt.where(*criteria, *self.clauses)

        paginated = self.row_limit is not None or bool(self.row_offset)
        if ordered or paginated:
            if self.ordering:
                stmt = stmt.order_by(*(
                    _column(self.source, column, self.name).desc()
                    if descending
                    else _column(self.source, column, self.name).asc()
                    for column, descending in self.ordering
                ))
            elif self.primary_key:
                stmt = stmt.order_by(*(self.source.c[key].asc() for key in self.primary_key))

        if self.row_limit is not None:
            stmt = stmt.limit(self.row_limit)
        if self.row_offset:
            stmt = stmt.offset(self.row_offset)

        return stmt

    @contextmanager
    def _connect(self) -> Iterator[sa.Connection]:
        if isinstance(self.bind, sa.Connection):
            yield self.bind
        else:
            with self.bind.connect() as conn:
                yield conn

    def fetch_rows(self) -> list[Row]:
        with self._connect() as conn:
            stmt = self.to_select()
            logger.debug("Fetching %s: %s", self.name, stmt)
            return [dict(row) for row in conn.execute(stmt).mappings()]

    def pluck(self, *columns: str) -> list[Any]:
        if not columns:
            raise TypeError("pluck() requires at least one column")

        stmt = self.to_select().with_only_columns(
            *(_column(self.source, column, self.name) for column in columns)
        )

        with self._connect() as conn:
            result = conn.execute(stmt)
            if len(columns) == 1:
                return list(result.scalars())
            return [tuple(row) for row in result]

    def count(self) -> int:
        stmt = sa.select(sa.func.count()).select_from(self.to_select(ordered=False).subquery())

        with self._connect() as conn:
            return conn.execute(stmt).scalar_one()

    def semi_join(
        self,
        parent: SqlRelation,
        pairs: Sequence[tuple[str, str]],
        *,
        source_filters: Mapping[str, Any] | None = None,
    ) -> SqlRelation:
        """Restrict to rows whose target keys appear in *parent*'s source keys.

        Emits ``target IN (SELECT source FROM parent)``, or a tuple ``IN`` for
        composite keys.
        """
        inner = parent.to_select(ordered=False).subquery()
        sub = sa.select(*(_column(inner, source, parent.name) for source, _ in pairs))
        if source_filters:
            sub = sub.where(*(
                build_clause(_column(inner, key, parent.name), value)
                for key, value in source_filters.items()
            ))

        targets = [_column(self.source, target, self.name) for _, target in pairs]
        clause = targets[0].in_(sub) if len(targets) == 1 else sa.tuple_(*targets).in_(sub)

        return replace(self, clauses=(*self.clauses, clause))

    def native_join(
        self,
        other: SqlRelation,
        pairs: Sequence[tuple[str, str]],
        kind: JoinKind = JoinKind.INNER,
        *,
        name: str | None = None,
    ) -> SqlRelation:
        """Join *other* into this relation inside the database.

        The result keeps every column of this relation; columns of *other*
        are added except its join-key columns, and a name clashing with this
        relation is written ``<name>_<column>``.  Filters, scope and
        pagination of both sides are baked into sub-selects.

        Raises:
            UnsupportedJoinError: for ``right`` joins.
        """
        if kind is JoinKind.RIGHT:
            raise UnsupportedJoinError("Native joins support inner, left and full kinds, not right")

        prefix = name or other.name
        left = self.to_select(ordered=False).subquery()
        right = other.to_select(ordered=False).subquery()

        onclause = sa.and_(*(
            _column(left, source, self.name) == _column(right, target, other.name)
            for source, target in pairs
        ))
        targets = {target for _, target in pairs}
        taken = set(left.c.keys())

        selected: list[sa.ColumnElement[Any]] = list(left.c)
        for column in right.c:
            if column.key in targets:
                continue
            selected.append(column.label(f"{prefix}_{column.key}" if column.key in taken else column.key))

        joined = left.join(right, onclause, isouter=kind is JoinKind.LEFT, full=kind is JoinKind.FULL)
        logger.debug("Native %s join %s -> %s on %s", kind.value, self.name, other.name, list(pairs))

        return replace(
            self,
            source=sa.select(*selected).select_from(joined).subquery(),
            filters=frozendict(),
            clauses=(),
            row_limit=None,
            row_offset=None,
            scope=(),
        )
