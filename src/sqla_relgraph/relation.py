from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Hashable, Iterator, Mapping
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

from .associations import AssociationDefinition
from .datastructures import frozendict
from .exceptions import ResolutionError
from .keys import Hop, JoinKeyMap, resolve_path
from .pipeline import Loaded, Operator
from .tools import (
    Ordering,
    Row,
    distinct_rows,
    distinct_values,
    filter_rows,
    key_filter,
    narrow_conditions,
    normalize_conditions,
    normalize_ordering,
    order_rows,
    paginate_rows,
    project_rows,
)


if TYPE_CHECKING:
    from .config import GraphConfig
    from .graph import Graph
    from .registry import SchemaRegistry


logger = logging.getLogger(__name__)


class Context(frozendict[str, Any]):
    """Caller-supplied scoping values (tenant, project, ...).

    Handed to every relation built through a registry; relations read it and
    never change it.
    """

    __slots__ = ()


EMPTY_CONTEXT = Context()


class Relation(Operator, ABC):
    """Queryable interface shared by every backend.

    Concrete relations are frozen dataclasses that declare at least the
    fields ``name``, ``context``, ``filters``, ``ordering``, ``row_limit``,
    ``row_offset`` and ``registry``.  Every builder method returns a copy.
    """

    name: str
    context: Context
    filters: frozendict[str, Any]
    ordering: Ordering
    row_limit: int | None
    row_offset: int | None
    registry: SchemaRegistry | None

    preloaded: bool = False

    @property
    @abstractmethod
    def backend(self) -> Hashable:
        """Identity of the store; equal backends can join natively."""

    @property
    def columns(self) -> frozenset[str] | None:
        """Known column names, or ``None`` when the backend does not say."""
        return None

    @property
    def ordered_columns(self) -> tuple[str, ...] | None:
        """Known column names in their natural order, sorted when unknown."""
        columns = self.columns
        return None if columns is None else tuple(sorted(columns))

    @abstractmethod
    def fetch_rows(self) -> list[Row]:
        """Run the relation and return its rows as dicts."""

    def where(self, conditions: Mapping[str, Any] | None = None, **kw: Any) -> Relation:
        """Narrow rows by column filters.

        Values: scalar (equality), ``None`` (is null), list/tuple/set (in),
        compiled regular expression (search).

        Raises:
            TypeError: a value is a mapping.
            ResolutionError: a key is not a known column.
        """
        filters = normalize_conditions(conditions, **kw)
        if not filters:
            return self

        if (columns := self.columns) is not None and (unknown := set(filters) - columns):
            raise ResolutionError(f"Unknown columns {sorted(unknown)} on relation {self.name!r}")

        return replace(self, filters=self.filters.merge(filters))

    def narrow(self, conditions: Mapping[str, Any]) -> Relation:
        """Restrict columns to value sets without widening an existing filter.

        Used to feed key values observed elsewhere into this relation: a
        column that already carries a filter keeps only the values it
        accepts.
        """
        return self.where(narrow_conditions(self.filters, conditions))

    def order(self, *columns: str | tuple[str, str] | tuple[str, bool]) -> Relation:
        return replace(self, ordering=normalize_ordering(*columns))

    def limit(self, value: int | None) -> Relation:
        if value is not None and value < 0:
            raise ValueError(f"limit must be non-negative, got {value}")

        return replace(self, row_limit=value)

    def offset(self, value: int | None) -> Relation:
        if value is not None and value < 0:
            raise ValueError(f"offset must be non-negative, got {value}")

        return replace(self, row_offset=value)

    def paginate(self, page: int, per_page: int) -> Relation:
        """1-based page of *per_page* rows."""
        if page < 1 or per_page < 1:
            raise ValueError(f"page and per_page must be positive, got {page}, {per_page}")

        return replace(self, row_limit=per_page, row_offset=(page - 1) * per_page)

    def with_context(self, context: Mapping[str, Any]) -> Relation:
        return replace(self, context=Context(context))

    def with_registry(self, registry: SchemaRegistry | None) -> Relation:
        return replace(self, registry=registry)

    def pluck(self, *columns: str) -> list[Any]:
        return Loaded(tuple(self.fetch_rows())).pluck(*columns)

    def count(self) -> int:
        return len(self.fetch_rows())

    def to_array(self) -> list[Row]:
        return self.fetch_rows()

    def one(self) -> Row:
        return Loaded(tuple(self.fetch_rows())).one()

    def first(self) -> Row | None:
        return Loaded(tuple(self.fetch_rows())).first()

    def distinct(self, *columns: str) -> Loaded:
        return Loaded(tuple(distinct_rows(self.fetch_rows(), columns)))

    def select(self, *columns: str) -> Loaded:
        return Loaded(tuple(project_rows(self.fetch_rows(), columns)))

    def preload(self) -> LoadedRelation:
        """Materialize now; the returned relation filters in memory."""
        rows = tuple(self.fetch_rows())
        logger.debug("Preloaded %d rows from %s", len(rows), self.name)

        return LoadedRelation(
            name=self.name,
            rows=rows,
            source_columns=self.columns,
            context=self.context,
            registry=self.registry,
        )

    def supports_native_join(self, other: Relation) -> bool:
        return False

    def __iter__(self) -> Iterator[Row]:
        return iter(self.fetch_rows())

    def __call__(self) -> Loaded:
        return Loaded(tuple(self.fetch_rows()))

    def graph(self, config: GraphConfig | None = None) -> Graph:
        from .graph import Graph

        return Graph.root(self, config=config)

    def join(self, *args: Any, **kwargs: Any) -> Graph:
        return self.graph().join(*args, **kwargs)

    def joins(self, *args: Any, **kwargs: Any) -> Graph:
        return self.graph().joins(*args, **kwargs)

    def left_join(self, *args: Any, **kwargs: Any) -> Graph:
        return self.graph().left_join(*args, **kwargs)

    def left_joins(self, *args: Any, **kwargs: Any) -> Graph:
        return self.graph().left_joins(*args, **kwargs)

    def association(self, name: str, target: str | None = None) -> BoundAssociation:
        """Bind the association *name* of this relation to its current rows.

        Raises:
            ResolutionError: the relation has no registry.
            UnknownAssociationError: no such association.
        """
        if self.registry is None:
            raise ResolutionError(f"Relation {self.name!r} is not attached to a schema registry")

        return BoundAssociation(
            owner=self,
            definition=self.registry.get_association(self.name, name),
            target=target,
        )


@dataclass(frozen=True, eq=False)
class LoadedRelation(Relation):
    """Relation over rows already in memory."""

    name: str
    rows: tuple[Row, ...] = field(default=())
    source_columns: frozenset[str] | None = field(default=None)
    context: Context = field(default=EMPTY_CONTEXT)
    filters: frozendict[str, Any] = field(default_factory=frozendict)
    ordering: Ordering = field(default=())
    row_limit: int | None = field(default=None)
    row_offset: int | None = field(default=None)
    registry: SchemaRegistry | None = field(default=None)

    preloaded = True

    @property
    def backend(self) -> Hashable:
        return id(self)

    @property
    def columns(self) -> frozenset[str] | None:
        return self.source_columns

    def fetch_rows(self) -> list[Row]:
        rows = filter_rows(self.rows, self.filters)
        if self.ordering:
            rows = order_rows(rows, self.ordering)

        return paginate_rows(rows, self.row_limit, self.row_offset)

    def preload(self) -> LoadedRelation:
        if not self.filters and not self.ordering and self.row_limit is None and not self.row_offset:
            return self

        return replace(
            self,
            rows=tuple(self.fetch_rows()),
            filters=frozendict(),
            ordering=(),
            row_limit=None,
            row_offset=None,
        )


@dataclass(frozen=True, slots=True)
class BoundAssociation:
    """An association applied to the rows of a concrete owner relation.

    ``call()`` walks the hops of the association: a hop whose target shares
    the owner's SQL engine is expressed as a sub-select, any other hop plucks
    the owner's key values and filters the target with them.
    """

    owner: Relation
    definition: AssociationDefinition
    target: str | None = None

    @property
    def hops(self) -> tuple[Hop, ...]:
        return resolve_path(self.definition, self.owner.registry, self.target)

    def join_key_map(self) -> JoinKeyMap:
        return tuple(hop.pair for hop in self.hops)

    def call(self) -> Relation:
        if (registry := self.owner.registry) is None:
            raise ResolutionError(f"Relation {self.owner.name!r} is not attached to a schema registry")

        hops = self.hops
        current = self.owner
        for index, hop in enumerate(hops):
            last = index == len(hops) - 1
            target = registry.target_relation(hop.association, self.owner.context, target=hop.target)
            if last and self.definition.is_through:
                target = registry.apply_scope(self.definition, target, hop.target)

            source_filters: dict[str, Any] = {}
            if (disc := hop.discriminator) is not None:
                if disc.side == "target":
                    target = target.where({disc.column: disc.value})
                else:
                    source_filters[disc.column] = disc.value

            if current.supports_native_join(target):
                target = target.semi_join(current, (hop.pair,), source_filters=source_filters)  # type: ignore[attr-defined]
            else:
                rows = filter_rows(current.fetch_rows(), normalize_conditions(source_filters))
                values = distinct_values(rows, (hop.source_key,))
                logger.debug(
                    "Association %s.%s: %d key(s) for hop %s",
                    self.definition.source,
                    self.definition.name,
                    len(values),
                    hop.name,
                )
                target = target.narrow(key_filter((hop.target_key,), values))

            current = target

        return current

    def to_array(self) -> list[Row]:
        return self.call().to_array()

    def __iter__(self) -> Iterator[Row]:
        return iter(self.call().to_array())

    def __call__(self) -> Loaded:
        return self.call()()
