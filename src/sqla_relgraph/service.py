from __future__ import annotations

import logging
from collections.abc import Hashable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Final, Protocol, runtime_checkable

from .datastructures import frozendict
from .relation import EMPTY_CONTEXT, Context, Relation
from .tools import Ordering, Row, filter_rows, order_rows, paginate_rows


if TYPE_CHECKING:
    from .registry import SchemaRegistry


logger = logging.getLogger(__name__)

ALL_CAPABILITIES: Final[frozenset[str]] = frozenset({"filter", "order", "paginate"})


@runtime_checkable
class DataService(Protocol):
    """Non-SQL row source (remote API, document store, ...).

    ``supports`` may be declared as a set drawn from ``filter``, ``order`` and
    ``paginate``; operations outside it are applied in memory by
    :class:`ServiceRelation`.  Services without the attribute are assumed to
    support all three.
    """

    def fetch_rows(
        self,
        filters: Mapping[str, Any],
        *,
        order: Ordering = (),
        limit: int | None = None,
        offset: int | None = None,
        context: Mapping[str, Any] = ...,
    ) -> Iterable[Mapping[str, Any]]: ...


@dataclass(eq=False)
class ArrayService:
    """In-memory :class:`DataService` over a list of rows."""

    rows: Sequence[Mapping[str, Any]] = field(default=())
    supports: frozenset[str] = field(default=ALL_CAPABILITIES)

    def __post_init__(self) -> None:
        if unknown := set(self.supports) - ALL_CAPABILITIES:
            raise ValueError(f"Unknown service capabilities: {sorted(unknown)}")

    def fetch_rows(
        self,
        filters: Mapping[str, Any],
        *,
        order: Ordering = (),
        limit: int | None = None,
        offset: int | None = None,
        context: Mapping[str, Any] = EMPTY_CONTEXT,
    ) -> list[Row]:
        rows = filter_rows((dict(row) for row in self.rows), filters)
        if order:
            rows = order_rows(rows, order)

        return paginate_rows(rows, limit, offset)


@dataclass(frozen=True, eq=False)
class ServiceRelation(Relation):
    """Relation backed by a :class:`DataService`.

    Two service relations never join natively, even over the same service;
    edges touching one are always correlated in memory.
    """

    name: str
    service: DataService
    source_columns: frozenset[str] | None = field(default=None)
    context: Context = field(default=EMPTY_CONTEXT)
    filters: frozendict[str, Any] = field(default_factory=frozendict)
    ordering: Ordering = field(default=())
    row_limit: int | None = field(default=None)
    row_offset: int | None = field(default=None)
    registry: SchemaRegistry | None = field(default=None)

    @property
    def backend(self) -> Hashable:
        return id(self.service)

    @property
    def columns(self) -> frozenset[str] | None:
        return self.source_columns

    @property
    def supports(self) -> frozenset[str]:
        return frozenset(getattr(self.service, "supports", ALL_CAPABILITIES))

    def fetch_rows(self) -> list[Row]:
        supports = self.supports
        paginated = self.row_limit is not None or bool(self.row_offset)

        remote_filter = "filter" in supports or not self.filters
        remote_order = remote_filter and ("order" in supports or not self.ordering)
        remote_page = remote_order and ("paginate" in supports or not paginated)

        logger.debug(
            "Fetching %s (remote filter=%s, order=%s, paginate=%s)",
            self.name,
            remote_filter,
            remote_order,
            remote_page,
        )
        rows = [
            dict(row)
            for row in self.service.fetch_rows(
                self.filters if remote_filter else frozendict(),
                order=self.ordering if remote_order else (),
                limit=self.row_limit if remote_page else None,
                offset=self.row_offset if remote_page else None,
                context=self.context,
            )
        ]

        if not remote_filter:
            rows = filter_rows(rows, self.filters)
        if not remote_order and self.ordering:
            rows = order_rows(rows, self.ordering)
        if not remote_page:
            rows = paginate_rows(rows, self.row_limit, self.row_offset)

        return rows
