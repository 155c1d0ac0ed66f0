"""Per-edge join strategies.

An edge is a parent graph node and one of its children.  The dispatcher picks
one strategy per edge when the parent executes:

* :class:`EmptyJoin` when the parent's observed key set is already known to
  be empty; nothing is fetched for the child.
* :class:`PushDownJoin` when both sides live on the same SQL engine and the
  child can be flattened into the parent's ``SELECT``.
* :class:`SemiJoin` for other same-engine edges: the child is restricted by a
  sub-select of the parent, then grouped in memory.
* :class:`CorrelatedJoin` for everything else: distinct parent key values
  are plucked from the parent rows, the child is fetched filtered to them,
  and the two sides are hash-merged.

Result shape does not depend on the strategy: single-valued children are
merged flat into the parent row, many-valued ones are attached as a list
under the child's display name.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING, Any, ClassVar, Final

from .associations import Cardinality
from .config import DEFAULT_CONFIG, GraphConfig, JoinKind
from .exceptions import UnsupportedJoinError
from .tools import Row, distinct_values, has_null, key_filter, row_key


if TYPE_CHECKING:
    from .graph import Graph, NodeMeta
    from .relation import Relation


logger = logging.getLogger(__name__)

LIFTED: Final[str] = "__lifted__"


def group_rows(rows: Iterable[Row], columns: Sequence[str]) -> dict[Any, list[Row]]:
    """Index rows by the value of *columns*, skipping null keys."""
    index: defaultdict[Any, list[Row]] = defaultdict(list)
    width = len(columns)
    for row in rows:
        key = row_key(row, columns)
        if not has_null(key, width):
            index[key].append(row)

    return index


def _lift(rows: Iterable[Row]) -> list[Row]:
    seen: set[int] = set()
    out: list[Row] = []
    for row in rows:
        for lifted in row.get(LIFTED, ()):
            if id(lifted) not in seen:
                seen.add(id(lifted))
                out.append(lifted)

    return out


def _flat_merge(
    row: Row,
    match: Row | None,
    name: str,
    columns: Sequence[str],
    omit: frozenset[str],
) -> Row:
    merged = dict(row)
    for column in columns if match is None else match:
        if column in omit or column == LIFTED:
            continue
        key = f"{name}_{column}" if column in row else column
        merged[key] = None if match is None else match.get(column)

    return merged


def merge_rows(
    parent_rows: Sequence[Row],
    child_rows: Sequence[Row],
    meta: NodeMeta,
    *,
    into_carrier: bool = False,
    child_columns: Iterable[str] | None = None,
) -> list[Row]:
    """Hash-merge *child_rows* into *parent_rows* along ``meta.join_keys``.

    Args:
        parent_rows: rows of the parent, order is preserved.
        child_rows: rows of the child, already narrowed or not.
        meta: the child's node metadata (keys, kind, cardinality, name).
        into_carrier: the parent is an intermediate hop of a through chain;
            matches are stored under :data:`LIFTED` for the next level up.
        child_columns: columns to null out on unmatched single-valued left
            joins, after those seen in *child_rows*.

    Returns:
        New parent rows; the inputs are not modified.
    """
    source_keys = [source for source, _ in meta.join_keys]
    target_keys = [target for _, target in meta.join_keys]
    index = group_rows(child_rows, target_keys)
    disc = meta.discriminator if meta.discriminator and meta.discriminator.side == "source" else None

    # unmatched rows follow the column order of the fetched child rows
    columns = list(dict.fromkeys(
        column for row in (_lift(child_rows) if meta.collapsed else child_rows) for column in row
    ))
    if child_columns is not None:
        seen = set(columns)
        columns.extend(column for column in child_columns if column not in seen)
    omit = frozenset() if meta.collapsed else frozenset(target_keys)

    out: list[Row] = []
    for row in parent_rows:
        key = row_key(row, source_keys)
        matches = [] if has_null(key, len(source_keys)) else index.get(key, [])
        if disc is not None and row.get(disc.column) != disc.value:
            matches = []
        if meta.collapsed:
            matches = _lift(matches)

        if not matches and meta.kind is JoinKind.INNER:
            continue

        if into_carrier:
            out.append({**row, LIFTED: matches})
        elif meta.cardinality is Cardinality.MANY:
            out.append({**row, meta.name: list(matches)})
        else:
            out.append(_flat_merge(row, matches[0] if matches else None, meta.name, columns, omit))

    return out


class JoinStrategy:
    """Resolve one parent-child edge."""

    kinds: ClassVar[frozenset[JoinKind]] = frozenset({JoinKind.INNER, JoinKind.LEFT})
    native: ClassVar[bool] = False

    def check(self, child: Graph) -> None:
        if child.meta.kind not in self.kinds:
            raise UnsupportedJoinError(
                f"{type(self).__name__} does not support {child.meta.kind.value} joins "
                f"(edge to {child.meta.name!r})"
            )

    def push(self, relation: Relation, child: Graph) -> Relation:
        raise NotImplementedError

    def resolve(self, parent: Graph, relation: Relation, rows: list[Row], child: Graph) -> list[Row]:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__}>"


class EmptyJoin(JoinStrategy):
    """The parent observed no key values: skip the child fetch entirely."""

    def resolve(self, parent: Graph, relation: Relation, rows: list[Row], child: Graph) -> list[Row]:
        if child.meta.kind is JoinKind.INNER:
            return []

        return merge_rows(
            rows,
            [],
            child.meta,
            into_carrier=parent.meta.collapsed,
            child_columns=_known_columns(child),
        )


class PushDownJoin(JoinStrategy):
    kinds = frozenset({JoinKind.INNER, JoinKind.LEFT, JoinKind.FULL})
    native = True

    def push(self, relation: Relation, child: Graph) -> Relation:
        return relation.native_join(  # type: ignore[attr-defined]
            child.relation,
            child.meta.join_keys,
            child.meta.kind,
            name=child.meta.name,
        )


class SemiJoin(JoinStrategy):
    def resolve(self, parent: Graph, relation: Relation, rows: list[Row], child: Graph) -> list[Row]:
        disc = child.meta.discriminator
        narrowed = child.replace_relation(
            child.relation.semi_join(  # type: ignore[attr-defined]
                relation,
                child.meta.join_keys,
                source_filters={disc.column: disc.value} if disc and disc.side == "source" else None,
            )
        )

        return merge_rows(
            rows,
            narrowed.execute_prepared(),
            child.meta,
            into_carrier=parent.meta.collapsed,
            child_columns=_known_columns(child),
        )


class CorrelatedJoin(JoinStrategy):
    def resolve(self, parent: Graph, relation: Relation, rows: list[Row], child: Graph) -> list[Row]:
        source_keys = [source for source, _ in child.meta.join_keys]
        target_keys = [target for _, target in child.meta.join_keys]

        candidates = rows
        disc = child.meta.discriminator
        if disc is not None and disc.side == "source":
            candidates = [row for row in rows if row.get(disc.column) == disc.value]

        values = distinct_values(candidates, source_keys)
        if not values:
            logger.debug("No key values for %s, skipping fetch", child.meta.name)
            return EmptyJoin().resolve(parent, relation, rows, child)

        narrowed = child.replace_relation(child.relation.narrow(key_filter(target_keys, values)))
        logger.debug("Correlating %s on %d key value(s)", child.meta.name, len(values))

        return merge_rows(
            rows,
            narrowed.execute_prepared(),
            child.meta,
            into_carrier=parent.meta.collapsed,
            child_columns=_known_columns(child),
        )


def _known_columns(child: Graph) -> tuple[str, ...] | None:
    if child.meta.collapsed or child.meta.cardinality is Cardinality.MANY:
        return None

    return child.relation.ordered_columns


def choose_strategy(parent: Graph, child: Graph, config: GraphConfig = DEFAULT_CONFIG) -> JoinStrategy:
    """Pick the strategy for the edge ``parent -> child`` and validate its kind.

    Raises:
        UnsupportedJoinError: the chosen strategy does not implement the
            child's join kind.
    """
    strategy: JoinStrategy
    disc = child.meta.discriminator

    if child.meta.pruned:
        strategy = EmptyJoin()
    elif config.native_joins and parent.relation.supports_native_join(child.relation):
        if (
            not parent.meta.collapsed
            and not child.meta.collapsed
            and not child.children
            and child.meta.cardinality is Cardinality.ONE
            and (disc is None or disc.side == "target")
        ):
            strategy = PushDownJoin()
        else:
            strategy = SemiJoin()
    else:
        strategy = CorrelatedJoin()

    strategy.check(child)

    logger.debug("Edge %s -> %s: %r", parent.meta.name, child.meta.name, strategy)
    return strategy
