"""Immutable join tree over relations.

A :class:`Graph` node wraps a relation, the filters queued for it and the
metadata of the edge that connects it to its parent.  Every builder method
returns a new tree, so one graph can be executed any number of times and
shared freely between threads.

Life of a call::

    graph = registry.graph("companies").joins(departments="employees")
    graph = graph.where(id=1, departments={"name": re.compile("^R")})
    rows = graph.to_array()

1. :meth:`Graph.prepare` rewrites the tree top-down: queued filters are
   applied to the relations, nodes with children on another backend are
   preloaded, and their children are narrowed to the key values actually
   observed.
2. :meth:`Graph.execute` runs each node and folds its children in with the
   strategy chosen per edge (see :mod:`sqla_relgraph.strategies`).
3. :meth:`Graph.call` applies root hooks (``distinct``, ``select``) and wraps
   the rows in :class:`~sqla_relgraph.pipeline.Loaded`.

Through associations become a chain of *collapsed* nodes: the first carries
the association's name and cardinality, the last wraps the final target.
Collapsed nodes are transparent to :meth:`Graph.where`, :meth:`Graph.dig`
and :meth:`Graph.node`, which address the final target directly.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field, replace
from functools import partial
from typing import Any

from .associations import Cardinality
from .config import DEFAULT_CONFIG, GraphConfig, JoinKind
from .datastructures import frozendict
from .exceptions import NodeNotFoundError, ResolutionError
from .keys import Discriminator, JoinKeyMap, resolve_path
from .pipeline import Combined, Loaded, Operator
from .registry import SchemaRegistry
from .relation import Relation
from .strategies import choose_strategy
from .tools import Row, distinct_rows, distinct_values, key_filter, normalize_conditions, project_rows


__all__ = ("Graph", "JoinKind", "NodeMeta")

logger = logging.getLogger(__name__)

Hook = Callable[[list[Row]], list[Row]]
JoinKeys = Mapping[str, str] | Sequence[tuple[str, str]]


@dataclass(frozen=True, slots=True)
class NodeMeta:
    """Edge metadata of a graph node.

    Attributes:
        name: display name; the key under which the node's rows are attached
            to its parent, and the name used by ``where``/``dig``/``node``.
        join_keys: ``(parent_column, node_column)`` pairs.
        kind: join kind of the edge.
        cardinality: ``ONE`` merges the matched row flat, ``MANY`` attaches
            a list.
        collapsed: intermediate hop of a through chain, lifted away on merge.
        discriminator: polymorphic type check on this edge.
        pf_keys: key values observed on the preloaded parent, pushed down by
            ``prepare``; ``None`` when the parent was not preloaded.
        prepared: ``prepare`` has run on this tree.
        pruned: the node can not match anything and is never fetched.
    """

    name: str
    join_keys: JoinKeyMap = field(default=())
    kind: JoinKind = field(default=JoinKind.INNER)
    cardinality: Cardinality = field(default=Cardinality.ONE)
    collapsed: bool = field(default=False)
    discriminator: Discriminator | None = field(default=None)
    pf_keys: tuple[Any, ...] | None = field(default=None)
    prepared: bool = field(default=False)
    pruned: bool = field(default=False)

    @property
    def source_keys(self) -> tuple[str, ...]:
        return tuple(source for source, _ in self.join_keys)

    @property
    def target_keys(self) -> tuple[str, ...]:
        return tuple(target for _, target in self.join_keys)


def _join_pairs(join_keys: JoinKeys) -> JoinKeyMap:
    pairs = tuple(join_keys.items()) if isinstance(join_keys, Mapping) else tuple(
        (source, target) for source, target in join_keys
    )
    if not pairs:
        raise ValueError("join keys must name at least one (source, target) pair")

    return pairs


def _path(path: str | Sequence[str]) -> tuple[str, ...]:
    if isinstance(path, str):
        return tuple(path.split("."))

    return tuple(name for part in path for name in part.split("."))


def _specs(value: Any) -> tuple[Any, ...]:
    if isinstance(value, (str, Mapping)):
        return (value,)

    if isinstance(value, (list, tuple)):
        return tuple(value)

    raise TypeError(f"joins() expects names, mappings or sequences of them, got {type(value).__name__}")


@dataclass(frozen=True, slots=True)
class Graph(Operator):
    """One node of a join tree; the root node stands for the whole tree."""

    relation: Relation
    meta: NodeMeta
    children: tuple[Graph, ...] = field(default=())
    filters: frozendict[str, Any] = field(default_factory=frozendict)
    hooks: tuple[Hook, ...] = field(default=())
    config: GraphConfig = field(default=DEFAULT_CONFIG)

    @classmethod
    def root(cls, relation: Relation, config: GraphConfig | None = None) -> Graph:
        return cls(relation=relation, meta=NodeMeta(name=relation.name), config=config or DEFAULT_CONFIG)

    @property
    def name(self) -> str:
        return self.meta.name

    @property
    def registry(self) -> SchemaRegistry | None:
        return self.relation.registry

    @property
    def nodes(self) -> tuple[Graph, ...]:
        return self.children

    def _registry(self) -> SchemaRegistry:
        if (registry := self.relation.registry) is None:
            raise ResolutionError(f"Relation {self.relation.name!r} is not attached to a schema registry")

        return registry

    def _touched(self, **changes: Any) -> Graph:
        if self.meta.prepared:
            changes["meta"] = replace(changes.get("meta", self.meta), prepared=False)

        return replace(self, **changes)

    def replace_relation(self, relation: Relation) -> Graph:
        return replace(self, relation=relation)

    # structure

    def _target(self) -> Graph:
        node = self
        while node.meta.collapsed:
            node = node.children[0]

        return node

    def _rewrite_target(self, fn: Callable[[Graph], Graph]) -> Graph:
        if not self.meta.collapsed:
            return fn(self)

        return replace(self, children=(self.children[0]._rewrite_target(fn),))

    def _attach(self, child: Graph) -> Graph:
        for index, existing in enumerate(self.children):
            if existing.meta.name == child.meta.name:
                return self._touched(children=(*self.children[:index], child, *self.children[index + 1 :]))

        return self._touched(children=(*self.children, child))

    def with_nodes(self, nodes: Sequence[Graph]) -> Graph:
        """Replace the children; later nodes win over earlier ones of the same name."""
        graph = self._touched(children=())
        for node in nodes:
            if not isinstance(node, Graph):
                raise TypeError(f"with_nodes() expects Graph nodes, got {type(node).__name__}")
            graph = graph._attach(node)

        return graph

    def get_node(self, name: str) -> Graph | None:
        """Direct child called *name* (its final target for through chains)."""
        for child in self.children:
            if child.meta.name == name:
                return child._target()

        return None

    def fetch_node(self, name: str) -> Graph:
        """Like :meth:`get_node` but raises :class:`NodeNotFoundError`."""
        if (node := self.get_node(name)) is None:
            raise NodeNotFoundError(name, tuple(child.meta.name for child in self.children))

        return node

    def dig(self, *path: str) -> Graph:
        """Follow a path of node names, e.g. ``dig("departments", "employees")``
        or ``dig("departments.employees")``.
        """
        node = self
        for name in _path(path):
            node = node.fetch_node(name)

        return node

    def node(self, path: str | Sequence[str], transform: Callable[[Graph], Graph]) -> Graph:
        """Rewrite the node at *path* with *transform*, returning a new tree.

        The node keeps its edge metadata whatever *transform* returns.

        Example:
            >>> graph.node("departments.employees", lambda n: n.where(active=True))
        """
        names = _path(path)
        if not names:
            result = transform(self)
            if not isinstance(result, Graph):
                raise TypeError(f"node() transform must return a Graph, got {type(result).__name__}")
            return replace(result, meta=self.meta, config=self.config)

        head, rest = names[0], names[1:]
        for index, child in enumerate(self.children):
            if child.meta.name == head:
                rewritten = child._rewrite_target(lambda target: target.node(rest, transform))
                return self._touched(
                    children=(*self.children[:index], rewritten, *self.children[index + 1 :])
                )

        raise NodeNotFoundError(head, tuple(child.meta.name for child in self.children))

    # joins

    def join(
        self,
        relation: str | Relation,
        join_keys: JoinKeys | None = None,
        kind: JoinKind | str | None = None,
        *,
        name: str | None = None,
        target: str | None = None,
        cardinality: Cardinality | str | None = None,
    ) -> Graph:
        """Add one child node.

        Args:
            relation: association name on this node's relation, a relation
                name from the registry (with *join_keys*) or a relation.
            join_keys: ``{parent_column: child_column}`` or a sequence of
                pairs; required for relations, forbidden for associations.
            kind: join kind, defaults to ``config.default_kind``.
            name: display name, defaults to the association or relation name.
            target: concrete target relation of a polymorphic belongs-to.
            cardinality: for explicit joins only, defaults to ``ONE``.

        Raises:
            UnknownAssociationError: *relation* is not an association here.
            ResolutionError: the association or relation can not be resolved.
            TypeError: wrong argument types or combination.
        """
        kind = JoinKind.coerce(kind) if kind is not None else self.config.default_kind

        if isinstance(relation, Relation):
            if join_keys is None:
                raise TypeError("join() with a relation requires join_keys")
            child = self._leaf(relation, join_keys, kind, name, cardinality)
        elif isinstance(relation, str):
            if join_keys is not None:
                child = self._leaf(
                    self._registry().relation(relation, self.relation.context), join_keys, kind, name, cardinality
                )
            else:
                if cardinality is not None:
                    raise TypeError("cardinality can only be given for explicit joins")
                child = self._association_node(relation, kind, name, target)
        else:
            raise TypeError(f"join() expects an association name or a Relation, got {type(relation).__name__}")

        return self._attach(child)

    def left_join(self, relation: str | Relation, join_keys: JoinKeys | None = None, **kwargs: Any) -> Graph:
        return self.join(relation, join_keys, JoinKind.LEFT, **kwargs)

    def joins(self, *specs: Any, kind: JoinKind | str | None = None, **nested: Any) -> Graph:
        """Join several associations, nesting through mappings.

        ``joins("departments", {"employees": "profile"})`` joins departments
        and employees under the root and profile under employees; keyword
        arguments are a shorthand for one more mapping.
        """
        graph = self
        for spec in (*specs, nested) if nested else specs:
            graph = graph._join_spec(spec, kind)

        return graph

    def left_joins(self, *specs: Any, **nested: Any) -> Graph:
        return self.joins(*specs, kind=JoinKind.LEFT, **nested)

    def _join_spec(self, spec: Any, kind: JoinKind | str | None) -> Graph:
        if isinstance(spec, str):
            return self.join(spec, kind=kind)

        if isinstance(spec, Mapping):
            graph = self
            for name, inner in spec.items():
                if graph.get_node(name) is None:
                    graph = graph.join(name, kind=kind)
                graph = graph.node(name, lambda node, inner=inner: node.joins(*_specs(inner), kind=kind))
            return graph

        graph = self
        for item in _specs(spec):
            graph = graph._join_spec(item, kind)

        return graph

    def _leaf(
        self,
        relation: Relation,
        join_keys: JoinKeys,
        kind: JoinKind,
        name: str | None,
        cardinality: Cardinality | str | None,
    ) -> Graph:
        meta = NodeMeta(
            name=name or relation.name,
            join_keys=_join_pairs(join_keys),
            kind=kind,
            cardinality=Cardinality(cardinality) if cardinality is not None else Cardinality.ONE,
        )

        return Graph(relation=relation, meta=meta, config=self.config)

    def _association_node(self, association: str, kind: JoinKind, name: str | None, target: str | None) -> Graph:
        registry = self._registry()
        definition = registry.get_association(self.relation.name, association)
        hops = resolve_path(definition, registry, target)
        context = self.relation.context

        node: Graph | None = None
        for index in reversed(range(len(hops))):
            hop = hops[index]
            last = index == len(hops) - 1

            relation = registry.target_relation(hop.association, context, target=hop.target)
            if last and definition.is_through:
                relation = registry.apply_scope(definition, relation, hop.target)
            if hop.discriminator is not None and hop.discriminator.side == "target":
                relation = relation.where({hop.discriminator.column: hop.discriminator.value})

            head = index == 0
            meta = NodeMeta(
                name=(name or association) if head else hop.name,
                join_keys=(hop.pair,),
                kind=kind,
                cardinality=definition.result if head else hop.association.result,
                collapsed=not last,
                discriminator=hop.discriminator,
            )
            node = Graph(
                relation=relation,
                meta=meta,
                children=() if node is None else (node,),
                config=self.config,
            )

        assert node is not None
        logger.debug("Joined %s.%s over %d hop(s)", self.relation.name, association, len(hops))
        return node

    # filters

    def where(self, conditions: Mapping[str, Any] | None = None, **kw: Any) -> Graph:
        """Route conditions to this node or to named children.

        A key naming a child with a mapping value recurses into that child.
        Other keys become row filters when they are columns of the relation
        (any key, when the relation does not expose its columns).  Keys that
        match neither raise :class:`NodeNotFoundError` under
        ``config.strict_where`` and are dropped with a warning otherwise.
        """
        conditions = {**(conditions or {}), **kw}
        if not conditions:
            return self

        if self.meta.collapsed:
            return self._rewrite_target(lambda target: target.where(conditions))

        names = {child.meta.name for child in self.children}
        columns = self.relation.columns
        local: dict[str, Any] = {}
        nested: dict[str, Mapping[str, Any]] = {}

        for key, value in conditions.items():
            if isinstance(value, Mapping):
                if key in names:
                    nested[key] = value
                    continue
            elif columns is None or key in columns:
                local[key] = value
                continue

            self._unmatched(key, names)

        graph = self
        if local:
            graph = graph._touched(filters=self.filters.merge(normalize_conditions(local)))
        for name, value in nested.items():
            graph = graph.node(name, lambda node, value=value: node.where(value))

        return graph

    def _unmatched(self, key: str, names: set[str]) -> None:
        if self.config.strict_where:
            raise NodeNotFoundError(key, tuple(sorted(names)))

        logger.warning(
            "Dropping condition %r on %s: not a column or joined node (nodes: %s)",
            key,
            self.meta.name,
            sorted(names),
        )

    # execution

    def prepare(self) -> Graph:
        """Apply queued filters and push observed keys down the tree.

        Idempotent: preparing a prepared graph returns it unchanged.
        """
        if self.meta.prepared:
            return self

        return self._prepare(self.meta.pf_keys, pruned=self.meta.pruned)

    def _prepare(self, pf_keys: tuple[Any, ...] | None, pruned: bool) -> Graph:
        relation = self.relation
        pruned = pruned or (pf_keys is not None and not pf_keys)

        if self.filters:
            relation = relation.where(self.filters)
        if pf_keys and not pruned:
            relation = relation.narrow(key_filter(self.meta.target_keys, pf_keys))

        if (
            not pruned
            and not relation.preloaded
            and self.config.preload_cross_backend
            and any(child.relation.backend != relation.backend for child in self.children)
        ):
            relation = relation.preload()

        rows = relation.fetch_rows() if relation.preloaded and not pruned and self.children else None

        children: list[Graph] = []
        for child in self.children:
            child_keys: tuple[Any, ...] | None = None
            if rows is not None:
                candidates = rows
                disc = child.meta.discriminator
                if disc is not None and disc.side == "source":
                    candidates = [row for row in rows if row.get(disc.column) == disc.value]
                child_keys = distinct_values(candidates, child.meta.source_keys)
                logger.debug("Pushing %d key(s) down to %s", len(child_keys), child.meta.name)
            children.append(child._prepare(child_keys, pruned))

        return replace(
            self,
            relation=relation,
            filters=frozendict(),
            children=tuple(children),
            meta=replace(self.meta, prepared=True, pruned=pruned, pf_keys=pf_keys),
        )

    def execute(self) -> list[Row]:
        """Prepare if needed, then fetch and merge rows of the whole tree."""
        return self.prepare().execute_prepared()

    def execute_prepared(self) -> list[Row]:
        if self.meta.pruned:
            return []

        relation = self.relation
        pending = []
        for child in self.children:
            strategy = choose_strategy(self, child, self.config)
            if strategy.native:
                relation = strategy.push(relation, child)
            else:
                pending.append((strategy, child))

        rows = relation.fetch_rows()
        for strategy, child in pending:
            if not rows:
                break
            rows = strategy.resolve(self, relation, rows, child)

        return rows

    def call(self) -> Loaded:
        rows = self.execute()
        for hook in self.hooks:
            rows = hook(rows)

        return Loaded(tuple(rows))

    def __call__(self) -> Loaded:
        return self.call()

    def __iter__(self) -> Iterator[Row]:
        return iter(self.call())

    def combine(self) -> Combined:
        """Root rows plus one parallel sequence per joined node.

        Row filtering follows the join kinds exactly as :meth:`call` does;
        root hooks are not applied.
        """
        prepared = self.prepare()
        as_lists = replace(
            prepared,
            children=tuple(
                replace(child, meta=replace(child.meta, cardinality=Cardinality.MANY))
                for child in prepared.children
            ),
        )
        rows = as_lists.execute_prepared()
        names = {child.meta.name for child in prepared.children}

        nodes: dict[str, tuple[Any, ...]] = {}
        for child in prepared.children:
            values = [row[child.meta.name] for row in rows]
            if child.meta.cardinality is Cardinality.ONE:
                values = [matches[0] if matches else None for matches in values]
            nodes[child.meta.name] = tuple(values)

        return Combined(
            root=tuple({key: value for key, value in row.items() if key not in names} for row in rows),
            nodes=frozendict(nodes),
        )

    def to_array(self) -> list[Row]:
        return self.call().to_array()

    def count(self) -> int:
        return self.call().count()

    def pluck(self, *columns: str) -> list[Any]:
        return self.call().pluck(*columns)

    def first(self) -> Row | None:
        return self.call().first()

    def one(self) -> Row:
        return self.call().one()

    def distinct(self, *columns: str) -> Graph:
        """Keep the first row per distinct value of *columns* after the merge."""
        return replace(self, hooks=(*self.hooks, partial(distinct_rows, columns=columns)))

    def select(self, *columns: str) -> Graph:
        """Project merged rows onto *columns*."""
        if not columns:
            raise TypeError("select() requires at least one column")

        return replace(self, hooks=(*self.hooks, partial(project_rows, columns=columns)))

    # debugging

    def _label(self) -> str:
        meta = self.meta
        if not meta.join_keys:
            label = meta.name if meta.name == self.relation.name else f"{meta.name} ({self.relation.name})"
        else:
            keys = ", ".join(f"{source} -> {target}" for source, target in meta.join_keys)
            label = f"{meta.name} [{meta.kind.value} {meta.cardinality.value}, {keys}]"
            if meta.collapsed:
                label += " (through)"
            if meta.discriminator is not None:
                label += f" ({meta.discriminator.column} = {meta.discriminator.value!r})"
        if self.filters:
            label += f" where {dict(self.filters)}"
        if meta.pruned:
            label += " (pruned)"

        return label

    def _render(self, lines: list[str], prefix: str) -> None:
        for index, child in enumerate(self.children):
            last = index == len(self.children) - 1
            lines.append(f"{prefix}{'└── ' if last else '├── '}{child._label()}")
            child._render(lines, prefix + ("    " if last else "│   "))

    def visualize(self) -> str:
        """Render the tree as text, one node per line.

        Example:
            >>> print(registry.graph("companies").joins(departments="employees").visualize())
            companies
            └── departments [inner many, id -> company_id]
                └── employees [inner many, id -> department_id]
        """
        lines = [self._label()]
        self._render(lines, "")

        return "\n".join(lines)
