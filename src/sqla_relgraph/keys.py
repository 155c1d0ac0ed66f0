"""Join-key resolution for associations.

Every association resolves to a *path*: an ordered tuple of :class:`Hop`
objects, one per direct association crossed.  A direct association is a
one-hop path; a through association is the concatenation of the path of its
``through`` hop and the path of the association applied on that hop's target,
so chains of any depth flatten into a single tuple.

Resolution is pure, so results are memoized with ``lru_cache`` keyed on the
association, the registry and the explicit target (polymorphic belongs-to).
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import TYPE_CHECKING, Any, Literal

from .associations import AssociationDefinition
from .exceptions import ResolutionError


if TYPE_CHECKING:
    from .registry import SchemaRegistry


JoinKeyMap = tuple[tuple[str, str], ...]


@dataclass(frozen=True, slots=True)
class Discriminator:
    """Extra equality on a polymorphic type column.

    ``side`` tells which end of the hop holds ``column``: ``"target"`` for
    ``as_`` holders, ``"source"`` for a polymorphic belongs-to.
    """

    column: str
    value: str
    side: Literal["source", "target"]


@dataclass(frozen=True, slots=True)
class Hop:
    association: AssociationDefinition
    source: str
    target: str
    source_key: str
    target_key: str
    discriminator: Discriminator | None = None

    @property
    def pair(self) -> tuple[str, str]:
        return (self.source_key, self.target_key)

    @property
    def name(self) -> str:
        return self.association.name


def _direct_hop(
    association: AssociationDefinition,
    registry: SchemaRegistry | None,
    target: str | None,
) -> Hop:
    poly = association.polymorphic
    resolved = target or association.target

    if resolved is None:
        raise ResolutionError(
            f"Polymorphic association {association.source}.{association.name} "
            "needs an explicit target relation"
        )

    if target is not None and association.target is not None and target != association.target:
        raise ResolutionError(
            f"{association.source}.{association.name} targets {association.target!r}, not {target!r}"
        )

    discriminator: Discriminator | None = None
    if poly is not None:
        if poly.foreign_type is not None:
            discriminator = Discriminator(poly.foreign_type_key, poly.foreign_type, "target")
        else:
            if registry is None:
                raise ResolutionError(
                    f"Resolving polymorphic {association.source}.{association.name} requires a registry"
                )
            discriminator = Discriminator(poly.foreign_type_key, registry[resolved].discriminator, "source")

    return Hop(
        association=association,
        source=association.source,
        target=resolved,
        source_key=association.source_key,
        target_key=association.target_key,
        discriminator=discriminator,
    )


def _walk(
    association: AssociationDefinition,
    registry: SchemaRegistry | None,
    target: str | None,
    seen: frozenset[tuple[str, str]],
) -> tuple[Hop, ...]:
    marker = (association.source, association.name)
    if marker in seen:
        raise ResolutionError(
            f"Through chain of {association.source}.{association.name} revisits itself"
        )
    seen = seen | {marker}

    if association.through is None:
        return (_direct_hop(association, registry, target),)

    if registry is None:
        raise ResolutionError(
            f"Through association {association.source}.{association.name} requires a registry"
        )

    via = registry.get_association(association.source, association.through.association)
    head = _walk(via, registry, None, seen)

    tail_assoc = registry.get_association(head[-1].target, association.through.target_association)
    tail = _walk(tail_assoc, registry, target, seen)

    final = tail[-1].target
    if association.target is not None and association.target != final:
        raise ResolutionError(
            f"{association.source}.{association.name} declares target {association.target!r} "
            f"but its chain ends at {final!r}"
        )

    return head + tail


@lru_cache(maxsize=1024)
def _resolve_path(
    association: AssociationDefinition,
    registry: SchemaRegistry | None,
    target: str | None,
) -> tuple[Hop, ...]:
    return _walk(association, registry, target, frozenset())


def resolve_path(
    association: AssociationDefinition,
    registry: SchemaRegistry | None = None,
    target: str | None = None,
) -> tuple[Hop, ...]:
    """Resolve *association* into its ordered hops.

    Args:
        association: definition to resolve.
        registry: schema registry used to look up through hops and type names.
            Only direct, non-polymorphic associations resolve without one.
        target: concrete target relation for a polymorphic belongs-to.

    Returns:
        Tuple of hops, never empty.

    Raises:
        UnknownAssociationError: a through hop names an association missing on
            the relation it is evaluated against.
        ResolutionError: the chain cannot be resolved otherwise (unknown
            relation, missing polymorphic target, cycle).
    """
    return _resolve_path(association, registry, target)


def join_key_map(
    association: AssociationDefinition,
    registry: SchemaRegistry | None = None,
    target: str | None = None,
) -> JoinKeyMap:
    """Ordered ``(source_column, target_column)`` pairs, one per hop.

    Example:
        >>> join_key_map(departments)
        (('id', 'company_id'),)
        >>> join_key_map(employees, registry)  # through departments
        (('id', 'company_id'), ('id', 'department_id'))
    """
    return tuple(hop.pair for hop in resolve_path(association, registry, target))


def relgraph_cache_info() -> dict[str, Any]:
    """Return LRU cache statistics for all internal caches."""
    from .tools import _get_table_name

    return {fn.__name__: fn.cache_info() for fn in (_resolve_path, _get_table_name)}


def relgraph_cache_clear() -> None:
    """Clear all internal LRU caches."""
    from .tools import _get_table_name

    for fn in (_resolve_path, _get_table_name):
        fn.cache_clear()
