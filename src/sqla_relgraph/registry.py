from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy import orm

from .associations import AssociationDefinition, AssociationType, define_association
from .datastructures import frozendict
from .exceptions import ConfigurationError, ResolutionError, UnknownAssociationError
from .keys import resolve_path
from .relation import EMPTY_CONTEXT, Context, Relation
from .sql import SqlRelation


if TYPE_CHECKING:
    from .config import GraphConfig
    from .graph import Graph


logger = logging.getLogger(__name__)

RelationFactory = Callable[[Context], Relation]
View = Callable[[Relation], Relation]


@dataclass(frozen=True, slots=True)
class RelationSchema:
    """Declaration of one relation: how to build it and what it links to.

    ``factory`` receives the caller's context and returns a fresh relation.
    ``entity`` is the singular name used to infer ``<entity>_id`` foreign keys
    on has-many/has-one associations, and ``type_name`` the value written to
    polymorphic type columns; both default to the relation name.

    Builders return a new schema::

        companies = (
            RelationSchema("companies", factory, entity="company")
            .has_many("departments")
            .has_many("employees", through="departments")
        )
    """

    name: str
    factory: RelationFactory = field(compare=False)
    entity: str | None = field(default=None)
    type_name: str | None = field(default=None)
    associations: frozendict[str, AssociationDefinition] = field(default_factory=frozendict)
    views: frozendict[str, View] = field(default_factory=frozendict, compare=False)

    @property
    def entity_name(self) -> str:
        return self.entity or self.name

    @property
    def discriminator(self) -> str:
        return self.type_name or self.entity_name

    def associate(
        self,
        type_: AssociationType | str,
        name: str,
        target: str | None = None,
        **options: Any,
    ) -> RelationSchema:
        """Add one association; names are unique per schema.

        Raises:
            ConfigurationError: duplicate name or invalid options.
        """
        if name in self.associations:
            raise ConfigurationError(f"Association {name!r} is already defined on {self.name!r}")

        options.setdefault("source_entity", self.entity_name)
        options.setdefault("source_type", self.discriminator)
        definition = define_association(type_, self.name, target, name=name, **options)

        return replace(self, associations=self.associations.merge({name: definition}))

    def has_many(self, name: str, target: str | None = None, **options: Any) -> RelationSchema:
        return self.associate(AssociationType.HAS_MANY, name, target, **options)

    def has_one(self, name: str, target: str | None = None, **options: Any) -> RelationSchema:
        return self.associate(AssociationType.HAS_ONE, name, target, **options)

    def belongs_to(self, name: str, target: str | None = None, **options: Any) -> RelationSchema:
        return self.associate(AssociationType.BELONGS_TO, name, target, **options)

    def view(self, name: str, fn: View) -> RelationSchema:
        """Register a named transform that associations can apply via ``view=``."""
        if name in self.views:
            raise ConfigurationError(f"View {name!r} is already defined on {self.name!r}")

        return replace(self, views=self.views.merge({name: fn}))

    def get_association(self, name: str) -> AssociationDefinition:
        try:
            return self.associations[name]
        except KeyError:
            raise UnknownAssociationError(self.name, name) from None


@dataclass(frozen=True, eq=False)
class SchemaRegistry:
    """Explicit, immutable registry of relation schemas.

    Built once at startup and passed to relations and graphs; nothing is
    registered globally.  Instances hash by identity, which keys the
    memoized path resolution.
    """

    schemas: frozendict[str, RelationSchema] = field(default_factory=frozendict)

    @classmethod
    def of(cls, *schemas: RelationSchema) -> SchemaRegistry:
        registry = cls()
        for schema in schemas:
            if schema.name in registry.schemas:
                raise ConfigurationError(f"Relation {schema.name!r} is registered twice")
            registry = registry.with_schema(schema)

        return registry

    def with_schema(self, schema: RelationSchema) -> SchemaRegistry:
        """Return a new registry with *schema* added or replaced."""
        return type(self)(self.schemas.merge({schema.name: schema}))

    def __getitem__(self, name: str) -> RelationSchema:
        try:
            return self.schemas[name]
        except KeyError:
            raise ResolutionError(
                f"Unknown relation {name!r}. Available: {sorted(self.schemas)}"
            ) from None

    def __contains__(self, name: object) -> bool:
        return name in self.schemas

    def __iter__(self) -> Iterator[str]:
        return iter(self.schemas)

    def __len__(self) -> int:
        return len(self.schemas)

    def get(self, name: str) -> RelationSchema | None:
        return self.schemas.get(name)

    def get_association(self, relation: str, name: str) -> AssociationDefinition:
        return self[relation].get_association(name)

    def relation(self, name: str, context: Mapping[str, Any] | None = None) -> Relation:
        """Build a fresh relation for *name* bound to this registry."""
        context = Context(context) if context else EMPTY_CONTEXT
        relation = self[name].factory(context)

        return relation.with_context(context).with_registry(self)

    def apply_scope(self, association: AssociationDefinition, relation: Relation, target: str) -> Relation:
        """Apply the view and condition declared on *association* to *relation*."""
        if association.view is not None:
            views = self[target].views
            if association.view not in views:
                raise ResolutionError(
                    f"View {association.view!r} not found on relation {target!r} "
                    f"(used by {association.source}.{association.name})"
                )
            relation = views[association.view](relation)

        if association.condition is not None:
            relation = association.condition(relation)

        return relation

    def target_relation(
        self,
        association: AssociationDefinition,
        context: Mapping[str, Any] | None = None,
        target: str | None = None,
    ) -> Relation:
        name = target or association.target
        if name is None:
            raise ResolutionError(
                f"Polymorphic association {association.source}.{association.name} "
                "needs an explicit target relation"
            )

        return self.apply_scope(association, self.relation(name, context), name)

    def graph(
        self,
        name: str,
        context: Mapping[str, Any] | None = None,
        config: GraphConfig | None = None,
    ) -> Graph:
        return self.relation(name, context).graph(config)

    def validate(self) -> SchemaRegistry:
        """Resolve every association eagerly.

        Polymorphic belongs-to associations are skipped, their target is only
        known at join time.

        Raises:
            ResolutionError: the first association that does not resolve.
        """
        for schema in self.schemas.values():
            for association in schema.associations.values():
                if association.target is None and association.through is None:
                    continue
                for hop in resolve_path(association, self):
                    if hop.target not in self:
                        raise ResolutionError(
                            f"{association.source}.{association.name} reaches unknown relation {hop.target!r}"
                        )

        return self


def _factory(table: sa.Table, bind: sa.Engine | sa.Connection) -> RelationFactory:
    def build(context: Context) -> Relation:
        return SqlRelation.from_table(table, bind, context=context)

    return build


def schemas_from_declarative(
    base: type[orm.DeclarativeBase],
    bind: sa.Engine | sa.Connection,
) -> SchemaRegistry:
    """Reflect a registry from SQLAlchemy declarative models.

    Every mapped table becomes a schema named after the table.  Many-to-one
    relationships become ``belongs_to``, one-to-many become ``has_many`` (or
    ``has_one`` when ``uselist=False``).  Many-to-many and composite-key
    relationships are skipped with a warning.

    Args:
        base: SQLAlchemy declarative base class.
        bind: engine or connection the relations will run on.

    Returns:
        A new registry.
    """
    assert orm.DeclarativeBase in getattr(base, "__bases__", ()), (
        "base must be a subclass of orm.DeclarativeBase"
    )

    schemas: dict[str, RelationSchema] = {}
    mappers = [mapper for mapper in base.registry.mappers if isinstance(mapper.local_table, sa.Table)]

    for mapper in mappers:
        table = mapper.local_table
        schemas[table.name] = RelationSchema(
            name=table.name,
            factory=_factory(table, bind),
            type_name=mapper.class_.__name__,
        )

    for mapper in mappers:
        name = mapper.local_table.name
        schema = schemas[name]

        for rel in mapper.relationships:
            target = rel.mapper.local_table.name
            pairs = list(rel.local_remote_pairs or ())

            if rel.direction is orm.MANYTOMANY or rel.secondary is not None or len(pairs) != 1:
                logger.warning("Skipping relationship %s.%s: only single-column direct keys are reflected", name, rel.key)
                continue

            local, remote = pairs[0]
            if rel.direction is orm.MANYTOONE:
                schema = schema.belongs_to(
                    rel.key, target, foreign_key=local.key, primary_key=remote.key
                )
            else:
                schema = schema.associate(
                    AssociationType.HAS_MANY if rel.uselist else AssociationType.HAS_ONE,
                    rel.key,
                    target,
                    foreign_key=remote.key,
                    primary_key=local.key,
                )

        schemas[name] = schema

    return SchemaRegistry.of(*schemas.values())
