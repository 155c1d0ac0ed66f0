"""Relation graphs and join composition on top of SQLAlchemy.

sqla_relgraph lets you declare relations and the associations between them
in a ``SchemaRegistry``, then compose joins across those associations with
``graph.joins(...).where(...)``.  Edges between relations on the same engine
are pushed into SQL; edges that cross backends (a table and a remote service)
are resolved by fetching the parent's key values first and correlating the
child rows in memory.
"""

from ._version import __version__, __version_tuple__
from .associations import (
    AssociationDefinition,
    AssociationType,
    BelongsTo,
    Cardinality,
    HasMany,
    HasManyThrough,
    HasOne,
    HasOneThrough,
    Polymorphic,
    Through,
    define_association,
)
from .config import GraphConfig, JoinKind
from .datastructures import frozendict
from .exceptions import (
    ConfigurationError,
    NodeNotFoundError,
    RelGraphError,
    ResolutionError,
    UnknownAssociationError,
    UnsupportedJoinError,
)
from .graph import Graph, NodeMeta
from .keys import Discriminator, Hop, join_key_map, relgraph_cache_clear, relgraph_cache_info, resolve_path
from .pipeline import Combined, Loaded, Operator, Pipeline
from .registry import RelationSchema, SchemaRegistry, schemas_from_declarative
from .relation import BoundAssociation, Context, LoadedRelation, Relation
from .service import ArrayService, DataService, ServiceRelation
from .sql import SqlRelation
from .strategies import (
    CorrelatedJoin,
    EmptyJoin,
    JoinStrategy,
    PushDownJoin,
    SemiJoin,
    choose_strategy,
    group_rows,
    merge_rows,
)


__all__ = (
    "ArrayService",
    "AssociationDefinition",
    "AssociationType",
    "BelongsTo",
    "BoundAssociation",
    "Cardinality",
    "Combined",
    "ConfigurationError",
    "Context",
    "CorrelatedJoin",
    "DataService",
    "Discriminator",
    "EmptyJoin",
    "Graph",
    "GraphConfig",
    "HasMany",
    "HasManyThrough",
    "HasOne",
    "HasOneThrough",
    "Hop",
    "JoinKind",
    "JoinStrategy",
    "Loaded",
    "LoadedRelation",
    "NodeMeta",
    "NodeNotFoundError",
    "Operator",
    "Pipeline",
    "Polymorphic",
    "PushDownJoin",
    "RelGraphError",
    "Relation",
    "RelationSchema",
    "ResolutionError",
    "SchemaRegistry",
    "SemiJoin",
    "ServiceRelation",
    "SqlRelation",
    "Through",
    "UnknownAssociationError",
    "UnsupportedJoinError",
    "__version__",
    "__version_tuple__",
    "choose_strategy",
    "define_association",
    "frozendict",
    "group_rows",
    "join_key_map",
    "merge_rows",
    "relgraph_cache_clear",
    "relgraph_cache_info",
    "resolve_path",
    "schemas_from_declarative",
)
