from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar, Final

from .exceptions import ConfigurationError


if TYPE_CHECKING:
    from .relation import Relation


class AssociationType(str, Enum):
    BELONGS_TO = "belongs_to"
    HAS_MANY = "has_many"
    HAS_ONE = "has_one"
    HAS_MANY_THROUGH = "has_many_through"
    HAS_ONE_THROUGH = "has_one_through"


class Cardinality(str, Enum):
    ONE = "one"
    MANY = "many"


@dataclass(frozen=True, slots=True)
class Through:
    """Reference to the hop an association goes through.

    ``association`` names an association on the owner; ``target_association``
    names the association applied on that hop's target relation.
    """

    association: str
    target_association: str


@dataclass(frozen=True, slots=True)
class Polymorphic:
    """Discriminator columns for a polymorphic association.

    ``foreign_type`` is the discriminator value when it is fixed by the
    declaration (``as_`` on the holder side) and ``None`` when it varies per
    row (``polymorphic=True`` on a belongs-to).
    """

    as_: str
    foreign_type_key: str
    foreign_key: str
    foreign_type: str | None = None

    @classmethod
    def holder(cls, as_: str, foreign_type: str) -> Polymorphic:
        return cls(as_=as_, foreign_type_key=f"{as_}_type", foreign_key=f"{as_}_id", foreign_type=foreign_type)

    @classmethod
    def owner(cls, name: str) -> Polymorphic:
        return cls(as_=name, foreign_type_key=f"{name}_type", foreign_key=f"{name}_id")


@dataclass(frozen=True, slots=True, kw_only=True)
class AssociationDefinition:
    """Immutable description of one association on a source relation.

    Concrete variants fix the direction of the join: which side holds the
    foreign key decides ``source_key`` and ``target_key``.
    """

    type: ClassVar[AssociationType]

    name: str
    source: str
    target: str | None
    result: Cardinality
    foreign_key: str | None = None
    primary_key: str = "id"
    through: Through | None = None
    polymorphic: Polymorphic | None = None
    view: str | None = None
    condition: Callable[[Relation], Relation] | None = field(default=None, compare=False)

    @property
    def is_through(self) -> bool:
        return self.through is not None

    @property
    def source_key(self) -> str:
        raise NotImplementedError

    @property
    def target_key(self) -> str:
        raise NotImplementedError


@dataclass(frozen=True, slots=True, kw_only=True)
class BelongsTo(AssociationDefinition):
    type = AssociationType.BELONGS_TO

    @property
    def source_key(self) -> str:
        assert self.foreign_key
        return self.foreign_key

    @property
    def target_key(self) -> str:
        return self.primary_key


@dataclass(frozen=True, slots=True, kw_only=True)
class HasMany(AssociationDefinition):
    type = AssociationType.HAS_MANY

    @property
    def source_key(self) -> str:
        return self.primary_key

    @property
    def target_key(self) -> str:
        assert self.foreign_key
        return self.foreign_key


@dataclass(frozen=True, slots=True, kw_only=True)
class HasOne(HasMany):
    type = AssociationType.HAS_ONE


@dataclass(frozen=True, slots=True, kw_only=True)
class HasManyThrough(AssociationDefinition):
    type = AssociationType.HAS_MANY_THROUGH


@dataclass(frozen=True, slots=True, kw_only=True)
class HasOneThrough(HasManyThrough):
    type = AssociationType.HAS_ONE_THROUGH


_DIRECT: Final[dict[AssociationType, type[AssociationDefinition]]] = {
    AssociationType.BELONGS_TO: BelongsTo,
    AssociationType.HAS_MANY: HasMany,
    AssociationType.HAS_ONE: HasOne,
}
_THROUGH: Final[dict[AssociationType, type[AssociationDefinition]]] = {
    AssociationType.BELONGS_TO: HasOneThrough,
    AssociationType.HAS_MANY: HasManyThrough,
    AssociationType.HAS_ONE: HasOneThrough,
    AssociationType.HAS_MANY_THROUGH: HasManyThrough,
    AssociationType.HAS_ONE_THROUGH: HasOneThrough,
}
_DEFAULT_RESULT: Final[dict[type[AssociationDefinition], Cardinality]] = {
    BelongsTo: Cardinality.ONE,
    HasMany: Cardinality.MANY,
    HasOne: Cardinality.ONE,
    HasManyThrough: Cardinality.MANY,
    HasOneThrough: Cardinality.ONE,
}
_OPTIONS: Final[frozenset[str]] = frozenset({
    "name",
    "foreign_key",
    "primary_key",
    "through",
    "through_association",
    "polymorphic",
    "as_",
    "view",
    "condition",
    "result",
    "source_entity",
    "source_type",
})


def _coerce_type(type_: AssociationType | str) -> AssociationType:
    try:
        return type_ if isinstance(type_, AssociationType) else AssociationType(type_)
    except ValueError:
        raise ConfigurationError(f"Unknown association type: {type_!r}") from None


def _coerce_result(value: Cardinality | str) -> Cardinality:
    try:
        return value if isinstance(value, Cardinality) else Cardinality(value)
    except ValueError:
        raise ConfigurationError(f"Unknown association result: {value!r}") from None


def define_association(
    type_: AssociationType | str,
    source: str,
    target: str | None = None,
    **options: Any,
) -> AssociationDefinition:
    """Build exactly one concrete association definition.

    Args:
        type_: ``belongs_to``, ``has_many`` or ``has_one`` (the through
            variants are selected by passing ``through``).
        source: name of the owning relation.
        target: name of the associated relation; defaults to the association
            name, and stays ``None`` for a polymorphic belongs-to.
        **options: ``name`` (required), ``foreign_key``, ``primary_key``,
            ``through``, ``through_association``, ``polymorphic``, ``as_``,
            ``view``, ``condition``, ``result``, ``source_entity`` (singular
            owner name used for foreign-key inference) and ``source_type``
            (discriminator value written by ``as_`` holders).

    Raises:
        ConfigurationError: unknown type or option, missing name, or an
            incompatible combination of options.

    Example:
        >>> define_association("has_many", "companies", name="departments",
        ...                    source_entity="company").foreign_key
        'company_id'
    """
    kind = _coerce_type(type_)

    if unknown := set(options) - _OPTIONS:
        raise ConfigurationError(f"Unknown association options: {sorted(unknown)}")

    name = options.get("name")
    if not name or not isinstance(name, str):
        raise ConfigurationError(f"Association on {source!r} requires a name")

    if not source:
        raise ConfigurationError(f"Association {name!r} requires a source relation")

    through_name = options.get("through")
    polymorphic = bool(options.get("polymorphic", False))
    as_ = options.get("as_")
    source_entity = options.get("source_entity") or source

    if polymorphic and kind is not AssociationType.BELONGS_TO:
        raise ConfigurationError(f"polymorphic=True is only valid on belongs_to ({source}.{name})")

    if as_ is not None and kind is AssociationType.BELONGS_TO:
        raise ConfigurationError(f"as_ is only valid on has_many/has_one ({source}.{name})")

    if through_name is not None:
        if polymorphic or as_ is not None:
            raise ConfigurationError(
                f"Through association {source}.{name} cannot be polymorphic"
            )

        cls = _THROUGH[kind]
        return cls(
            name=name,
            source=source,
            target=target,
            result=_coerce_result(options.get("result", _DEFAULT_RESULT[cls])),
            foreign_key=options.get("foreign_key"),
            primary_key=options.get("primary_key", "id"),
            through=Through(
                association=through_name,
                target_association=options.get("through_association") or name,
            ),
            view=options.get("view"),
            condition=options.get("condition"),
        )

    if kind not in _DIRECT:
        raise ConfigurationError(f"{kind.value} requires a through option ({source}.{name})")

    cls = _DIRECT[kind]
    poly: Polymorphic | None = None

    if kind is AssociationType.BELONGS_TO:
        if polymorphic:
            poly = Polymorphic.owner(name)
        else:
            target = target or name
        foreign_key = options.get("foreign_key") or f"{name}_id"
    else:
        target = target or name
        if as_ is not None:
            poly = Polymorphic.holder(as_, options.get("source_type") or source_entity)
            foreign_key = options.get("foreign_key") or poly.foreign_key
        else:
            foreign_key = options.get("foreign_key") or f"{source_entity}_id"

    return cls(
        name=name,
        source=source,
        target=target,
        result=_coerce_result(options.get("result", _DEFAULT_RESULT[cls])),
        foreign_key=foreign_key,
        primary_key=options.get("primary_key", "id"),
        polymorphic=poly,
        view=options.get("view"),
        condition=options.get("condition"),
    )
