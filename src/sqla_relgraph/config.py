from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Final


_TRUE: Final[frozenset[str]] = frozenset({"1", "true", "yes", "on"})
_FALSE: Final[frozenset[str]] = frozenset({"0", "false", "no", "off"})


class JoinKind(str, Enum):
    """How unmatched parent rows are treated on a graph edge."""

    INNER = "inner"
    LEFT = "left"
    RIGHT = "right"
    FULL = "full"

    @classmethod
    def coerce(cls, value: JoinKind | str) -> JoinKind:
        try:
            return value if isinstance(value, cls) else cls(str(value).lower())
        except ValueError:
            raise ValueError(
                f"Unknown join kind: {value!r}. Expected one of {[k.value for k in cls]}"
            ) from None


def _env_flag(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None:
        return default

    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False

    raise ValueError(f"{name} must be a boolean flag, got {raw!r}")


@dataclass(frozen=True, slots=True)
class GraphConfig:
    """Execution switches shared by every node of a graph.

    Attributes:
        strict_where: raise ``NodeNotFoundError`` when a ``where`` key names
            neither a field nor a joined node, instead of dropping it.
        default_kind: join kind used when ``join``/``joins`` get none.
        native_joins: allow same-engine edges to be pushed into SQL; when
            off every edge is resolved by key correlation in memory.
        preload_cross_backend: materialize a node during ``prepare`` when one
            of its children lives on another backend, so the child can be
            narrowed to the observed keys before it is fetched.
    """

    strict_where: bool = field(default=False)
    default_kind: JoinKind = field(default=JoinKind.INNER)
    native_joins: bool = field(default=True)
    preload_cross_backend: bool = field(default=True)

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> GraphConfig:
        """Build a config from ``RELGRAPH_*`` environment variables.

        Recognised: ``RELGRAPH_STRICT_WHERE``, ``RELGRAPH_DEFAULT_KIND``,
        ``RELGRAPH_NATIVE_JOINS``, ``RELGRAPH_PRELOAD_CROSS_BACKEND``.
        """
        env = os.environ if env is None else env
        defaults = cls()

        return cls(
            strict_where=_env_flag(env, "RELGRAPH_STRICT_WHERE", defaults.strict_where),
            default_kind=JoinKind.coerce(env.get("RELGRAPH_DEFAULT_KIND", defaults.default_kind)),
            native_joins=_env_flag(env, "RELGRAPH_NATIVE_JOINS", defaults.native_joins),
            preload_cross_backend=_env_flag(
                env, "RELGRAPH_PRELOAD_CROSS_BACKEND", defaults.preload_cross_backend
            ),
        )


DEFAULT_CONFIG: Final[GraphConfig] = GraphConfig()
