"""Error taxonomy for relation graphs.

Everything raised on purpose by this package derives from
:class:`RelGraphError`.  Backend failures (driver errors, service timeouts)
are not wrapped and reach the caller unchanged.
"""

from __future__ import annotations


class RelGraphError(Exception):
    """Base class for all relation graph errors."""


class ConfigurationError(RelGraphError):
    """Raised when an association or schema declaration is malformed.

    These surface at schema-definition time, never while a query runs.
    """


class ResolutionError(RelGraphError):
    """Raised when a relation, column or through-chain cannot be resolved."""


class UnknownAssociationError(ResolutionError):
    """Raised when a named association does not exist on a relation."""

    def __init__(self, relation: str, name: str) -> None:
        self.relation = relation
        self.name = name
        super().__init__(f"Association {name!r} not found on relation {relation!r}")


class NodeNotFoundError(RelGraphError, LookupError):
    """Raised when a graph path or condition names a node that is not joined."""

    def __init__(self, name: str, available: tuple[str, ...] = ()) -> None:
        self.name = name
        self.available = available
        super().__init__(f"Node {name!r} not found. Available: {list(available)}")


class UnsupportedJoinError(RelGraphError):
    """Raised when a join kind is not implemented by the chosen strategy."""
