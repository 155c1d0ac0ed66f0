from __future__ import annotations

import sys
from collections.abc import Iterator, Mapping
from typing import Any, TypeVar


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self


K = TypeVar("K")
V = TypeVar("V")


class frozendict(Mapping[K, V]):  # noqa: N801
    """Immutable mapping used for filters, contexts and schema tables.

    Graph nodes and relations are value objects, so every mapping they hold
    is a ``frozendict``: updates go through :meth:`merge`, which returns a
    new instance and leaves the receiver untouched.

    Hashing is computed on first use.  Filter values are normalised to
    tuples before they get here, but a mapping may still carry unhashable
    values (rows, nested condition maps); such instances work as mappings
    and only fail when something actually tries to hash them.

    Example:
        >>> fd = frozendict({"id": 1})
        >>> fd.merge({"name": "acme"})
        <frozendict {'id': 1, 'name': 'acme'}>
    """

    __slots__ = ("_dict", "_hash")

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self._dict: dict[K, V] = dict(*args, **kwargs)
        self._hash: int | None = None

    def __getitem__(self, key: K) -> V:
        return self._dict[key]

    def __contains__(self, key: Any) -> bool:
        return key in self._dict

    def merge(self, other: Mapping[K, V] | None = None, **add_or_replace: Any) -> Self:
        """Return a new frozendict with *other* and keyword items layered on top.

        Later values win, so ``merge`` is the update rule for ``where`` calls.
        """
        if not other and not add_or_replace:
            return self

        merged = dict(self._dict)
        merged.update(other or {})
        merged.update(add_or_replace)

        return type(self)(merged)

    def __iter__(self) -> Iterator[K]:
        return iter(self._dict)

    def __len__(self) -> int:
        return len(self._dict)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._dict!r}>"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, frozendict):
            return self._dict == other._dict

        if isinstance(other, dict):
            return self._dict == other

        return NotImplemented

    def __hash__(self) -> int:
        if self._hash is None:
            self._hash = hash(frozenset(self._dict.items()))

        return self._hash
