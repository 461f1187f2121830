"""The running symbol table: caller-chosen symbols mapped to real IDs.

The table only grows.  Binding a symbol that is already bound to the same
real ID is a no-op; binding it to a different real ID raises
``SymbolConflictError``.  Each binding remembers where it came from (an
idFile path or a chunk label) so that conflicts can name both sides.
"""
from __future__ import annotations

import re
from collections.abc import Iterator, Mapping
from typing import Any

from bomkit.errors import SymbolConflictError

REAL_ID_RE = re.compile(r"^id-[0-9a-f]{32}$", re.IGNORECASE)
_REAL_ID_PREFIX_RE = re.compile(r"^id-[0-9a-f]+$", re.IGNORECASE)


def is_real_id(value: Any) -> bool:
    """Return True if ``value`` has the lexical format of a service-assigned ID."""
    return isinstance(value, str) and bool(REAL_ID_RE.match(value))


def looks_like_malformed_real_id(value: Any) -> bool:
    """Return True for ``id-`` + hex values of the wrong length."""
    return (
        isinstance(value, str)
        and not is_real_id(value)
        and bool(_REAL_ID_PREFIX_RE.match(value))
    )


class SymbolTable:
    """Monotonic symbol → real-ID mapping.

    Parameters
    ----------
    initial:
        Optional bindings to seed the table with.
    origin:
        Origin label recorded for the seeded bindings.
    """

    def __init__(self, initial: Mapping[str, str] | None = None, origin: str = "seed") -> None:
        self._ids: dict[str, str] = {}
        self._origins: dict[str, str] = {}
        if initial:
            self.update(initial, origin=origin)

    def define(self, symbol: str, real_id: str, origin: str = "") -> bool:
        """Bind ``symbol`` to ``real_id``.

        Returns
        -------
        bool
            ``True`` if a new binding was added, ``False`` if the same
            binding already existed.

        Raises
        ------
        SymbolConflictError
            If ``symbol`` is already bound to a different real ID.
        """
        existing = self._ids.get(symbol)
        if existing is not None:
            if existing != real_id:
                raise SymbolConflictError(symbol, existing, real_id, self._origins.get(symbol))
            return False
        self._ids[symbol] = real_id
        self._origins[symbol] = origin
        return True

    def update(self, mapping: Mapping[str, str], origin: str = "") -> int:
        """Bind every entry of ``mapping``; return how many were new."""
        added = 0
        for symbol, real_id in mapping.items():
            if self.define(symbol, real_id, origin):
                added += 1
        return added

    def resolve(self, symbol: str) -> str | None:
        return self._ids.get(symbol)

    def origin(self, symbol: str) -> str | None:
        return self._origins.get(symbol)

    def as_dict(self) -> dict[str, str]:
        """Return a sorted copy of the bindings."""
        return dict(sorted(self._ids.items()))

    def copy(self) -> "SymbolTable":
        clone = SymbolTable()
        clone._ids = dict(self._ids)
        clone._origins = dict(self._origins)
        return clone

    def __contains__(self, symbol: object) -> bool:
        return symbol in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def __iter__(self) -> Iterator[str]:
        return iter(self._ids)

    def __repr__(self) -> str:
        return f"SymbolTable({len(self._ids)} symbols)"
