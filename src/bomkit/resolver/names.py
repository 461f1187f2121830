"""Best-effort lookup of undeclared references by exact concept name.

With ``--resolve-names`` a manifest may refer to an existing concept by its
name instead of its real ID.  Before validation, every concept reference
that is neither a real ID, a seeded symbol, nor defined by the manifest is
searched for remotely; a single exact match seeds the symbol table.  Lookup
failures and ambiguous matches leave the reference alone, and the
validator then reports it as unknown.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from bomkit.errors import BomError
from bomkit.manifest.nodes import Namespace
from bomkit.resolver.symbols import is_real_id

if TYPE_CHECKING:
    from bomkit.manifest.loader import ComposedManifest

logger = logging.getLogger(__name__)

NAME_ORIGIN = "name lookup"

Search = Callable[[str], list[dict[str, Any]]]


def undeclared_references(composed: "ComposedManifest") -> list[str]:
    """Concept references the manifest never defines, in first-use order."""
    defined = {op.temp_id for op in composed.operations if op.temp_id}
    seen: dict[str, None] = {}
    for op in composed.operations:
        for ref, value in op.reference_values():
            if ref.namespace != Namespace.CONCEPT:
                continue
            if is_real_id(value) or value in composed.symbols or value in defined:
                continue
            seen.setdefault(value, None)
    return list(seen)


def resolve_by_name(composed: "ComposedManifest", search: Search) -> dict[str, str]:
    """Seed ``composed.symbols`` with exact-name matches; return what was added.

    Parameters
    ----------
    composed:
        The manifest whose undeclared references should be looked up.
    search:
        Callable taking an anchored regex name pattern and returning
        ``[{id, name, type}]`` rows, e.g. ``ModelApiClient.search``.
    """
    resolved: dict[str, str] = {}
    for name in undeclared_references(composed):
        try:
            rows = search(f"^{re.escape(name)}$")
        except BomError as exc:
            logger.debug("Name lookup for %r failed: %s", name, exc)
            continue
        matches = {
            row["id"]
            for row in rows
            if row.get("name") == name and is_real_id(row.get("id"))
        }
        if len(matches) != 1:
            if matches:
                logger.warning("Name %r is ambiguous (%d matches); not resolved", name, len(matches))
            continue
        real_id = matches.pop()
        composed.symbols.define(name, real_id, origin=NAME_ORIGIN)
        resolved[name] = real_id
    if resolved:
        logger.info("Resolved %d references by name", len(resolved))
    return resolved
