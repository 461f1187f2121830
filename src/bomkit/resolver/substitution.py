"""Substituting resolved symbols and extracting new ones from results."""
from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from bomkit.manifest.nodes import Operation
from bomkit.resolver.symbols import SymbolTable

# Checked in order; the first non-empty string wins.
REALIZED_ID_FIELDS = ("realId", "visualId", "noteId", "groupId", "viewId", "connectionId")


def substitute(op: Operation, table: SymbolTable) -> Operation:
    """Return ``op`` with every resolved reference replaced by its real ID.

    Unresolved references are left as they are.
    """
    changes: dict[str, str] = {}
    for ref, value in op.reference_values():
        real_id = table.resolve(value)
        if real_id is not None and real_id != value:
            changes[ref.field] = real_id
    return op.with_fields(**changes) if changes else op


def substitute_all(operations: Iterable[Operation], table: SymbolTable) -> list[Operation]:
    return [substitute(op, table) for op in operations]


def realized_id(row: Mapping[str, Any]) -> str | None:
    """Return the ID a result row reports for the thing it created."""
    for name in REALIZED_ID_FIELDS:
        value = row.get(name)
        if isinstance(value, str) and value:
            return value
    return None


def extract_mappings(rows: Iterable[Mapping[str, Any]]) -> list[tuple[str, str]]:
    """Return ``(tempId, realId)`` pairs from a chunk's result rows, in row order."""
    pairs: list[tuple[str, str]] = []
    for row in rows:
        temp_id = row.get("tempId")
        if not isinstance(temp_id, str) or not temp_id:
            continue
        real_id = realized_id(row)
        if real_id is not None:
            pairs.append((temp_id, real_id))
    return pairs
