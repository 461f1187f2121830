"""Symbol resolution: the symbol table, substitution, extraction and side-cars."""
from __future__ import annotations

from bomkit.resolver.names import resolve_by_name, undeclared_references
from bomkit.resolver.sidecar import default_sidecar_path, save_sidecar
from bomkit.resolver.substitution import (
    REALIZED_ID_FIELDS,
    extract_mappings,
    realized_id,
    substitute,
    substitute_all,
)
from bomkit.resolver.symbols import (
    REAL_ID_RE,
    SymbolTable,
    is_real_id,
    looks_like_malformed_real_id,
)

__all__ = [
    "REALIZED_ID_FIELDS",
    "REAL_ID_RE",
    "SymbolTable",
    "default_sidecar_path",
    "extract_mappings",
    "is_real_id",
    "looks_like_malformed_real_id",
    "realized_id",
    "resolve_by_name",
    "save_sidecar",
    "substitute",
    "substitute_all",
    "undeclared_references",
]
